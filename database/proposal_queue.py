"""
database/proposal_queue.py
──────────────────────────
TxGofer — durable queue of proposed bit orders.

Roles:
    ROLE_PRODUCER  rule-engine actions: propose_order(), raise_alert()
    ROLE_CONSUMER  the order executor: claim_next(), mark_resolved(),
                   mark_failed(), release_expired_claims()
Both roles may read (get_proposed_sum(), list_pending(), get_order()).

Guarantees:
    - At most one PENDING order per (gamer, side, holder).  Enforced by the
      partial unique index on proposed_orders, so it holds across processes;
      a second proposal raises DuplicateProposalError.  Callers that also
      run a guard first should hold :meth:`TxGofer.triple_lock` around
      guard + propose.
    - Claims expire after ``claim_timeout_seconds``; an order claimed by a
      consumer that crashed becomes claimable again (and
      release_expired_claims() clears such claims eagerly).
    - A PENDING order transitions exactly once, to RESOLVED or FAILED, and
      only by the consumer currently holding its claim.
    - Every database round-trip is bounded by ``io_timeout_seconds`` and
      raises UpstreamError on expiry.  Writes are bounded inside the driver
      (the SQLite busy timeout), so a write that times out is rolled back and
      leaves the queue unchanged.  Reads are also cut off with
      ``asyncio.wait_for``.

Storage is SQLModel over any SQLAlchemy URL (SQLite by default).  The sync
session work runs in a worker thread via ``asyncio.to_thread``.
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

from sqlalchemy import func, or_, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, SQLModel, col, create_engine, select

from agent_tools.alert_dispatcher import AlertDispatcher, LogDispatcher
from core.errors import (
    DuplicateProposalError,
    InvalidTransitionError,
    TradingError,
    UpstreamError,
    ValidationError,
)
from models.proposed_order import OrderSide, ProposalStatus, ProposedOrder, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLE_PRODUCER = "producer"
ROLE_CONSUMER = "consumer"


def make_engine(db_url: str, io_timeout_seconds: float = 10.0) -> Engine:
    """Create an engine; SQLite connections are shared across worker threads.

    A SQLite connection waits at most *io_timeout_seconds* for a database
    lock before the statement fails with OperationalError.
    """
    connect_args: dict[str, Any] = {}
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        connect_args = {"check_same_thread": False, "timeout": io_timeout_seconds}
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(url.database)), exist_ok=True)
    engine = create_engine(db_url, connect_args=connect_args)
    SQLModel.metadata.create_all(engine, tables=[ProposedOrder.__table__])
    return engine


def _side(side: OrderSide | str) -> str:
    try:
        return OrderSide(str(getattr(side, "value", side)).upper()).value
    except ValueError as exc:
        raise ValidationError(f"Unknown order side: {side!r}") from exc


class _TripleLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class TxGofer:
    """Proposal queue bound to one role.

    Args:
        engine:   SQLAlchemy engine (see :func:`make_engine`) or database URL.
        role:     ``ROLE_PRODUCER`` or ``ROLE_CONSUMER``.
        alert_dispatcher: Receives stagnation alerts (default: log only).
        claim_timeout_seconds: Age after which a consumer claim is void.
        io_timeout_seconds:    Upper bound for each queue round-trip.  When an
            engine is passed in, its own driver timeout bounds the writes.
    """

    ROLE_PRODUCER = ROLE_PRODUCER
    ROLE_CONSUMER = ROLE_CONSUMER

    def __init__(
        self,
        engine: Engine | str,
        role: str,
        *,
        alert_dispatcher: Optional[AlertDispatcher] = None,
        claim_timeout_seconds: float = 300.0,
        io_timeout_seconds: float = 10.0,
    ) -> None:
        if role not in (ROLE_PRODUCER, ROLE_CONSUMER):
            raise ValueError(f"Unknown TxGofer role: {role!r}")
        self._engine = make_engine(engine, io_timeout_seconds) if isinstance(engine, str) else engine
        self._role = role
        self._alerts = alert_dispatcher or LogDispatcher()
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._io_timeout = io_timeout_seconds
        self._triple_locks: dict[tuple[str, str, str], _TripleLock] = {}

    @property
    def role(self) -> str:
        return self._role

    def _require(self, role: str, operation: str) -> None:
        if self._role != role:
            raise PermissionError(f"{operation} requires the {role} role (this gofer is {self._role})")

    @asynccontextmanager
    async def triple_lock(
        self, gamer: str, side: OrderSide | str, holder: Optional[str]
    ) -> AsyncIterator[None]:
        """Serialise guard + proposal for one (gamer, side, holder) in this process.

        The lock entry is dropped once nobody holds or waits for it.
        """
        key = (gamer.lower(), _side(side), (holder or "").lower())
        entry = self._triple_locks.get(key)
        if entry is None:
            entry = self._triple_locks[key] = _TripleLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._triple_locks[key]

    async def _read(self, fn: Callable[..., T], *args: Any, what: str) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._io_timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamError(f"proposal queue {what} timed out after {self._io_timeout:.1f}s") from exc
        except TradingError:
            raise
        except OperationalError as exc:
            raise UpstreamError(f"proposal queue {what} failed: {exc}") from exc

    async def _write(self, fn: Callable[..., T], *args: Any, what: str) -> T:
        # no wait_for: the driver timeout aborts and rolls back the statement
        try:
            return await asyncio.to_thread(fn, *args)
        except TradingError:
            raise
        except OperationalError as exc:
            raise UpstreamError(f"proposal queue {what} failed: {exc}") from exc

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    # ------------------------------------------------------------------ #
    # Producer                                                             #
    # ------------------------------------------------------------------ #

    async def propose_order(
        self,
        gamer: str,
        side: OrderSide | str,
        quantity: int,
        rule_id: str,
        invoked_by: str,
        holder: Optional[str] = None,
        portfolio_name: Optional[str] = None,
    ) -> ProposedOrder:
        """Append a PENDING order; DuplicateProposalError if its triple is taken."""
        self._require(ROLE_PRODUCER, "propose_order")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("proposal quantity must be a positive integer", details={"quantity": quantity})
        order = ProposedOrder(
            gamer=gamer.lower(),
            side=_side(side),
            quantity=quantity,
            rule_id=rule_id,
            invoked_by=invoked_by,
            holder=(holder or "").lower(),
            portfolio_name=portfolio_name,
        )
        saved = await self._write(self._insert_sync, order, what="propose_order")
        logger.info(
            "Proposed %s %d bits of %s (holder=%s, portfolio=%s, rule=%s, id=%s)",
            saved.side, saved.quantity, saved.gamer, saved.holder or "-",
            saved.portfolio_name or "-", saved.rule_id, saved.id,
        )
        return saved

    def _insert_sync(self, order: ProposedOrder) -> ProposedOrder:
        with self._session() as session:
            session.add(order)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateProposalError(order.gamer, order.side, order.holder_or_none) from exc
            session.refresh(order)
            return order

    async def raise_alert(self, gamer: str, side: OrderSide | str) -> None:
        """Tell operators that orders for *gamer*/*side* are waiting unresolved.

        Advisory only: reads the queue, writes nothing, safe to repeat.
        """
        self._require(ROLE_PRODUCER, "raise_alert")
        side_value = _side(side)
        pending = await self.list_pending(gamer=gamer, side=side_value)
        now = utcnow()
        details = [
            {
                "order_id": o.id,
                "gamer": o.gamer,
                "side": o.side,
                "holder": o.holder or "-",
                "quantity": o.quantity,
                "age_seconds": int((now - o.created_at).total_seconds()),
                "claimed_by": o.claimed_by or "-",
                "rule_id": o.rule_id,
            }
            for o in pending
        ]
        title = f"Unresolved {side_value} proposals for gamer {gamer.lower()}"
        await asyncio.to_thread(self._alerts.dispatch, title, details)

    # ------------------------------------------------------------------ #
    # Readers                                                              #
    # ------------------------------------------------------------------ #

    async def get_proposed_sum(
        self, gamer: str, side: OrderSide | str, holder: Optional[str] = None
    ) -> int:
        """Total quantity of PENDING orders for gamer/side (and holder, if given)."""
        return await self._read(self._sum_sync, gamer.lower(), _side(side), holder, what="get_proposed_sum")

    def _sum_sync(self, gamer: str, side: str, holder: Optional[str]) -> int:
        stmt = (
            select(func.sum(ProposedOrder.quantity))
            .where(ProposedOrder.gamer == gamer)
            .where(ProposedOrder.side == side)
            .where(ProposedOrder.status == ProposalStatus.PENDING.value)
        )
        if holder is not None:
            stmt = stmt.where(ProposedOrder.holder == holder.lower())
        with self._session() as session:
            total = session.exec(stmt).one()
        return int(total or 0)

    async def list_pending(
        self, *, gamer: Optional[str] = None, side: OrderSide | str | None = None
    ) -> list[ProposedOrder]:
        side_value = _side(side) if side is not None else None
        return await self._read(self._pending_sync, gamer, side_value, what="list_pending")

    def _pending_sync(self, gamer: Optional[str], side: Optional[str]) -> list[ProposedOrder]:
        stmt = select(ProposedOrder).where(ProposedOrder.status == ProposalStatus.PENDING.value)
        if gamer is not None:
            stmt = stmt.where(ProposedOrder.gamer == gamer.lower())
        if side is not None:
            stmt = stmt.where(ProposedOrder.side == side)
        with self._session() as session:
            return list(session.exec(stmt.order_by(ProposedOrder.id)).all())

    async def get_order(self, order_id: int) -> Optional[ProposedOrder]:
        return await self._read(self._get_sync, order_id, what="get_order")

    def _get_sync(self, order_id: int) -> Optional[ProposedOrder]:
        with self._session() as session:
            return session.get(ProposedOrder, order_id)

    # ------------------------------------------------------------------ #
    # Consumer                                                             #
    # ------------------------------------------------------------------ #

    def _claimable(self, now: datetime):
        cutoff = now - self._claim_timeout
        return or_(col(ProposedOrder.claimed_at).is_(None), col(ProposedOrder.claimed_at) < cutoff)

    async def claim_next(self, consumer_id: str) -> Optional[ProposedOrder]:
        """Atomically claim the oldest claimable PENDING order (None if there is none)."""
        self._require(ROLE_CONSUMER, "claim_next")
        order = await self._write(self._claim_sync, consumer_id, what="claim_next")
        if order is not None:
            logger.info("[%s] Claimed proposal %s (%s %d of %s)",
                        consumer_id, order.id, order.side, order.quantity, order.gamer)
        return order

    def _claim_sync(self, consumer_id: str) -> Optional[ProposedOrder]:
        with self._session() as session:
            # compare-and-set; retry when another consumer wins the row
            for _ in range(5):
                now = utcnow()
                candidate = session.exec(
                    select(ProposedOrder.id)
                    .where(ProposedOrder.status == ProposalStatus.PENDING.value)
                    .where(self._claimable(now))
                    .order_by(ProposedOrder.id)
                    .limit(1)
                ).first()
                if candidate is None:
                    return None
                result = session.exec(
                    update(ProposedOrder)
                    .where(ProposedOrder.id == candidate)
                    .where(ProposedOrder.status == ProposalStatus.PENDING.value)
                    .where(self._claimable(now))
                    .values(claimed_by=consumer_id, claimed_at=now)
                )
                session.commit()
                if result.rowcount == 1:
                    return session.get(ProposedOrder, candidate, populate_existing=True)
            return None

    async def mark_resolved(self, order_id: int, consumer_id: str, tx_hash: Optional[str] = None) -> None:
        self._require(ROLE_CONSUMER, "mark_resolved")
        await self._write(
            self._transition_sync, order_id, consumer_id, ProposalStatus.RESOLVED, tx_hash, None,
            what="mark_resolved",
        )
        logger.info("[%s] Proposal %s RESOLVED (tx=%s)", consumer_id, order_id, tx_hash or "-")

    async def mark_failed(self, order_id: int, consumer_id: str, error: str) -> None:
        self._require(ROLE_CONSUMER, "mark_failed")
        await self._write(
            self._transition_sync, order_id, consumer_id, ProposalStatus.FAILED, None, error,
            what="mark_failed",
        )
        logger.warning("[%s] Proposal %s FAILED: %s", consumer_id, order_id, error)

    def _transition_sync(
        self,
        order_id: int,
        consumer_id: str,
        status: ProposalStatus,
        tx_hash: Optional[str],
        error: Optional[str],
    ) -> None:
        with self._session() as session:
            result = session.exec(
                update(ProposedOrder)
                .where(ProposedOrder.id == order_id)
                .where(ProposedOrder.status == ProposalStatus.PENDING.value)
                .where(ProposedOrder.claimed_by == consumer_id)
                .values(status=status.value, resolved_at=utcnow(), tx_hash=tx_hash, error=error)
            )
            session.commit()
            if result.rowcount != 1:
                raise InvalidTransitionError(
                    f"cannot move proposal to {status.value}",
                    details={"order_id": order_id, "consumer": consumer_id},
                )

    async def release_expired_claims(self) -> int:
        """Crash-recovery sweep: clear claims older than the claim timeout."""
        self._require(ROLE_CONSUMER, "release_expired_claims")
        released = await self._write(self._release_sync, what="release_expired_claims")
        if released:
            logger.warning("Released %d expired proposal claim(s)", released)
        return released

    def _release_sync(self) -> int:
        cutoff = utcnow() - self._claim_timeout
        with self._session() as session:
            result = session.exec(
                update(ProposedOrder)
                .where(ProposedOrder.status == ProposalStatus.PENDING.value)
                .where(col(ProposedOrder.claimed_at) < cutoff)
                .values(claimed_by=None, claimed_at=None)
            )
            session.commit()
            return int(result.rowcount or 0)
