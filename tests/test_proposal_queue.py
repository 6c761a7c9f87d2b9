"""
tests/test_proposal_queue.py
────────────────────────────
TxGofer: role checks, de-duplication per (gamer, side, holder), pending sums,
alerts, consumer claim / transition / crash recovery.
"""
from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import update
from sqlmodel import Session

from conftest import RecordingDispatcher, addr
from core.errors import DuplicateProposalError, InvalidTransitionError, UpstreamError, ValidationError
from database.proposal_queue import ROLE_PRODUCER, TxGofer, make_engine
from models.proposed_order import OrderSide, ProposalStatus, ProposedOrder, UTCDateTime, utcnow

GAMER = addr(0x20)
HOLDER = addr(0x10)


class TestProducer:
    @pytest.mark.asyncio
    async def test_propose_creates_pending_order(self, producer: TxGofer) -> None:
        order = await producer.propose_order(GAMER, "sell", 3, "r1", "tradeIndexer", holder=HOLDER)

        assert order.id is not None
        assert order.status == ProposalStatus.PENDING.value
        assert order.side == "SELL"
        assert order.holder == HOLDER

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1, True])
    async def test_non_positive_quantity_rejected(self, producer: TxGofer, quantity) -> None:
        with pytest.raises(ValidationError):
            await producer.propose_order(GAMER, OrderSide.BUY, quantity, "r1", "manual")
        assert await producer.list_pending() == []

    @pytest.mark.asyncio
    async def test_consumer_cannot_propose(self, consumer: TxGofer) -> None:
        with pytest.raises(PermissionError):
            await consumer.propose_order(GAMER, OrderSide.BUY, 1, "r1", "manual")

    @pytest.mark.asyncio
    async def test_duplicate_triple_rejected(self, producer: TxGofer) -> None:
        await producer.propose_order(GAMER, OrderSide.SELL, 3, "r1", "tradeIndexer", holder=HOLDER)

        with pytest.raises(DuplicateProposalError) as exc_info:
            await producer.propose_order(GAMER, OrderSide.SELL, 5, "r2", "tradeIndexer", holder=HOLDER)

        assert exc_info.value.holder == HOLDER
        assert [o.quantity for o in await producer.list_pending()] == [3]

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_leave_one_pending(self, producer: TxGofer) -> None:
        results = await asyncio.gather(
            producer.propose_order(GAMER, OrderSide.SELL, 2, "r1", "tradeIndexer", holder=HOLDER),
            producer.propose_order(GAMER, OrderSide.SELL, 4, "r2", "manual", holder=HOLDER),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ProposedOrder) for r in results) == 1
        assert sum(isinstance(r, DuplicateProposalError) for r in results) == 1
        assert len(await producer.list_pending(gamer=GAMER, side=OrderSide.SELL)) == 1

    @pytest.mark.asyncio
    async def test_other_holder_or_side_is_a_different_triple(self, producer: TxGofer) -> None:
        await producer.propose_order(GAMER, OrderSide.SELL, 1, "r1", "x", holder=HOLDER)
        await producer.propose_order(GAMER, OrderSide.SELL, 2, "r1", "x", holder=addr(0x11))
        await producer.propose_order(GAMER, OrderSide.BUY, 4, "r1", "x")

        assert await producer.get_proposed_sum(GAMER, OrderSide.SELL) == 3
        assert await producer.get_proposed_sum(GAMER, OrderSide.SELL, HOLDER) == 1
        assert await producer.get_proposed_sum(GAMER, OrderSide.BUY) == 4
        assert await producer.get_proposed_sum(addr(0x21), OrderSide.BUY) == 0

    @pytest.mark.asyncio
    async def test_raise_alert_reports_pending_without_writing(
        self, producer: TxGofer, dispatcher: RecordingDispatcher
    ) -> None:
        await producer.propose_order(GAMER, OrderSide.BUY, 4, "r1", "manual")

        await producer.raise_alert(GAMER, OrderSide.BUY)
        await producer.raise_alert(GAMER, OrderSide.BUY)

        assert len(dispatcher.alerts) == 2
        title, pending = dispatcher.alerts[0]
        assert "BUY" in title and GAMER in title
        assert pending[0]["quantity"] == 4
        assert len(await producer.list_pending()) == 1

    def test_unknown_role_rejected(self, proposal_engine) -> None:
        with pytest.raises(ValueError):
            TxGofer(proposal_engine, "janitor")


class TestConsumer:
    @pytest.mark.asyncio
    async def test_claim_and_resolve_once(self, producer: TxGofer, consumer: TxGofer) -> None:
        order = await producer.propose_order(GAMER, OrderSide.BUY, 2, "r1", "manual")

        claimed = await consumer.claim_next("exec-1")
        assert claimed.id == order.id
        assert claimed.claimed_by == "exec-1"
        assert await consumer.claim_next("exec-2") is None

        await consumer.mark_resolved(order.id, "exec-1", tx_hash="0xabc")
        stored = await consumer.get_order(order.id)
        assert stored.status == ProposalStatus.RESOLVED.value
        assert stored.tx_hash == "0xabc"

        with pytest.raises(InvalidTransitionError):
            await consumer.mark_failed(order.id, "exec-1", "late")

    @pytest.mark.asyncio
    async def test_only_claim_holder_may_transition(self, producer: TxGofer, consumer: TxGofer) -> None:
        order = await producer.propose_order(GAMER, OrderSide.BUY, 2, "r1", "manual")
        await consumer.claim_next("exec-1")

        with pytest.raises(InvalidTransitionError):
            await consumer.mark_resolved(order.id, "exec-2")

    @pytest.mark.asyncio
    async def test_resolved_triple_accepts_a_new_proposal(self, producer: TxGofer, consumer: TxGofer) -> None:
        first = await producer.propose_order(GAMER, OrderSide.SELL, 2, "r1", "x", holder=HOLDER)
        await consumer.claim_next("exec-1")
        await consumer.mark_failed(first.id, "exec-1", "reverted")

        second = await producer.propose_order(GAMER, OrderSide.SELL, 2, "r1", "x", holder=HOLDER)
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_abandoned_claim_becomes_claimable(
        self, producer: TxGofer, consumer: TxGofer, proposal_engine
    ) -> None:
        order = await producer.propose_order(GAMER, OrderSide.BUY, 2, "r1", "manual")
        await consumer.claim_next("crashed")

        # age the claim past the 60s timeout
        with Session(proposal_engine) as session:
            session.exec(
                update(ProposedOrder)
                .where(ProposedOrder.id == order.id)
                .values(claimed_at=utcnow() - timedelta(seconds=120))
            )
            session.commit()

        reclaimed = await consumer.claim_next("exec-2")
        assert reclaimed.id == order.id
        assert reclaimed.claimed_by == "exec-2"

    @pytest.mark.asyncio
    async def test_release_expired_claims(self, producer: TxGofer, consumer: TxGofer, proposal_engine) -> None:
        order = await producer.propose_order(GAMER, OrderSide.BUY, 2, "r1", "manual")
        await consumer.claim_next("crashed")
        with Session(proposal_engine) as session:
            session.exec(
                update(ProposedOrder)
                .where(ProposedOrder.id == order.id)
                .values(claimed_at=utcnow() - timedelta(seconds=120))
            )
            session.commit()

        assert await consumer.release_expired_claims() == 1
        assert (await consumer.get_order(order.id)).claimed_by is None


class TestTimestamps:
    @pytest.mark.asyncio
    async def test_timestamps_are_utc_aware(self, producer: TxGofer, consumer: TxGofer) -> None:
        order = await producer.propose_order(GAMER, OrderSide.BUY, 2, "r1", "manual")
        await consumer.claim_next("exec-1")

        stored = await consumer.get_order(order.id)
        assert stored.created_at.tzinfo is not None
        assert stored.created_at.utcoffset() == timedelta(0)
        assert stored.claimed_at >= stored.created_at

    @pytest.mark.asyncio
    async def test_alert_age_is_computed_from_stored_time(
        self, producer: TxGofer, dispatcher: RecordingDispatcher
    ) -> None:
        await producer.propose_order(GAMER, OrderSide.BUY, 2, "r1", "manual")

        await producer.raise_alert(GAMER, OrderSide.BUY)

        assert dispatcher.alerts[0][1][0]["age_seconds"] >= 0

    def test_naive_datetime_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            UTCDateTime().process_bind_param(datetime(2024, 1, 1), None)


class TestIoTimeout:
    @pytest.mark.asyncio
    async def test_timed_out_proposal_leaves_no_row(self, tmp_path: Path) -> None:
        db_path = tmp_path / "locked.db"
        engine = make_engine(f"sqlite:///{db_path}", io_timeout_seconds=0.3)
        gofer = TxGofer(engine, ROLE_PRODUCER, io_timeout_seconds=0.3)
        other_writer = sqlite3.connect(db_path, isolation_level=None)
        try:
            other_writer.execute("BEGIN IMMEDIATE")
            with pytest.raises(UpstreamError):
                await gofer.propose_order(GAMER, OrderSide.SELL, 3, "r1", "tradeIndexer", holder=HOLDER)
            other_writer.execute("ROLLBACK")

            await asyncio.sleep(0.5)
            assert await gofer.list_pending() == []
        finally:
            other_writer.close()
            engine.dispose()


class TestTripleLock:
    @pytest.mark.asyncio
    async def test_serialises_and_drops_unused_entries(self, producer: TxGofer) -> None:
        events: list[str] = []

        async def hold(tag: str) -> None:
            async with producer.triple_lock(GAMER, "sell", HOLDER):
                events.append(f"{tag}-in")
                await asyncio.sleep(0.01)
                events.append(f"{tag}-out")

        await asyncio.gather(hold("a"), hold("b"))

        assert events == ["a-in", "a-out", "b-in", "b-out"]
        assert producer._triple_locks == {}

    @pytest.mark.asyncio
    async def test_entry_dropped_after_error(self, producer: TxGofer) -> None:
        with pytest.raises(RuntimeError):
            async with producer.triple_lock(GAMER, OrderSide.BUY, None):
                raise RuntimeError("boom")

        assert producer._triple_locks == {}
