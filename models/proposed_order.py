"""
models/proposed_order.py
────────────────────────
SQLModel definition for the `proposed_orders` table (the Gofer queue).

Status lifecycle (exactly one transition per row):
    PENDING → RESOLVED   (consumer submitted the order on-chain)
    PENDING → FAILED     (consumer gave up on the order)

A PENDING row may additionally be *claimed* (claimed_by / claimed_at set)
by a consumer.  A claim older than the queue's claim timeout is treated as
abandoned and the row becomes claimable again.

At most one PENDING row may exist per (gamer, side, holder); this is the
partial unique index ``ux_proposed_orders_pending_triple``.  ``holder`` is
stored as "" when the order has no explicit holder so the index can see it.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Index, text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class ProposalStatus(str, Enum):
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    FAILED = "FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamp column.

    Values are converted to UTC on write.  SQLite keeps no offset, so a value
    read back without one is UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("UTCDateTime requires a timezone-aware datetime")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ProposedOrder(SQLModel, table=True):
    __tablename__ = "proposed_orders"
    __table_args__ = (
        Index(
            "ux_proposed_orders_pending_triple",
            "gamer",
            "side",
            "holder",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    gamer: str = Field(index=True)
    side: str                                   # OrderSide value
    quantity: int
    rule_id: str
    invoked_by: str
    holder: str = ""                            # "" ⇒ no explicit holder
    portfolio_name: Optional[str] = Field(default=None, index=True)

    status: str = Field(default=ProposalStatus.PENDING.value, index=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(UTCDateTime(), nullable=False),
    )

    # Consumer bookkeeping
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime(), nullable=True))
    resolved_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime(), nullable=True))
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def holder_or_none(self) -> Optional[str]:
        return self.holder or None
