"""
models/portfolio.py
───────────────────
Copy-trade portfolio definition.

A portfolio binds a named copy strategy to a key fleet (the wallets that
trade for it) and, optionally, to the trader being copied.  Portfolios are
append-only once written by database/portfolio_store.py.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(address: str) -> bool:
    return bool(address) and bool(_ADDRESS_RE.match(address.strip()))


def normalize_address(address: str) -> str:
    """Return the canonical (trimmed, lower-case) form of a wallet address."""
    if not isinstance(address, str) or not is_valid_address(address):
        raise ValueError(f"Invalid wallet address: {address!r}")
    return address.strip().lower()


class CopyStrategy(str, Enum):
    MIN = "min"
    MID = "mid"
    ALL = "all"
    NONE = "none"


class Portfolio(BaseModel):
    """Validated portfolio record.

    ``initial_valuation_wei`` is kept as an int (exceeds 64 bits in practice);
    ``initial_valuation_ethers`` is the same figure normalised by the buyer
    token decimals.
    """

    portfolio_name: str
    key_fleet: list[str]
    copied_trader_address: Optional[str] = None
    copy_strategy: CopyStrategy = CopyStrategy.NONE
    initial_valuation_wei: int = 0
    initial_valuation_ethers: float = 0.0
    stop_loss_percent: float = Field(default=5.0, ge=1, le=10)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("portfolio_name")
    @classmethod
    def name_must_not_be_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("portfolio name cannot be empty")
        return v

    @field_validator("key_fleet")
    @classmethod
    def fleet_must_be_valid(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("key fleet must contain at least one wallet")
        fleet = [normalize_address(a) for a in v]
        if len(set(fleet)) != len(fleet):
            raise ValueError("key fleet contains duplicate wallet addresses")
        return fleet

    @field_validator("copied_trader_address")
    @classmethod
    def copied_trader_must_be_valid(cls, v: Optional[str]) -> Optional[str]:
        return normalize_address(v) if v else None

    @field_validator("initial_valuation_wei")
    @classmethod
    def valuation_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("initial valuation cannot be negative")
        return v

    @model_validator(mode="after")
    def copied_trader_outside_fleet(self) -> "Portfolio":
        if self.copied_trader_address and self.copied_trader_address in self.key_fleet:
            raise ValueError("copied trader cannot be part of its own key fleet")
        return self

    @property
    def target_valuation_ethers(self) -> float:
        """Valuation at which the stop-loss is hit."""
        return self.initial_valuation_ethers - (
            self.initial_valuation_ethers * self.stop_loss_percent / 100
        )

    def to_payload(self) -> dict:
        """JSON-safe dict (wei as string) for the event bus."""
        payload = self.model_dump(mode="json")
        payload["initial_valuation_wei"] = str(self.initial_valuation_wei)
        return payload
