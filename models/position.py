"""models/position.py — Holder/gamer positions and the trade history behind them.

Plain dataclasses; persistence lives in database/position_store.py.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(slots=True)
class BitTrade:
    """One confirmed on-chain buy or sell of a gamer's bits by a holder."""

    holder: str
    gamer: str
    block_number: int
    is_buy: bool
    quantity: int                # bits moved, always positive
    eth_amount_wei: int          # price paid (buy) or received (sell)
    tx_hash: str
    log_index: int = 0


@dataclass(slots=True)
class Position:
    holder: str
    gamer: str
    quantity: int = 0
    last_block: Optional[int] = None
    trades: list[BitTrade] = field(default_factory=list)


# holder -> gamer -> Position
FullStore = dict[str, dict[str, Position]]
