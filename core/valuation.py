"""
core/valuation.py
─────────────────
Profit & loss per holder, replayed from the position store's trade history.

Per holder and gamer the trades are replayed in block order:

    buy   → opens a batch (bought block, quantity, cost)
    sell  → consumes open batches FIFO; proceeds are attributed per bit

With ``start_block`` set, batches bought before that block are excluded
entirely: their cost is not investment, the bits sold out of them produce no
proceeds, and any bits still left in them are not marked.  This scopes the
report to the current strategy epoch.

Bits still held are marked at ``marks[gamer]`` (wei per bit) or, by default,
at the per-bit price of the latest trade of that gamer found in the store,
which keeps the computation deterministic for identical store contents.

    absolute_profit            = proceeds + marked value − cost
    adjusted_initial_investment = cost of included batches
    percent_profit             = 100 × absolute_profit / investment (0 if none)

The ``total`` entry sums profit and investment across holders and derives
the investment-weighted percentage from those sums.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Optional

from models.position import BitTrade, FullStore

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18


@dataclass(slots=True)
class PandL:
    absolute_profit: float = 0.0
    percent_profit: float = 0.0
    adjusted_initial_investment: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(slots=True)
class PandLReport:
    holders: dict[str, PandL] = field(default_factory=dict)
    total: PandL = field(default_factory=PandL)

    def to_dict(self) -> dict:
        return {
            "holders": {h: p.to_dict() for h, p in self.holders.items()},
            "total": self.total.to_dict(),
        }


@dataclass(slots=True)
class _Batch:
    block_number: int
    remaining: int
    included: bool


def latest_marks(full_store: FullStore) -> dict[str, Decimal]:
    """Per-bit price (wei) of the most recent trade of each gamer in the store."""
    latest: dict[str, BitTrade] = {}
    for positions in full_store.values():
        for gamer, position in positions.items():
            for trade in position.trades:
                seen = latest.get(gamer)
                if seen is None or (trade.block_number, trade.log_index) > (seen.block_number, seen.log_index):
                    latest[gamer] = trade
    return {
        gamer: Decimal(t.eth_amount_wei) / Decimal(t.quantity)
        for gamer, t in latest.items()
        if t.quantity
    }


def _replay(trades: list[BitTrade], start_block: Optional[int], mark: Decimal) -> tuple[Decimal, Decimal]:
    """Return (absolute profit, investment) in wei for one holder/gamer."""
    batches: deque[_Batch] = deque()
    cost = Decimal(0)
    proceeds = Decimal(0)

    for trade in sorted(trades, key=lambda t: (t.block_number, t.log_index)):
        if trade.is_buy:
            included = start_block is None or trade.block_number >= start_block
            batches.append(_Batch(trade.block_number, trade.quantity, included))
            if included:
                cost += Decimal(trade.eth_amount_wei)
            continue

        per_bit = Decimal(trade.eth_amount_wei) / Decimal(trade.quantity)
        to_sell = trade.quantity
        while to_sell and batches:
            batch = batches[0]
            take = min(to_sell, batch.remaining)
            if batch.included:
                proceeds += per_bit * take
            batch.remaining -= take
            to_sell -= take
            if batch.remaining == 0:
                batches.popleft()
        if to_sell:
            logger.debug("Sell of %d bits in tx %s exceeds replayed batches", to_sell, trade.tx_hash)

    held = sum(b.remaining for b in batches if b.included)
    return proceeds + mark * held - cost, cost


def _to_units(amount_wei: Decimal, decimals: int) -> float:
    return float(amount_wei / (Decimal(10) ** decimals))


def compute_pandl(
    full_store: FullStore,
    start_block: Optional[int] = None,
    *,
    marks: Optional[dict[str, Decimal | int]] = None,
    decimals: int = DEFAULT_DECIMALS,
) -> PandLReport:
    """Compute the P&L report for every holder in *full_store*."""
    price_marks = latest_marks(full_store)
    if marks:
        price_marks.update({g.lower(): Decimal(v) for g, v in marks.items()})

    report = PandLReport()
    total_profit = Decimal(0)
    total_investment = Decimal(0)

    for holder in sorted(full_store):
        profit = Decimal(0)
        investment = Decimal(0)
        for gamer, position in full_store[holder].items():
            p, i = _replay(position.trades, start_block, price_marks.get(gamer, Decimal(0)))
            profit += p
            investment += i
        report.holders[holder] = PandL(
            absolute_profit=_to_units(profit, decimals),
            percent_profit=float(profit / investment * 100) if investment else 0.0,
            adjusted_initial_investment=_to_units(investment, decimals),
        )
        total_profit += profit
        total_investment += investment

    report.total = PandL(
        absolute_profit=_to_units(total_profit, decimals),
        percent_profit=float(total_profit / total_investment * 100) if total_investment else 0.0,
        adjusted_initial_investment=_to_units(total_investment, decimals),
    )
    return report


class ValuationEngine:
    """Position-store-backed P&L for a set of holders or a portfolio's fleet."""

    def __init__(self, position_store, fleet, *, decimals: int = DEFAULT_DECIMALS) -> None:
        self._store = position_store
        self._fleet = fleet
        self._decimals = decimals

    async def compute_for_holders(self, holders=None, start_block: Optional[int] = None) -> PandLReport:
        full_store = await self._store.get_full_store(holders)
        return compute_pandl(full_store, start_block, decimals=self._decimals)

    async def compute_for_portfolio(self, portfolio_name: str, start_block: Optional[int] = None) -> PandLReport:
        holders = await self._fleet.get_all_addresses(portfolio_name)
        return await self.compute_for_holders(holders, start_block)
