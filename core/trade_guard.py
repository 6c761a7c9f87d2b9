"""
core/trade_guard.py
───────────────────
Adjustment layer between a rule action and the proposal queue.

Every adjust_* method returns a non-negative int; 0 means "do nothing" and
is a normal outcome, not an error.  The guard only reads: positions from the
PositionStore, pending proposals from the TxGofer, fleets from KeyFleet.

Largest-owner tie-break: the first wallet in fleet enumeration order wins
(see core/fleet.py for the order).
"""
from __future__ import annotations

import logging
from typing import Optional

from core.fleet import KeyFleet
from core.valuation import PandLReport
from database.position_store import PositionStore
from database.proposal_queue import TxGofer
from models.proposed_order import OrderSide

logger = logging.getLogger(__name__)


class TradeGuard:
    """
    Args:
        position_store:     Read-only view of holdings.
        gofer:              Proposal queue (for pending sums).
        fleet:              Fleet directory.
        max_bits_per_gamer: Fleet-wide exposure cap per gamer; None disables it.
    """

    def __init__(
        self,
        position_store: PositionStore,
        gofer: TxGofer,
        fleet: KeyFleet,
        *,
        max_bits_per_gamer: Optional[int] = None,
    ) -> None:
        self._positions = position_store
        self._gofer = gofer
        self._fleet = fleet
        self._max_bits = max_bits_per_gamer

    async def adjust_buy_target_amount(self, gamer: str, requested_qty: int) -> int:
        if requested_qty <= 0:
            return 0
        if self._max_bits is None:
            return requested_qty

        holders = await self._fleet.get_all_addresses()
        held = sum((await self._positions.get_gamer_balances(gamer, holders)).values())
        pending = await self._gofer.get_proposed_sum(gamer, OrderSide.BUY)
        headroom = max(self._max_bits - held - pending, 0)
        adjusted = min(requested_qty, headroom)
        if adjusted != requested_qty:
            logger.info(
                "Buy of %s clamped %d -> %d (cap %d, held %d, pending %d)",
                gamer, requested_qty, adjusted, self._max_bits, held, pending,
            )
        return adjusted

    async def adjust_sell_target_amount(self, gamer: str, holder: Optional[str], requested_qty: int) -> int:
        """Never sell more than *holder* has stored for *gamer*."""
        if requested_qty <= 0 or not holder:
            return 0
        balance = await self._positions.get_bit_balance_in_store(holder, gamer)
        return min(requested_qty, balance)

    async def adjust_buy_target_amount_to_meet_configured_stop_loss(
        self,
        gamer: str,
        pandl_results: Optional[PandLReport],
        initial_valuation: float,
        target_valuation: float,
        stop_loss_percent: float,
        requested_qty: int,
    ) -> int:
        """Pass/fail gate: *requested_qty* unchanged, or 0.

        Buying stops when the portfolio is at or below its stop-loss floor
        (``-|stop_loss_percent|`` or ``target_valuation``) and also while it
        has not yet gained more than ``|stop_loss_percent|``.
        """
        threshold = abs(stop_loss_percent)
        floor = -threshold

        if pandl_results is not None and pandl_results.holders:
            current_valuation = initial_valuation + pandl_results.total.absolute_profit
            current_percent = pandl_results.total.percent_profit
        else:
            current_valuation = initial_valuation
            current_percent = 0.0

        if current_percent <= floor or current_valuation <= target_valuation:
            logger.warning(
                "Stop-loss breached for buys of %s: %.2f%% (floor %.2f%%), valuation %.6f <= target %.6f",
                gamer, current_percent, floor, current_valuation, target_valuation,
            )
            return 0
        if current_percent <= threshold:
            logger.info(
                "Buy of %s held back: P&L %.2f%% not above %.2f%%", gamer, current_percent, threshold
            )
            return 0
        return requested_qty

    async def get_largest_key_fleet_owner_of_gamer(
        self, gamer: str, portfolio_name: Optional[str] = None
    ) -> Optional[str]:
        holders = await self._fleet.get_all_addresses(portfolio_name)
        balances = await self._positions.get_gamer_balances(gamer, holders)
        owner: Optional[str] = None
        largest = 0
        for holder, quantity in balances.items():
            # strict '>' keeps the earliest wallet on ties
            if quantity > largest:
                owner, largest = holder, quantity
        return owner

    async def get_proposed_sum(self, gamer: str, side: OrderSide | str, holder: Optional[str] = None) -> int:
        return await self._gofer.get_proposed_sum(gamer, side, holder)
