"""
core/actions.py
───────────────
The four trade actions a rule can dispatch.

Each action validates the ctx, runs its guard under the per-triple lock,
and then either proposes the adjusted quantity or, when the guard returned 0,
raises a stagnation alert if earlier proposals for the same gamer/side are
still pending:

    buyUpTo   adjust_buy_target_amount                       → BUY,  no holder
    copyBuy   stop-loss gate (skipped for initial fills)     → BUY,  no holder
    sellBit   adjust_sell_target_amount on ctx.holder        → SELL, ctx.holder
              (or the fleet's largest owner when auto-selecting)
    copySell  adjust_sell_target_amount on the portfolio's
              largest owner                                  → SELL, that wallet

A DuplicateProposalError from the queue means the triple already has a
PENDING order: it is logged, the stagnation alert is raised, and nothing is
retried.
"""
from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from core.errors import DuplicateProposalError, ValidationError
from core.trade_guard import TradeGuard
from core.valuation import ValuationEngine
from database.proposal_queue import TxGofer
from models.portfolio import is_valid_address
from models.proposed_order import OrderSide, ProposedOrder
from models.rule import BuyUpTo, CopyBuy, CopySell, InvocationContext, Sell, TradeAction

logger = logging.getLogger(__name__)


def _positive_quantity(quantity: Optional[int], action: str) -> int:
    if quantity is None or isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError(f"{action}: quantity must be an integer", details={"quantity": quantity})
    if quantity <= 0:
        raise ValidationError(f"{action}: quantity must be greater than zero", details={"quantity": quantity})
    return quantity


def _check_ctx(ctx: InvocationContext, action: str, *, needs_portfolio: bool = False) -> None:
    if ctx.rule is None:
        raise ValidationError(f"{action}: ctx has no bound rule")
    if not ctx.gamer or not is_valid_address(ctx.gamer):
        raise ValidationError(f"{action}: ctx.gamer is not a valid address", details={"gamer": ctx.gamer})
    if ctx.holder and not is_valid_address(ctx.holder):
        raise ValidationError(f"{action}: ctx.holder is not a valid address", details={"holder": ctx.holder})
    if needs_portfolio and ctx.portfolio is None:
        raise ValidationError(f"{action}: ctx should have a portfolio")


class TradeActions:
    """Action implementations bound to one guard, queue and valuation engine."""

    def __init__(self, guard: TradeGuard, gofer: TxGofer, valuation: ValuationEngine) -> None:
        self._guard = guard
        self._gofer = gofer
        self._valuation = valuation

    async def dispatch(self, action: TradeAction, ctx: InvocationContext) -> Optional[ProposedOrder]:
        quantity = action.resolve_quantity(ctx)
        if isinstance(action, BuyUpTo):
            return await self.buy_up_to(ctx, quantity)
        if isinstance(action, CopyBuy):
            return await self.copy_buy(ctx, quantity, is_initial_fill=action.is_initial_fill)
        if isinstance(action, Sell):
            return await self.sell_bit(ctx, quantity, auto_select_holder=action.auto_select_holder)
        if isinstance(action, CopySell):
            return await self.copy_sell(ctx, quantity)
        raise ValidationError(f"Unknown action kind: {type(action).__name__}")

    # ------------------------------------------------------------------ #
    # Buys                                                                 #
    # ------------------------------------------------------------------ #

    async def buy_up_to(self, ctx: InvocationContext, quantity: Optional[int]) -> Optional[ProposedOrder]:
        quantity = _positive_quantity(quantity, "buyUpTo")
        _check_ctx(ctx, "buyUpTo")
        return await self._propose_or_alert(
            "buyUpTo",
            ctx,
            OrderSide.BUY,
            quantity,
            lambda: self._guard.adjust_buy_target_amount(ctx.gamer, quantity),
            holder=None,
            portfolio_name=ctx.portfolio_name,
        )

    async def copy_buy(
        self, ctx: InvocationContext, quantity: Optional[int], *, is_initial_fill: bool = False
    ) -> Optional[ProposedOrder]:
        """Mirror a copied trader's buy; initial fills skip the stop-loss gate."""
        quantity = _positive_quantity(quantity, "copyBuy")
        if ctx.is_buy is not True:
            return None
        _check_ctx(ctx, "copyBuy", needs_portfolio=True)
        portfolio = ctx.portfolio

        async def adjust() -> int:
            if is_initial_fill:
                return quantity
            report = await self._valuation.compute_for_portfolio(portfolio.portfolio_name)
            return await self._guard.adjust_buy_target_amount_to_meet_configured_stop_loss(
                ctx.gamer,
                report,
                portfolio.initial_valuation_ethers,
                portfolio.target_valuation_ethers,
                portfolio.stop_loss_percent,
                quantity,
            )

        return await self._propose_or_alert(
            "copyBuy", ctx, OrderSide.BUY, quantity, adjust,
            holder=None, portfolio_name=portfolio.portfolio_name,
        )

    # ------------------------------------------------------------------ #
    # Sells                                                                #
    # ------------------------------------------------------------------ #

    async def sell_bit(
        self, ctx: InvocationContext, quantity: Optional[int], *, auto_select_holder: bool = False
    ) -> Optional[ProposedOrder]:
        if quantity == 0:
            return None
        quantity = _positive_quantity(quantity, "sellBit")
        _check_ctx(ctx, "sellBit")

        holder = ctx.holder
        if auto_select_holder or not holder:
            holder = await self._guard.get_largest_key_fleet_owner_of_gamer(ctx.gamer)
            logger.debug("sellBit: auto-selected holder %s for gamer %s", holder, ctx.gamer)

        return await self._propose_or_alert(
            "sellBit",
            ctx,
            OrderSide.SELL,
            quantity,
            lambda: self._guard.adjust_sell_target_amount(ctx.gamer, holder, quantity),
            holder=holder,
            portfolio_name=ctx.portfolio_name,
        )

    async def copy_sell(self, ctx: InvocationContext, quantity: Optional[int]) -> Optional[ProposedOrder]:
        """Mirror a copied trader's sell from the portfolio wallet holding the most."""
        quantity = _positive_quantity(quantity, "copySell")
        if ctx.is_buy is not False:
            return None
        _check_ctx(ctx, "copySell", needs_portfolio=True)
        portfolio_name = ctx.portfolio.portfolio_name

        holder = await self._guard.get_largest_key_fleet_owner_of_gamer(ctx.gamer, portfolio_name)
        return await self._propose_or_alert(
            "copySell",
            ctx,
            OrderSide.SELL,
            quantity,
            lambda: self._guard.adjust_sell_target_amount(ctx.gamer, holder, quantity),
            holder=holder,
            portfolio_name=portfolio_name,
        )

    # ------------------------------------------------------------------ #
    # Shared tail                                                          #
    # ------------------------------------------------------------------ #

    async def _propose_or_alert(
        self,
        action: str,
        ctx: InvocationContext,
        side: OrderSide,
        requested: int,
        adjust: Callable[[], Awaitable[int]],
        *,
        holder: Optional[str],
        portfolio_name: Optional[str],
    ) -> Optional[ProposedOrder]:
        rule_id = ctx.rule.rule_id
        async with self._gofer.triple_lock(ctx.gamer, side, holder):
            adjusted = await adjust()

            if adjusted <= 0:
                alert_holder = holder if side is OrderSide.SELL else None
                if await self._guard.get_proposed_sum(ctx.gamer, side, alert_holder) > 0:
                    await self._gofer.raise_alert(ctx.gamer, side)
                logger.info(
                    "%s: no bits to %s after adjustment for gamer %s (holder=%s, rule=%s)",
                    action, side.value.lower(), ctx.gamer, holder or "-", rule_id,
                )
                return None

            if adjusted != requested:
                logger.info(
                    "%s: adjusted %s of gamer %s from %d to %d bits (holder=%s, rule=%s)",
                    action, side.value, ctx.gamer, requested, adjusted, holder or "-", rule_id,
                )

            try:
                order = await self._gofer.propose_order(
                    ctx.gamer,
                    side,
                    adjusted,
                    rule_id,
                    ctx.invoked_by,
                    holder=holder,
                    portfolio_name=portfolio_name,
                )
            except DuplicateProposalError as exc:
                logger.warning("%s: %s; not re-proposing", action, exc)
                await self._gofer.raise_alert(ctx.gamer, side)
                return None

        logger.info(
            "proposedOrder funcName=%s gamer=%s side=%s adjustedNumberOfBits=%d holder=%s "
            "portfolio=%s ruleId=%s invokedBy=%s",
            action, ctx.gamer, side.value, adjusted, holder or "-",
            portfolio_name or "-", rule_id, ctx.invoked_by,
        )
        return order
