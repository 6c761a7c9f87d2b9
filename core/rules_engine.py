"""
core/rules_engine.py
────────────────────
Turns one trigger (an InvocationContext) into dispatched trade actions.

For every rule, in rule-set order, that the trigger's invoker may invoke and
whose action is on the evaluated side, all conditions are evaluated against
the ctx; a rule whose conditions do not all hold is skipped silently.  Each
matching rule is dispatched with its own copy of the ctx carrying
``rule=<that rule>``.

Conditions are looked up by name in a predicate registry.  A predicate is a
callable ``(ctx, *args) -> bool`` (or an awaitable bool).  Built-ins:

    copyTrade(name)       ctx.portfolio is the portfolio called *name*
    isCopiedTrader()      ctx.holder is ctx.portfolio's copied trader
    gamerIs(address)      ctx.gamer equals *address*
    gamerIn(a, b, ...)    ctx.gamer is one of the listed addresses
    holderIs(address)     ctx.holder equals *address*
    minQuantity(n)        ctx.quantity >= n
    maxQuantity(n)        ctx.quantity <= n
    isBuy() / isSell()    direction of the observed trade
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional

from core.actions import TradeActions
from core.errors import ConfigurationError
from models.proposed_order import OrderSide, ProposedOrder
from models.rule import Condition, InvocationContext, Rule

logger = logging.getLogger(__name__)

Predicate = Callable[..., Any]


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if isinstance(value, str) else value


def _copy_trade(ctx: InvocationContext, portfolio_name: str) -> bool:
    return ctx.portfolio is not None and ctx.portfolio.portfolio_name == str(portfolio_name).strip()


def _is_copied_trader(ctx: InvocationContext) -> bool:
    if ctx.portfolio is None or not ctx.portfolio.copied_trader_address or not ctx.holder:
        return False
    return ctx.portfolio.copied_trader_address == _lower(ctx.holder)


def _min_quantity(ctx: InvocationContext, n: int) -> bool:
    return ctx.quantity is not None and ctx.quantity >= int(n)


def _max_quantity(ctx: InvocationContext, n: int) -> bool:
    return ctx.quantity is not None and ctx.quantity <= int(n)


def _gamer_in(ctx: InvocationContext, *gamers: Any) -> bool:
    flat: list[str] = []
    for g in gamers:
        flat.extend(g if isinstance(g, tuple) else (g,))
    return _lower(ctx.gamer) in {_lower(g) for g in flat}


BUILTIN_CONDITIONS: dict[str, Predicate] = {
    "copyTrade": _copy_trade,
    "isCopiedTrader": _is_copied_trader,
    "gamerIs": lambda ctx, gamer: _lower(ctx.gamer) == _lower(gamer),
    "gamerIn": _gamer_in,
    "holderIs": lambda ctx, holder: _lower(ctx.holder) == _lower(holder),
    "minQuantity": _min_quantity,
    "maxQuantity": _max_quantity,
    "isBuy": lambda ctx: ctx.is_buy is True,
    "isSell": lambda ctx: ctx.is_buy is False,
}


class RulesEngine:
    """
    Usage::

        engine = RulesEngine(actions, rules=RuleSetStore().load())
        await engine.evaluate_and_invoke_sell(ctx)
    """

    def __init__(
        self,
        actions: TradeActions,
        rules: Iterable[Rule] = (),
        *,
        conditions: Optional[dict[str, Predicate]] = None,
    ) -> None:
        self._actions = actions
        self._conditions: dict[str, Predicate] = {**BUILTIN_CONDITIONS, **(conditions or {})}
        self._rules: list[Rule] = []
        self.load_rules(rules)

    @property
    def rules(self) -> list[Rule]:
        return list(self._rules)

    def register_condition(self, name: str, predicate: Predicate) -> None:
        self._conditions[name] = predicate

    def validate_rules(self, rules: Iterable[Rule]) -> None:
        """Fail at start-up when a rule names a condition nobody registered."""
        for rule in rules:
            for condition in rule.conditions:
                if condition.name not in self._conditions:
                    raise ConfigurationError(
                        "unknown condition in rule",
                        details={"ruleID": rule.rule_id, "condition": condition.name},
                    )

    def load_rules(self, rules: Iterable[Rule]) -> None:
        rules = list(rules)
        self.validate_rules(rules)
        self._rules = rules

    def rules_for_invoker(self, invoked_by: str, rules: Optional[Iterable[Rule]] = None) -> list[Rule]:
        return [r for r in (self._rules if rules is None else rules) if r.is_invokable_by(invoked_by)]

    async def _condition_holds(self, condition: Condition, ctx: InvocationContext) -> bool:
        predicate = self._conditions.get(condition.name)
        if predicate is None:
            raise ConfigurationError("unknown condition", details={"condition": condition.name})
        result = predicate(ctx, *condition.args)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def matches(self, rule: Rule, ctx: InvocationContext) -> bool:
        for condition in rule.conditions:
            if not await self._condition_holds(condition, ctx):
                return False
        return True

    async def _evaluate_and_invoke(
        self, side: OrderSide, ctx: InvocationContext, rules: Optional[Iterable[Rule]]
    ) -> list[ProposedOrder]:
        proposed: list[ProposedOrder] = []
        for rule in self.rules_for_invoker(ctx.invoked_by, rules):
            if rule.side is not side:
                continue
            if not await self.matches(rule, ctx):
                continue
            logger.debug("Rule %s matched %s trigger for gamer %s", rule.rule_id, ctx.invoked_by, ctx.gamer)
            order = await self._actions.dispatch(rule.action, replace(ctx, rule=rule))
            if order is not None:
                proposed.append(order)
        return proposed

    async def evaluate_and_invoke_buy(
        self, ctx: InvocationContext, rules: Optional[Iterable[Rule]] = None
    ) -> list[ProposedOrder]:
        """Dispatch every matching BUY rule; returns the proposals created."""
        return await self._evaluate_and_invoke(OrderSide.BUY, ctx, rules)

    async def evaluate_and_invoke_sell(
        self, ctx: InvocationContext, rules: Optional[Iterable[Rule]] = None
    ) -> list[ProposedOrder]:
        """Dispatch every matching SELL rule; returns the proposals created."""
        return await self._evaluate_and_invoke(OrderSide.SELL, ctx, rules)
