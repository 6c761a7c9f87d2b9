"""
agents/copy_trader.py
─────────────────────
Filler side of copy-trade setup.

Listens for ``copy_trade_buy_fill_positions`` requests.  For each request it
builds one one-shot initial-fill rule per target position (invokable only by
``copyTrader``, keyed to the portfolio and the gamer), evaluates the buy path
once per position with the stop-loss gate bypassed, and then publishes
exactly one ``copy_trade_buy_positions_filled`` ack.

A request for a portfolio this process has already filled is re-acked
without proposing anything again.  A position that produced no order (for
example because another BUY for its gamer is still pending) leaves the
portfolio unfilled and unacked; a redelivered request retries only the
positions still missing.  Across restarts the proposal queue's
pending-triple index still prevents double orders.

Usage::

    python agents/copy_trader.py
"""
from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from core.copy_trade import (
    COPY_TRADE_BUY_FILL_POSITIONS,
    COPY_TRADE_BUY_POSITIONS_FILLED,
    build_initial_fill_rules,
    parse_fill_request,
)
from core.errors import TradingError
from core.event_bus import BaseEventBus, EventBus
from core.rules_engine import RulesEngine
from models.proposed_order import ProposedOrder
from models.rule import InvocationContext

logger = logging.getLogger(__name__)


class CopyTrader:
    """
    Args:
        engine:     Rules engine wired to a producer-role proposal queue.
        bus:        Started event bus shared with the initializer.
        invoked_by: Invoker identity carried by initial-fill triggers.
    """

    def __init__(self, engine: RulesEngine, bus: BaseEventBus, *, invoked_by: str = "copyTrader") -> None:
        self._engine = engine
        self._bus = bus
        self._invoked_by = invoked_by
        self._filled: set[str] = set()
        self._filled_gamers: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self._subscribed = False

    @property
    def filled_portfolios(self) -> frozenset[str]:
        return frozenset(self._filled)

    async def start(self) -> None:
        if self._subscribed:
            return
        await self._bus.subscribe(COPY_TRADE_BUY_FILL_POSITIONS, self.handle_fill_request)
        self._subscribed = True
        logger.info("CopyTrader listening on %s", COPY_TRADE_BUY_FILL_POSITIONS)

    async def handle_fill_request(self, payload: dict) -> list[ProposedOrder]:
        try:
            portfolio, positions = parse_fill_request(payload)
        except TradingError as exc:
            logger.error("Rejected fill request: %s", exc)
            return []

        async with self._lock:
            name = portfolio.portfolio_name
            if name in self._filled:
                logger.info("Portfolio %s already filled; re-sending ack", name)
                await self._ack()
                return []

            rules = build_initial_fill_rules(name, positions, self._invoked_by)
            done = self._filled_gamers.setdefault(name, set())
            proposed: list[ProposedOrder] = []
            for position in positions:
                if position.gamer in done:
                    continue
                ctx = InvocationContext(
                    invoked_by=self._invoked_by,
                    gamer=position.gamer,
                    holder=portfolio.copied_trader_address,
                    is_buy=True,
                    portfolio=portfolio,
                )
                try:
                    orders = await self._engine.evaluate_and_invoke_buy(ctx, rules)
                except TradingError as exc:
                    # no ack: the initializer times out and reports the failure
                    logger.error("Initial fill of %s for portfolio %s failed: %s", position.gamer, name, exc)
                    return proposed
                if not orders:
                    logger.error(
                        "Initial fill of %s for portfolio %s proposed no order; not acking",
                        position.gamer, name,
                    )
                    return proposed
                done.add(position.gamer)
                proposed.extend(orders)
                logger.info("Initial fill for gamer %s: %d bit(s) requested", position.gamer, position.quantity)

            self._filled.add(name)
            del self._filled_gamers[name]
            await self._ack()
            logger.info("Portfolio %s filled: %d proposal(s) across %d position(s)", name, len(proposed), len(positions))
            return proposed

    async def _ack(self) -> None:
        logger.info("Emitting %s", COPY_TRADE_BUY_POSITIONS_FILLED)
        await self._bus.publish(COPY_TRADE_BUY_POSITIONS_FILLED, {})


async def _main() -> None:
    from core.pipeline import build_pipeline
    from logging_config import setup_logging
    from trading_config import load_trading_environment

    setup_logging("copy_trader")
    config = load_trading_environment()
    if not config.event_bus_dsn:
        logger.error("EVENT_BUS_DSN is not configured")
        raise SystemExit(1)

    pipeline = build_pipeline(config, rules=[])
    bus = EventBus(config.event_bus_dsn)
    await bus.start()
    trader = CopyTrader(pipeline.engine, bus, invoked_by=config.copy_trader_invoker)
    await trader.start()
    try:
        await asyncio.Event().wait()
    finally:
        await bus.stop()


if __name__ == "__main__":
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("CopyTrader stopped by user.")
