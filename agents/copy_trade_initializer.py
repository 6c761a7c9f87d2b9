"""
agents/copy_trade_initializer.py
────────────────────────────────
One-shot copy-trade portfolio setup.

1. validate the request (name, fleet wallets, copied trader, strategy)
2. read the copied trader's current positions, largest first
3. size them by strategy and price them through the Chain Gateway
4. check the fleet's buyer-token balance covers the initial buys
5. persist the Portfolio and append its copyBuy/copySell rules
6. publish the fill request and block until the filler acks

Exit codes: 0 after the ack; 1 on a validation, configuration or gateway
failure (nothing is written when this happens before step 5); 2 when the
ack does not arrive within the handshake timeout.

Usage::

    python agents/copy_trade_initializer.py --name alpha \\
        --fleet 0xaaa…,0xbbb… --copied-trader 0xccc… --strategy mid
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from adapters.chain_gateway import ChainGateway, call_with_timeout
from core.copy_trade import (
    CopyTradeHandshake,
    HandshakeState,
    InitialPositionPlan,
    build_copy_trade_rules,
    build_fill_request,
    calculate_initial_positions,
)
from core.errors import ConfigurationError, TradingError, ValidationError
from core.event_bus import BaseEventBus
from database.portfolio_store import PortfolioStore
from database.position_store import PositionStore
from database.rule_store import RuleSetStore
from models.portfolio import CopyStrategy, Portfolio, normalize_address

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_NO_ACK = 2


class CopyTradeInitializer:
    def __init__(
        self,
        position_store: PositionStore,
        portfolio_store: PortfolioStore,
        rule_store: RuleSetStore,
        gateway: ChainGateway,
        bus: BaseEventBus,
        *,
        handshake_timeout: float = 600.0,
        gateway_timeout: float = 15.0,
        rule_invoker: str = "tradeIndexer",
    ) -> None:
        self._positions = position_store
        self._portfolios = portfolio_store
        self._rules = rule_store
        self._gateway = gateway
        self._bus = bus
        self._handshake_timeout = handshake_timeout
        self._gateway_timeout = gateway_timeout
        self._rule_invoker = rule_invoker

    async def _validate_fleet(self, portfolio_name: str, key_fleet: list[str]) -> None:
        if await self._portfolios.find_portfolio(portfolio_name) is not None:
            raise ValidationError("portfolio name already exists", details={"portfolio": portfolio_name})
        taken = await self._portfolios.assigned_addresses()
        clash = [a for a in key_fleet if a in taken]
        if clash:
            raise ValidationError(
                "Fleet key addresses must be unique and not present in an existing portfolio's key fleet",
                details={"addresses": clash},
            )

    async def copied_trader_positions(self, copied_trader: str) -> list[tuple[str, int]]:
        """Non-empty positions of *copied_trader*, largest quantity first."""
        full_store = await self._positions.get_full_store([copied_trader])
        held = [
            (gamer, position.quantity)
            for gamer, position in full_store.get(copied_trader, {}).items()
            if position.quantity > 0
        ]
        if not held:
            raise ValidationError("No positions found for the copied trader", details={"trader": copied_trader})
        # stable sort keeps store order among equal quantities
        return sorted(held, key=lambda item: item[1], reverse=True)

    async def check_buying_power(self, key_fleet: Iterable[str], plan: InitialPositionPlan) -> int:
        total = 0
        for wallet in key_fleet:
            total += await call_with_timeout(
                self._gateway.balance_of(wallet), self._gateway_timeout, f"balance_of({wallet})"
            )
        if total < plan.total_buy_price_wei:
            raise ValidationError(
                "key fleet balance does not cover the initial positions",
                details={"balance_wei": total, "required_wei": plan.total_buy_price_wei},
            )
        return total

    async def prepare(
        self,
        portfolio_name: str,
        key_fleet: list[str],
        copied_trader: str,
        strategy: CopyStrategy | str,
        stop_loss_percent: float = 5.0,
    ) -> tuple[Portfolio, InitialPositionPlan]:
        """Steps 1–4 plus a rule-set check; reads only, writes nothing."""
        try:
            strategy = CopyStrategy(strategy)
        except ValueError as exc:
            raise ValidationError("unknown copy strategy", details={"strategy": strategy}) from exc
        if strategy is CopyStrategy.NONE:
            raise ValidationError("Copy trade strategy is none")
        try:
            fleet = [normalize_address(a) for a in key_fleet]
            trader = normalize_address(copied_trader)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if len(set(fleet)) != len(fleet):
            raise ValidationError("Fleet key addresses must be unique", details={"fleet": fleet})

        await self._validate_fleet(portfolio_name, fleet)
        copied = await self.copied_trader_positions(trader)
        plan = await calculate_initial_positions(copied, strategy, self._gateway, timeout=self._gateway_timeout)
        await self.check_buying_power(fleet, plan)

        try:
            portfolio = Portfolio(
                portfolio_name=portfolio_name,
                key_fleet=fleet,
                copied_trader_address=trader,
                copy_strategy=strategy,
                initial_valuation_wei=plan.total_buy_price_wei,
                initial_valuation_ethers=plan.total_buy_price_ethers,
                stop_loss_percent=stop_loss_percent,
            )
        except ValueError as exc:
            raise ValidationError("invalid portfolio", details={"error": str(exc)}) from exc

        # a malformed rule-set fails here, before the portfolio is stored
        self._rules.rules_to_append(build_copy_trade_rules(portfolio, self._rule_invoker))
        return portfolio, plan

    async def run(
        self,
        portfolio_name: str,
        key_fleet: list[str],
        copied_trader: str,
        strategy: CopyStrategy | str,
        stop_loss_percent: float = 5.0,
    ) -> int:
        """Full setup; returns the process exit code."""
        try:
            portfolio, plan = await self.prepare(
                portfolio_name, key_fleet, copied_trader, strategy, stop_loss_percent
            )
            await self._portfolios.add_portfolio(portfolio)
        except TradingError as exc:
            logger.error("Copy-trade setup rejected: %s", exc)
            return EXIT_INVALID

        added = self._rules.append_rules(build_copy_trade_rules(portfolio, self._rule_invoker))
        logger.info(
            "Portfolio %s created: %d position(s), %d bit(s), %.6f initial valuation, %d rule(s) added",
            portfolio.portfolio_name, len(plan.positions), plan.total_quantity,
            plan.total_buy_price_ethers, len(added),
        )

        handshake = CopyTradeHandshake(self._bus, timeout=self._handshake_timeout)
        state = await handshake.request(build_fill_request(portfolio, plan))
        if state is HandshakeState.DONE:
            logger.info("Initial positions for %s filled", portfolio.portfolio_name)
            return EXIT_OK
        logger.error("Initial fill for %s not acknowledged (state=%s)", portfolio.portfolio_name, state.value)
        return EXIT_NO_ACK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a copy-trade portfolio and fill its initial positions")
    parser.add_argument("--name", required=True, help="Portfolio name")
    parser.add_argument("--fleet", required=True, help="Comma-separated key fleet wallet addresses")
    parser.add_argument("--copied-trader", required=True, help="Wallet address of the trader to copy")
    parser.add_argument("--strategy", default="min", choices=[s.value for s in CopyStrategy if s is not CopyStrategy.NONE])
    parser.add_argument("--stop-loss", type=float, default=5.0, help="Stop-loss percent (1-10)")
    parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for the filler's ack")
    return parser


async def _main(argv: Optional[list[str]] = None) -> int:
    from adapters.chain_gateway import HttpChainGateway
    from core.event_bus import EventBus
    from logging_config import setup_logging
    from trading_config import load_trading_environment

    args = build_parser().parse_args(argv)
    setup_logging("copy_trade_initializer")
    config = load_trading_environment()
    if not config.event_bus_dsn:
        logger.error("EVENT_BUS_DSN is not configured")
        return EXIT_INVALID

    try:
        gateway = HttpChainGateway(config.chain_gateway_url, timeout=config.gateway_timeout_seconds)
    except ValueError as exc:
        logger.error("%s", exc)
        return EXIT_INVALID

    bus = EventBus(config.event_bus_dsn)
    await bus.start()
    try:
        initializer = CopyTradeInitializer(
            PositionStore(config.position_db_path),
            PortfolioStore(config.portfolio_db_path),
            RuleSetStore(config.rules_path),
            gateway,
            bus,
            handshake_timeout=args.timeout or config.handshake_timeout_seconds,
            gateway_timeout=config.gateway_timeout_seconds,
            rule_invoker=config.indexer_invoker,
        )
        return await initializer.run(
            args.name,
            [a for a in args.fleet.split(",") if a.strip()],
            args.copied_trader,
            args.strategy,
            args.stop_loss,
        )
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_INVALID
    finally:
        await bus.stop()
        await gateway.aclose()


if __name__ == "__main__":
    sys.exit(asyncio.run(_main()))
