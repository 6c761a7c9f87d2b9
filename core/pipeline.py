"""core/pipeline.py — builds the decision pipeline from one configuration.

Every collaborator is constructed here and handed to the next; nothing is a
module-level singleton, so tests and separate processes get isolated graphs.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from agent_tools.alert_dispatcher import build_default_dispatcher
from core.actions import TradeActions
from core.fleet import KeyFleet
from core.rules_engine import RulesEngine
from core.trade_guard import TradeGuard
from core.valuation import ValuationEngine
from database.portfolio_store import PortfolioStore
from database.position_store import PositionStore
from database.proposal_queue import ROLE_PRODUCER, TxGofer
from database.rule_store import RuleSetStore
from models.rule import Rule
from trading_config import TradingEnvironmentConfig


@dataclass(slots=True)
class TradingPipeline:
    position_store: PositionStore
    portfolio_store: PortfolioStore
    rule_store: RuleSetStore
    gofer: TxGofer
    fleet: KeyFleet
    guard: TradeGuard
    valuation: ValuationEngine
    actions: TradeActions
    engine: RulesEngine


def build_pipeline(
    config: TradingEnvironmentConfig,
    *,
    gofer_role: str = ROLE_PRODUCER,
    rules: Optional[Iterable[Rule]] = None,
) -> TradingPipeline:
    """Wire stores, queue, guard and engine.

    *rules* defaults to the rule-set at ``config.rules_path``; a malformed
    rule-set raises ConfigurationError here, before any trigger is handled.
    """
    position_store = PositionStore(config.position_db_path)
    portfolio_store = PortfolioStore(config.portfolio_db_path)
    rule_store = RuleSetStore(config.rules_path)
    gofer = TxGofer(
        config.proposal_db_url,
        gofer_role,
        alert_dispatcher=build_default_dispatcher(config.slack_webhook_url),
        claim_timeout_seconds=config.claim_timeout_seconds,
        io_timeout_seconds=config.queue_timeout_seconds,
    )
    fleet = KeyFleet(portfolio_store, config.default_key_fleet)
    guard = TradeGuard(position_store, gofer, fleet, max_bits_per_gamer=config.max_bits_per_gamer)
    valuation = ValuationEngine(position_store, fleet)
    actions = TradeActions(guard, gofer, valuation)
    engine = RulesEngine(actions, rule_store.load() if rules is None else rules)
    return TradingPipeline(
        position_store=position_store,
        portfolio_store=portfolio_store,
        rule_store=rule_store,
        gofer=gofer,
        fleet=fleet,
        guard=guard,
        valuation=valuation,
        actions=actions,
        engine=engine,
    )
