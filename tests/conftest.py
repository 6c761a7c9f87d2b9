from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from agent_tools.alert_dispatcher import AlertDispatcher
from core.actions import TradeActions
from core.fleet import KeyFleet
from core.rules_engine import RulesEngine
from core.trade_guard import TradeGuard
from core.valuation import ValuationEngine
from database.portfolio_store import PortfolioStore
from database.position_store import ROLE_WRITER, PositionStore
from database.proposal_queue import ROLE_CONSUMER, ROLE_PRODUCER, TxGofer, make_engine
from models.position import BitTrade


def addr(n: int) -> str:
    """Deterministic, valid, lower-case wallet/gamer address."""
    return "0x" + f"{n:040x}"


class RecordingDispatcher(AlertDispatcher):
    def __init__(self) -> None:
        self.alerts: list[tuple[str, list[dict[str, Any]]]] = []

    def dispatch(self, title: str, pending: list[dict[str, Any]]) -> None:
        self.alerts.append((title, pending))


_tx_counter = 0


def trade(holder: str, gamer: str, *, block: int, qty: int, wei: int, buy: bool = True) -> BitTrade:
    global _tx_counter
    _tx_counter += 1
    return BitTrade(
        holder=holder,
        gamer=gamer,
        block_number=block,
        is_buy=buy,
        quantity=qty,
        eth_amount_wei=wei,
        tx_hash=f"0xtx{_tx_counter:06d}",
        log_index=0,
    )


@pytest.fixture
def position_db(tmp_path: Path) -> str:
    return str(tmp_path / "positions.db")


@pytest.fixture
def writer_store(position_db: str) -> PositionStore:
    return PositionStore(position_db, role=ROLE_WRITER)


@pytest.fixture
def reader_store(position_db: str) -> PositionStore:
    return PositionStore(position_db)


@pytest.fixture
def portfolio_store(tmp_path: Path) -> PortfolioStore:
    return PortfolioStore(str(tmp_path / "portfolios.db"))


@pytest.fixture
def proposal_engine(tmp_path: Path):
    engine = make_engine(f"sqlite:///{tmp_path / 'proposals.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def producer(proposal_engine, dispatcher: RecordingDispatcher) -> TxGofer:
    return TxGofer(proposal_engine, ROLE_PRODUCER, alert_dispatcher=dispatcher)


@pytest.fixture
def consumer(proposal_engine) -> TxGofer:
    return TxGofer(proposal_engine, ROLE_CONSUMER, claim_timeout_seconds=60)


@pytest.fixture
def fleet(portfolio_store: PortfolioStore) -> KeyFleet:
    return KeyFleet(portfolio_store, default_fleet=[addr(0xA1), addr(0xA2)])


@pytest.fixture
def guard(reader_store: PositionStore, producer: TxGofer, fleet: KeyFleet) -> TradeGuard:
    return TradeGuard(reader_store, producer, fleet)


@pytest.fixture
def valuation(reader_store: PositionStore, fleet: KeyFleet) -> ValuationEngine:
    return ValuationEngine(reader_store, fleet)


@pytest.fixture
def actions(guard: TradeGuard, producer: TxGofer, valuation: ValuationEngine) -> TradeActions:
    return TradeActions(guard, producer, valuation)


@pytest.fixture
def rules_engine(actions: TradeActions) -> RulesEngine:
    return RulesEngine(actions)
