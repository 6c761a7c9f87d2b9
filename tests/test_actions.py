"""
tests/test_actions.py
─────────────────────
TradeActions: input validation, guard adjustment, stagnation alerts and the
duplicate-proposal policy, exercised end to end against real stores.
"""
from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import RecordingDispatcher, addr, trade
from core.actions import TradeActions
from core.errors import ValidationError
from database.portfolio_store import PortfolioStore
from database.position_store import PositionStore
from database.proposal_queue import TxGofer
from models.portfolio import CopyStrategy, Portfolio
from models.proposed_order import OrderSide
from models.rule import InvocationContext, Rule

A1, A2 = addr(0xA1), addr(0xA2)
B1, B2 = addr(0xB1), addr(0xB2)
TRADER = addr(0xC0)
GAMER = addr(0x20)


def _rule(action: str, rule_id: str = "r1", invoke_by: str = "tradeIndexer") -> Rule:
    return Rule.model_validate({"ruleID": rule_id, "invokeBy": [invoke_by], "action": action})


def _ctx(rule: Rule, **kwargs) -> InvocationContext:
    kwargs.setdefault("invoked_by", "tradeIndexer")
    kwargs.setdefault("gamer", GAMER)
    return InvocationContext(rule=rule, **kwargs)


def _portfolio(name: str = "P") -> Portfolio:
    return Portfolio(
        portfolio_name=name,
        key_fleet=[B1, B2],
        copied_trader_address=TRADER,
        copy_strategy=CopyStrategy.MID,
        initial_valuation_wei=10 * 10**18,
        initial_valuation_ethers=10.0,
    )


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -3, None])
    async def test_buy_without_positive_quantity_never_reaches_guard(self, quantity) -> None:
        guard = MagicMock()
        guard.adjust_buy_target_amount = AsyncMock(return_value=5)
        actions = TradeActions(guard, MagicMock(), MagicMock())

        with pytest.raises(ValidationError):
            await actions.buy_up_to(_ctx(_rule("buyUpTo(COPY_QTY)")), quantity)

        guard.adjust_buy_target_amount.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_gamer_rejected(self, actions: TradeActions) -> None:
        with pytest.raises(ValidationError):
            await actions.buy_up_to(_ctx(_rule("buyUpTo(2)"), gamer="not-an-address"), 2)

    @pytest.mark.asyncio
    async def test_unbound_rule_rejected(self, actions: TradeActions) -> None:
        with pytest.raises(ValidationError):
            await actions.buy_up_to(InvocationContext(invoked_by="manual", gamer=GAMER), 2)

    @pytest.mark.asyncio
    async def test_sell_of_zero_is_a_no_op(self, actions: TradeActions, producer: TxGofer) -> None:
        assert await actions.sell_bit(_ctx(_rule("sellBit(COPY_QTY)"), holder=A1), 0) is None
        assert await producer.list_pending() == []

    @pytest.mark.asyncio
    async def test_negative_sell_rejected(self, actions: TradeActions) -> None:
        with pytest.raises(ValidationError):
            await actions.sell_bit(_ctx(_rule("sellBit(COPY_QTY)"), holder=A1), -1)

    @pytest.mark.asyncio
    async def test_copy_buy_requires_portfolio(self, actions: TradeActions) -> None:
        with pytest.raises(ValidationError, match="portfolio"):
            await actions.copy_buy(_ctx(_rule("copyBuy(COPY_QTY)"), is_buy=True), 3)


class TestBuyUpTo:
    @pytest.mark.asyncio
    async def test_buy_has_no_holder(self, actions: TradeActions) -> None:
        order = await actions.buy_up_to(_ctx(_rule("buyUpTo(4)", invoke_by="manual"), invoked_by="manual"), 4)

        assert order.side == OrderSide.BUY.value
        assert order.quantity == 4
        assert order.holder == ""
        assert order.invoked_by == "manual"


class TestSellBit:
    @pytest.mark.asyncio
    async def test_clamped_to_stored_balance(
        self, writer_store: PositionStore, actions: TradeActions, caplog: pytest.LogCaptureFixture
    ) -> None:
        caplog.set_level(logging.INFO, logger="core.actions")
        await writer_store.record_trade(trade(A1, GAMER, block=1, qty=10, wei=1000))

        order = await actions.sell_bit(_ctx(_rule("sellBit(COPY_QTY)"), holder=A1), 12)

        assert order.quantity == 10
        assert order.holder == A1
        assert "from 12 to 10" in caplog.text

    @pytest.mark.asyncio
    async def test_auto_selects_largest_owner(self, writer_store: PositionStore, actions: TradeActions) -> None:
        await writer_store.record_trade(trade(A1, GAMER, block=1, qty=1, wei=100))
        await writer_store.record_trade(trade(A2, GAMER, block=2, qty=5, wei=500))

        order = await actions.sell_bit(
            _ctx(_rule("sellBitFromAutoSelectedFleetKey(3)")), 3, auto_select_holder=True
        )

        assert order.holder == A2
        assert order.quantity == 3

    @pytest.mark.asyncio
    async def test_nothing_held_and_nothing_pending_stays_quiet(
        self, actions: TradeActions, dispatcher: RecordingDispatcher
    ) -> None:
        assert await actions.sell_bit(_ctx(_rule("sellBit(COPY_QTY)"), holder=A1), 3) is None
        assert dispatcher.alerts == []

    @pytest.mark.asyncio
    async def test_nothing_held_but_pending_raises_one_alert(
        self, actions: TradeActions, producer: TxGofer, dispatcher: RecordingDispatcher
    ) -> None:
        await producer.propose_order(GAMER, OrderSide.SELL, 3, "earlier", "manual", holder=A1)

        assert await actions.sell_bit(_ctx(_rule("sellBit(COPY_QTY)"), holder=A1), 3) is None
        assert len(dispatcher.alerts) == 1

    @pytest.mark.asyncio
    async def test_duplicate_is_logged_and_alerted_not_retried(
        self,
        writer_store: PositionStore,
        actions: TradeActions,
        producer: TxGofer,
        dispatcher: RecordingDispatcher,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await writer_store.record_trade(trade(A1, GAMER, block=1, qty=10, wei=1000))
        ctx = _ctx(_rule("sellBit(COPY_QTY)"), holder=A1)

        first = await actions.sell_bit(ctx, 4)
        second = await actions.sell_bit(ctx, 4)

        assert first is not None and second is None
        assert len(dispatcher.alerts) == 1
        assert "not re-proposing" in caplog.text
        assert [o.id for o in await producer.list_pending()] == [first.id]


class TestCopyActions:
    @pytest.mark.asyncio
    async def test_copy_buy_ignores_sells(self, actions: TradeActions) -> None:
        ctx = _ctx(_rule("copyBuy(COPY_QTY)"), is_buy=False, portfolio=_portfolio())
        assert await actions.copy_buy(ctx, 3) is None

    @pytest.mark.asyncio
    async def test_initial_fill_skips_stop_loss(
        self, portfolio_store: PortfolioStore, actions: TradeActions
    ) -> None:
        portfolio = _portfolio()
        await portfolio_store.add_portfolio(portfolio)
        ctx = _ctx(_rule("copyBuy(COPY_QTY, true)"), is_buy=True, portfolio=portfolio, holder=TRADER)

        order = await actions.copy_buy(ctx, 9, is_initial_fill=True)

        assert order.quantity == 9
        assert order.portfolio_name == "P"
        assert order.holder == ""

    @pytest.mark.asyncio
    async def test_fresh_portfolio_is_held_back_by_stop_loss(
        self, portfolio_store: PortfolioStore, actions: TradeActions, producer: TxGofer
    ) -> None:
        portfolio = _portfolio()
        await portfolio_store.add_portfolio(portfolio)
        ctx = _ctx(_rule("copyBuy(COPY_QTY)"), is_buy=True, portfolio=portfolio, holder=TRADER)

        assert await actions.copy_buy(ctx, 2) is None
        assert await producer.list_pending() == []

    @pytest.mark.asyncio
    async def test_copy_sell_uses_portfolio_largest_owner(
        self, writer_store: PositionStore, portfolio_store: PortfolioStore, actions: TradeActions
    ) -> None:
        portfolio = _portfolio()
        await portfolio_store.add_portfolio(portfolio)
        await writer_store.record_trade(trade(B1, GAMER, block=1, qty=1, wei=100))
        await writer_store.record_trade(trade(B2, GAMER, block=2, qty=4, wei=400))
        # a larger holder outside the portfolio is not considered
        await writer_store.record_trade(trade(A1, GAMER, block=3, qty=40, wei=4000))
        ctx = _ctx(_rule("copySell(COPY_QTY)"), is_buy=False, portfolio=portfolio, holder=TRADER)

        order = await actions.copy_sell(ctx, 6)

        assert order.holder == B2
        assert order.quantity == 4
        assert order.side == OrderSide.SELL.value
