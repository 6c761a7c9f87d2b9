"""
core/copy_trade.py
──────────────────
Copy-trade building blocks shared by the initializer and the filler.

* strategy sizing and pricing of a copied trader's positions
* the rules a portfolio adds to the shared rule-set (copyBuy / copySell,
  invoked by the trade indexer when the copied trader trades)
* the one-shot initial-fill rules the filler evaluates once per portfolio
* the request/ack handshake between initializer and filler

Handshake states::

    IDLE ──request()──▶ AWAITING_ACK ──ack──▶ DONE
                             │
                             └──timeout──▶ FAILED

The initializer blocks on an ``asyncio.Event``; there is no polling loop.
"""
from __future__ import annotations

import asyncio
import logging
import math
from enum import Enum
from typing import Iterable

from pydantic import BaseModel

from adapters.chain_gateway import ChainGateway, call_with_timeout, wei_to_ether
from core.errors import InvalidTransitionError, ValidationError
from core.event_bus import BaseEventBus
from models.portfolio import CopyStrategy, Portfolio
from models.rule import Condition, CopyBuy, CopySell, Rule, CONTEXT_QUANTITY

logger = logging.getLogger(__name__)

COPY_TRADE_BUY_FILL_POSITIONS = "copy_trade_buy_fill_positions"
COPY_TRADE_BUY_POSITIONS_FILLED = "copy_trade_buy_positions_filled"

INITIAL_POSITIONS_KEY = "new_portfolio_initial_positions"
INITIAL_FILL_RULE_ID = "copyTradeInitialFill"


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------

class InitialPosition(BaseModel):
    gamer: str
    quantity: int
    buy_price_wei: int = 0
    buy_price_ethers: float = 0.0


class InitialPositionPlan(BaseModel):
    positions: list[InitialPosition]
    total_quantity: int = 0
    total_buy_price_wei: int = 0
    total_buy_price_ethers: float = 0.0


def size_for_strategy(quantity: int, strategy: CopyStrategy | str) -> int:
    """Bits to buy for one copied position of *quantity* bits."""
    strategy = CopyStrategy(strategy)
    if strategy is CopyStrategy.NONE:
        raise ValidationError("Copy trade strategy is none")
    if quantity <= 0:
        raise ValidationError("copied position quantity must be positive", details={"quantity": quantity})
    if strategy is CopyStrategy.MIN:
        return 1
    if strategy is CopyStrategy.MID:
        return math.ceil(quantity / 2)
    return quantity


async def calculate_initial_positions(
    copied_positions: Iterable[tuple[str, int]],
    strategy: CopyStrategy | str,
    gateway: ChainGateway,
    *,
    timeout: float = 15.0,
) -> InitialPositionPlan:
    """Size each copied (gamer, quantity) by *strategy* and price it via the gateway.

    Positions keep the order they are given in.
    """
    decimals = await call_with_timeout(gateway.decimals(), timeout, "decimals")
    plan = InitialPositionPlan(positions=[])
    for gamer, copied_quantity in copied_positions:
        quantity = size_for_strategy(copied_quantity, strategy)
        price_wei = await call_with_timeout(
            gateway.get_buy_price(gamer, quantity, "latest"), timeout, f"get_buy_price({gamer})"
        )
        position = InitialPosition(
            gamer=gamer,
            quantity=quantity,
            buy_price_wei=int(price_wei),
            buy_price_ethers=wei_to_ether(price_wei, decimals),
        )
        plan.positions.append(position)
        plan.total_quantity += quantity
        plan.total_buy_price_wei += position.buy_price_wei
    plan.total_buy_price_ethers = wei_to_ether(plan.total_buy_price_wei, decimals)
    return plan


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def build_copy_trade_rules(portfolio: Portfolio, invoked_by: str = "tradeIndexer") -> list[Rule]:
    """Rules mirroring the copied trader's buys and sells for *portfolio*."""
    conditions = (
        Condition(name="copyTrade", args=(portfolio.portfolio_name,)),
        Condition(name="isCopiedTrader"),
    )
    return [
        Rule(
            rule_id=f"copyBuy:{portfolio.portfolio_name}",
            invoke_by=(invoked_by,),
            conditions=conditions,
            action=CopyBuy(quantity=CONTEXT_QUANTITY),
        ),
        Rule(
            rule_id=f"copySell:{portfolio.portfolio_name}",
            invoke_by=(invoked_by,),
            conditions=conditions,
            action=CopySell(quantity=CONTEXT_QUANTITY),
        ),
    ]


def build_initial_fill_rules(
    portfolio_name: str, positions: Iterable[InitialPosition], invoked_by: str = "copyTrader"
) -> list[Rule]:
    """One one-shot rule per target position, keyed to portfolio and gamer."""
    return [
        Rule(
            rule_id=f"{INITIAL_FILL_RULE_ID}:{portfolio_name}:{position.gamer}",
            invoke_by=(invoked_by,),
            conditions=(
                Condition(name="copyTrade", args=(portfolio_name,)),
                Condition(name="gamerIs", args=(position.gamer,)),
            ),
            action=CopyBuy(quantity=position.quantity, is_initial_fill=True),
        )
        for position in positions
    ]


def build_fill_request(portfolio: Portfolio, plan: InitialPositionPlan) -> dict:
    payload = portfolio.to_payload()
    payload[INITIAL_POSITIONS_KEY] = [p.model_dump(mode="json") for p in plan.positions]
    return payload


def parse_fill_request(payload: dict) -> tuple[Portfolio, list[InitialPosition]]:
    try:
        portfolio = Portfolio.model_validate(payload)
        positions = [InitialPosition.model_validate(p) for p in payload.get(INITIAL_POSITIONS_KEY, [])]
    except ValueError as exc:
        raise ValidationError("malformed fill-positions request", details={"error": str(exc)}) from exc
    return portfolio, positions


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

class HandshakeState(str, Enum):
    IDLE = "IDLE"
    AWAITING_ACK = "AWAITING_ACK"
    DONE = "DONE"
    FAILED = "FAILED"


class CopyTradeHandshake:
    """Initializer side of the fill-positions request/ack exchange.

    Args:
        bus:     Started event bus shared with the filler.
        timeout: Seconds to wait for the ack before moving to FAILED.
    """

    def __init__(self, bus: BaseEventBus, *, timeout: float = 600.0) -> None:
        self._bus = bus
        self._timeout = timeout
        self._state = HandshakeState.IDLE
        self._acked = asyncio.Event()
        self._subscribed = False

    @property
    def state(self) -> HandshakeState:
        return self._state

    async def _on_ack(self, _payload: dict) -> None:
        if self._state is not HandshakeState.AWAITING_ACK:
            logger.debug("Ignoring positions-filled ack in state %s", self._state.value)
            return
        self._state = HandshakeState.DONE
        self._acked.set()

    async def request(self, payload: dict) -> HandshakeState:
        if self._state is not HandshakeState.IDLE:
            raise InvalidTransitionError(
                "handshake request already sent", details={"state": self._state.value}
            )
        if not self._subscribed:
            # listen before publishing so a fast ack cannot be missed
            await self._bus.subscribe(COPY_TRADE_BUY_POSITIONS_FILLED, self._on_ack)
            self._subscribed = True

        self._state = HandshakeState.AWAITING_ACK
        await self._bus.publish(COPY_TRADE_BUY_FILL_POSITIONS, payload)
        logger.info(
            "Requested initial fill for portfolio %s; waiting up to %.0fs for ack",
            payload.get("portfolio_name"), self._timeout,
        )
        try:
            await asyncio.wait_for(self._acked.wait(), timeout=self._timeout)
        except asyncio.TimeoutError:
            self._state = HandshakeState.FAILED
            logger.error("No positions-filled ack within %.0fs", self._timeout)
        return self._state

    def reset(self) -> HandshakeState:
        """Return a FAILED handshake to IDLE so the request can be re-sent."""
        if self._state is not HandshakeState.FAILED:
            raise InvalidTransitionError("only a FAILED handshake can be reset", details={"state": self._state.value})
        self._acked.clear()
        self._state = HandshakeState.IDLE
        return self._state
