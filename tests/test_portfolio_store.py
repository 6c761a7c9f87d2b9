"""
tests/test_portfolio_store.py
─────────────────────────────
Portfolio model validation and the append-only PortfolioStore.
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import addr
from core.errors import ValidationError
from core.fleet import KeyFleet
from database.portfolio_store import PortfolioStore
from models.portfolio import CopyStrategy, Portfolio


def _portfolio(name: str, *fleet: int, trader: int = 0xC0) -> Portfolio:
    return Portfolio(
        portfolio_name=name,
        key_fleet=[addr(n) for n in fleet],
        copied_trader_address=addr(trader),
        copy_strategy=CopyStrategy.MID,
        initial_valuation_wei=2 * 10**18,
        initial_valuation_ethers=2.0,
    )


class TestPortfolioModel:
    def test_addresses_are_normalised(self) -> None:
        p = Portfolio(portfolio_name=" alpha ", key_fleet=["0x" + "AB" * 20])
        assert p.portfolio_name == "alpha"
        assert p.key_fleet == ["0x" + "ab" * 20]

    def test_empty_fleet_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            Portfolio(portfolio_name="alpha", key_fleet=[])

    def test_invalid_address_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            Portfolio(portfolio_name="alpha", key_fleet=["0x1234"])

    def test_stop_loss_bounds(self) -> None:
        with pytest.raises(PydanticValidationError):
            Portfolio(portfolio_name="alpha", key_fleet=[addr(1)], stop_loss_percent=11)
        with pytest.raises(PydanticValidationError):
            Portfolio(portfolio_name="alpha", key_fleet=[addr(1)], stop_loss_percent=0.5)

    def test_copied_trader_cannot_be_in_fleet(self) -> None:
        with pytest.raises(PydanticValidationError):
            Portfolio(portfolio_name="alpha", key_fleet=[addr(1)], copied_trader_address=addr(1))

    def test_target_valuation(self) -> None:
        p = _portfolio("alpha", 1)
        assert p.target_valuation_ethers == pytest.approx(1.9)

    def test_payload_round_trip(self) -> None:
        p = _portfolio("alpha", 1, 2)
        restored = Portfolio.model_validate(p.to_payload())
        assert restored == p
        assert isinstance(p.to_payload()["initial_valuation_wei"], str)


class TestPortfolioStore:
    @pytest.mark.asyncio
    async def test_add_and_lookup(self, portfolio_store: PortfolioStore) -> None:
        await portfolio_store.add_portfolio(_portfolio("alpha", 1, 2))

        assert (await portfolio_store.get_portfolio("alpha")).key_fleet == [addr(1), addr(2)]
        assert (await portfolio_store.find_portfolio_by_key_fleet_address(addr(2))).portfolio_name == "alpha"
        assert await portfolio_store.find_portfolio_by_key_fleet_address(addr(3)) is None
        assert [p.portfolio_name for p in await portfolio_store.find_portfolios_by_copied_trader(addr(0xC0))] == ["alpha"]

    @pytest.mark.asyncio
    async def test_unknown_name_raises(self, portfolio_store: PortfolioStore) -> None:
        with pytest.raises(ValidationError, match="Portfolio not found"):
            await portfolio_store.get_portfolio("nope")

    @pytest.mark.asyncio
    async def test_wallet_in_two_portfolios_rejected(self, portfolio_store: PortfolioStore) -> None:
        await portfolio_store.add_portfolio(_portfolio("alpha", 1, 2))

        with pytest.raises(ValidationError):
            await portfolio_store.add_portfolio(_portfolio("beta", 2, 3))

        assert await portfolio_store.find_portfolio("beta") is None
        assert await portfolio_store.assigned_addresses() == {addr(1), addr(2)}

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, portfolio_store: PortfolioStore) -> None:
        await portfolio_store.add_portfolio(_portfolio("alpha", 1))
        with pytest.raises(ValidationError):
            await portfolio_store.add_portfolio(_portfolio("alpha", 5))

    @pytest.mark.asyncio
    async def test_portfolios_come_back_in_creation_order(self, portfolio_store: PortfolioStore) -> None:
        for name, wallet in (("zeta", 1), ("alpha", 2), ("mid", 3)):
            await portfolio_store.add_portfolio(_portfolio(name, wallet))

        assert [p.portfolio_name for p in await portfolio_store.read_all_portfolios()] == ["zeta", "alpha", "mid"]


class TestKeyFleet:
    @pytest.mark.asyncio
    async def test_enumeration_order(self, portfolio_store: PortfolioStore) -> None:
        await portfolio_store.add_portfolio(_portfolio("alpha", 3, 4))
        await portfolio_store.add_portfolio(_portfolio("beta", 5))
        fleet = KeyFleet(portfolio_store, default_fleet=[addr(1), addr(3)])

        assert await fleet.get_all_addresses() == [addr(1), addr(3), addr(4), addr(5)]
        assert await fleet.get_all_addresses("alpha") == [addr(3), addr(4)]
