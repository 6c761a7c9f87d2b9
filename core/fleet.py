"""core/fleet.py — which wallets trade for which portfolio.

Enumeration order is part of the contract (it decides ties in
TradeGuard.get_largest_key_fleet_owner_of_gamer):

    portfolio-scoped: the portfolio's key_fleet in declared order
    fleet-wide:       DEFAULT_KEY_FLEET in declared order, then every
                      portfolio's key_fleet in portfolio creation order,
                      skipping addresses already listed
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from database.portfolio_store import PortfolioStore
from models.portfolio import normalize_address

logger = logging.getLogger(__name__)


class KeyFleet:
    def __init__(self, portfolio_store: PortfolioStore, default_fleet: Iterable[str] = ()) -> None:
        self._portfolios = portfolio_store
        self._default_fleet = [normalize_address(a) for a in default_fleet]

    async def get_all_addresses(self, portfolio_name: Optional[str] = None) -> list[str]:
        if portfolio_name:
            portfolio = await self._portfolios.get_portfolio(portfolio_name)
            return list(portfolio.key_fleet)

        ordered: list[str] = []
        seen: set[str] = set()
        portfolios = await self._portfolios.read_all_portfolios()
        for address in [*self._default_fleet, *(a for p in portfolios for a in p.key_fleet)]:
            if address not in seen:
                seen.add(address)
                ordered.append(address)
        return ordered
