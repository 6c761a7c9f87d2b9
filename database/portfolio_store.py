"""database/portfolio_store.py — append-only copy-trade portfolio configuration.

Two tables:

    portfolios         one row per portfolio, JSON payload, insertion order kept
    portfolio_wallets  wallet address → portfolio name; the PRIMARY KEY on the
                       address enforces "a wallet belongs to at most one
                       portfolio" at write time, inside the same transaction
                       that inserts the portfolio.

No update or delete API.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
from typing import Optional

import aiosqlite  # type: ignore[import]

from core.errors import ConfigurationError, ValidationError
from models.portfolio import Portfolio, normalize_address

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = os.path.join(
    os.path.dirname(os.path.dirname(__file__)), "data", "portfolios.db"
)


class PortfolioStore:
    """Async SQLite store for :class:`models.portfolio.Portfolio` records."""

    def __init__(self, db_path: str = _DEFAULT_DB_PATH) -> None:
        self._db_path = db_path
        self._initialised = False

    async def _ensure_init(self) -> None:
        if self._initialised:
            return
        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS portfolios (
                    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
                    portfolio_name  TEXT NOT NULL UNIQUE,
                    payload         TEXT NOT NULL,
                    created_at      TEXT NOT NULL
                );
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS portfolio_wallets (
                    address         TEXT PRIMARY KEY,
                    portfolio_name  TEXT NOT NULL,
                    position        INTEGER NOT NULL
                );
                """
            )
            await db.commit()
        self._initialised = True
        logger.info("PortfolioStore ready at %s", self._db_path)

    # ------------------------------------------------------------------ #
    # Write                                                                #
    # ------------------------------------------------------------------ #

    async def add_portfolio(self, portfolio: Portfolio) -> None:
        """Append *portfolio*; rejects a taken name or an already-assigned wallet.

        Nothing is written when validation fails.
        """
        await self._ensure_init()
        async with aiosqlite.connect(self._db_path) as db:
            try:
                await db.execute(
                    "INSERT INTO portfolios (portfolio_name, payload, created_at) VALUES (?, ?, ?);",
                    (
                        portfolio.portfolio_name,
                        json.dumps(portfolio.to_payload()),
                        portfolio.created_at.isoformat(),
                    ),
                )
                await db.executemany(
                    "INSERT INTO portfolio_wallets (address, portfolio_name, position) VALUES (?, ?, ?);",
                    [
                        (address, portfolio.portfolio_name, idx)
                        for idx, address in enumerate(portfolio.key_fleet)
                    ],
                )
                await db.commit()
            except sqlite3.IntegrityError as exc:
                await db.rollback()
                raise ValidationError(
                    "portfolio name taken or key fleet wallet already assigned to another portfolio",
                    details={"portfolio": portfolio.portfolio_name, "reason": str(exc)},
                ) from exc
        logger.info(
            "Added portfolio %s (%d wallets, strategy=%s)",
            portfolio.portfolio_name, len(portfolio.key_fleet), portfolio.copy_strategy.value,
        )

    # ------------------------------------------------------------------ #
    # Read                                                                 #
    # ------------------------------------------------------------------ #

    async def read_all_portfolios(self) -> list[Portfolio]:
        """All portfolios in creation order."""
        await self._ensure_init()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute("SELECT payload FROM portfolios ORDER BY seq;") as cursor:
                rows = await cursor.fetchall()
        portfolios = [Portfolio.model_validate(json.loads(row[0])) for row in rows]
        self._check_fleet_uniqueness(portfolios)
        return portfolios

    async def find_portfolio(self, portfolio_name: str) -> Optional[Portfolio]:
        await self._ensure_init()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT payload FROM portfolios WHERE portfolio_name = ?;",
                (portfolio_name.strip(),),
            ) as cursor:
                row = await cursor.fetchone()
        return Portfolio.model_validate(json.loads(row[0])) if row else None

    async def get_portfolio(self, portfolio_name: str) -> Portfolio:
        """Validate *portfolio_name* and return its portfolio."""
        portfolio = await self.find_portfolio(portfolio_name)
        if portfolio is None:
            raise ValidationError("Portfolio not found.", details={"portfolio": portfolio_name})
        return portfolio

    async def find_portfolio_by_key_fleet_address(self, address: str) -> Optional[Portfolio]:
        await self._ensure_init()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute(
                "SELECT portfolio_name FROM portfolio_wallets WHERE address = ?;",
                (normalize_address(address),),
            ) as cursor:
                row = await cursor.fetchone()
        return await self.find_portfolio(row[0]) if row else None

    async def find_portfolios_by_copied_trader(self, address: str) -> list[Portfolio]:
        """Portfolios copying *address* (several portfolios may copy one trader)."""
        wanted = normalize_address(address)
        return [p for p in await self.read_all_portfolios() if p.copied_trader_address == wanted]

    async def assigned_addresses(self) -> set[str]:
        await self._ensure_init()
        async with aiosqlite.connect(self._db_path) as db:
            async with db.execute("SELECT address FROM portfolio_wallets;") as cursor:
                rows = await cursor.fetchall()
        return {row[0] for row in rows}

    @staticmethod
    def _check_fleet_uniqueness(portfolios: list[Portfolio]) -> None:
        seen: dict[str, str] = {}
        for portfolio in portfolios:
            for address in portfolio.key_fleet:
                owner = seen.setdefault(address, portfolio.portfolio_name)
                if owner != portfolio.portfolio_name:
                    raise ConfigurationError(
                        "wallet appears in more than one portfolio",
                        details={"address": address, "portfolios": [owner, portfolio.portfolio_name]},
                    )
