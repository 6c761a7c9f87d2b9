"""database/position_store.py — SQLite-backed holder → gamer → position store.

Single-writer / multi-reader:

* Only a store opened with ``role=ROLE_WRITER`` (the chain indexer process)
  may call :meth:`PositionStore.record_trade`.  Each trade and the position
  row it changes are committed in one ``BEGIN IMMEDIATE`` transaction.
* Readers never lock.  The database runs in WAL mode, so a reader sees each
  position either before or after a writer's commit, never half-written, and
  :meth:`get_full_store` reads everything inside one read transaction so the
  snapshot it returns is internally consistent and never goes backwards.

Uses :mod:`aiosqlite`; the file is created on first use.
"""
from __future__ import annotations

import logging
import os
from typing import Iterable, Optional

import aiosqlite  # type: ignore[import]

from core.errors import ValidationError
from models.portfolio import normalize_address
from models.position import BitTrade, FullStore, Position

logger = logging.getLogger(__name__)

ROLE_READER = "reader"
ROLE_WRITER = "writer"

_DEFAULT_DB_PATH = os.path.join(
    os.path.dirname(os.path.dirname(__file__)), "data", "positions.db"
)


def _key(address: str) -> str:
    return address.strip().lower()


class PositionStore:
    """Async SQLite position store.

    Args:
        db_path: Path of the SQLite file (created on first use).
        role:    ``ROLE_READER`` (default) or ``ROLE_WRITER``.
    """

    def __init__(self, db_path: str = _DEFAULT_DB_PATH, *, role: str = ROLE_READER) -> None:
        if role not in (ROLE_READER, ROLE_WRITER):
            raise ValueError(f"Unknown PositionStore role: {role!r}")
        self._db_path = db_path
        self._role = role
        self._initialised = False

    @property
    def role(self) -> str:
        return self._role

    # ------------------------------------------------------------------ #
    # Lifecycle                                                            #
    # ------------------------------------------------------------------ #

    def _connect(self) -> aiosqlite.Connection:
        # isolation_level=None: transactions are opened explicitly below
        return aiosqlite.connect(self._db_path, isolation_level=None)

    async def _ensure_init(self) -> None:
        if self._initialised:
            return
        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL;")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS positions (
                    holder      TEXT NOT NULL,
                    gamer       TEXT NOT NULL,
                    quantity    INTEGER NOT NULL CHECK (quantity >= 0),
                    last_block  INTEGER,
                    PRIMARY KEY (holder, gamer)
                );
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS bit_trades (
                    tx_hash         TEXT NOT NULL,
                    log_index       INTEGER NOT NULL,
                    holder          TEXT NOT NULL,
                    gamer           TEXT NOT NULL,
                    block_number    INTEGER NOT NULL,
                    is_buy          INTEGER NOT NULL,
                    quantity        INTEGER NOT NULL CHECK (quantity > 0),
                    eth_amount_wei  TEXT NOT NULL,
                    PRIMARY KEY (tx_hash, log_index)
                );
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS ix_bt_holder_gamer ON bit_trades(holder, gamer, block_number);"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS ix_pos_gamer ON positions(gamer);"
            )
        self._initialised = True
        logger.info("PositionStore ready at %s (role=%s)", self._db_path, self._role)

    # ------------------------------------------------------------------ #
    # Writer                                                               #
    # ------------------------------------------------------------------ #

    async def record_trade(self, trade: BitTrade) -> bool:
        """Apply one confirmed on-chain trade.

        Returns False when the (tx_hash, log_index) was already applied, so
        the indexer can replay blocks safely.  A sell larger than the stored
        balance is rejected and nothing is written.
        """
        if self._role != ROLE_WRITER:
            raise PermissionError("PositionStore opened read-only; only the indexer may write")
        if trade.quantity <= 0:
            raise ValidationError("trade quantity must be positive", details={"tx_hash": trade.tx_hash})

        holder = normalize_address(trade.holder)
        gamer = normalize_address(trade.gamer)
        await self._ensure_init()

        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE;")
            try:
                cursor = await db.execute(
                    """
                    INSERT OR IGNORE INTO bit_trades
                        (tx_hash, log_index, holder, gamer, block_number, is_buy, quantity, eth_amount_wei)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        trade.tx_hash, trade.log_index, holder, gamer, trade.block_number,
                        1 if trade.is_buy else 0, trade.quantity, str(trade.eth_amount_wei),
                    ),
                )
                if cursor.rowcount == 0:
                    await db.execute("ROLLBACK;")
                    logger.debug("Trade %s:%s already applied", trade.tx_hash, trade.log_index)
                    return False

                async with db.execute(
                    "SELECT quantity FROM positions WHERE holder = ? AND gamer = ?;",
                    (holder, gamer),
                ) as cur:
                    row = await cur.fetchone()
                current = int(row[0]) if row else 0
                new_quantity = current + trade.quantity if trade.is_buy else current - trade.quantity
                if new_quantity < 0:
                    raise ValidationError(
                        "sell exceeds stored balance",
                        details={"holder": holder, "gamer": gamer, "balance": current, "sold": trade.quantity},
                    )

                await db.execute(
                    """
                    INSERT INTO positions (holder, gamer, quantity, last_block)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(holder, gamer) DO UPDATE
                        SET quantity = excluded.quantity, last_block = excluded.last_block;
                    """,
                    (holder, gamer, new_quantity, trade.block_number),
                )
                await db.execute("COMMIT;")
            except BaseException:
                await db.execute("ROLLBACK;")
                raise

        logger.debug(
            "Recorded %s of %d bits: holder=%s gamer=%s balance=%d",
            "buy" if trade.is_buy else "sell", trade.quantity, holder, gamer, new_quantity,
        )
        return True

    # ------------------------------------------------------------------ #
    # Readers                                                              #
    # ------------------------------------------------------------------ #

    async def get_full_store(self, holder_addresses: Optional[Iterable[str]] = None) -> FullStore:
        """Return holder → gamer → :class:`Position`, optionally for a subset of holders.

        Positions include their trade history ordered by block.  Holders that
        were asked for but hold nothing map to an empty dict.
        """
        await self._ensure_init()
        holders = [_key(h) for h in holder_addresses] if holder_addresses is not None else None
        if holders is not None and not holders:
            return {}

        where = ""
        params: tuple = ()
        if holders is not None:
            where = f"WHERE holder IN ({', '.join('?' for _ in holders)})"
            params = tuple(holders)

        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN;")
            try:
                async with db.execute(
                    f"SELECT holder, gamer, quantity, last_block FROM positions {where} ORDER BY holder, gamer;",
                    params,
                ) as cursor:
                    position_rows = await cursor.fetchall()
                async with db.execute(
                    f"""
                    SELECT tx_hash, log_index, holder, gamer, block_number, is_buy, quantity, eth_amount_wei
                    FROM bit_trades {where}
                    ORDER BY block_number, log_index;
                    """,
                    params,
                ) as cursor:
                    trade_rows = await cursor.fetchall()
            finally:
                await db.execute("COMMIT;")

        store: FullStore = {h: {} for h in holders} if holders is not None else {}
        for row in position_rows:
            store.setdefault(row["holder"], {})[row["gamer"]] = Position(
                holder=row["holder"],
                gamer=row["gamer"],
                quantity=int(row["quantity"]),
                last_block=row["last_block"],
            )
        for row in trade_rows:
            position = store.setdefault(row["holder"], {}).setdefault(
                row["gamer"], Position(holder=row["holder"], gamer=row["gamer"])
            )
            position.trades.append(
                BitTrade(
                    holder=row["holder"],
                    gamer=row["gamer"],
                    block_number=int(row["block_number"]),
                    is_buy=bool(row["is_buy"]),
                    quantity=int(row["quantity"]),
                    eth_amount_wei=int(row["eth_amount_wei"]),
                    tx_hash=row["tx_hash"],
                    log_index=int(row["log_index"]),
                )
            )
        return store

    async def get_bit_balance_in_store(self, holder: str, gamer: str) -> int:
        """Point lookup; 0 for a missing record, never negative."""
        await self._ensure_init()
        async with self._connect() as db:
            async with db.execute(
                "SELECT quantity FROM positions WHERE holder = ? AND gamer = ?;",
                (_key(holder), _key(gamer)),
            ) as cursor:
                row = await cursor.fetchone()
        return max(int(row[0]), 0) if row else 0

    async def get_gamer_balances(self, gamer: str, holders: Iterable[str]) -> dict[str, int]:
        """Balances of *gamer* for each of *holders* (0 when absent), in one read."""
        await self._ensure_init()
        keys = [_key(h) for h in holders]
        if not keys:
            return {}
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT holder, quantity FROM positions
                WHERE gamer = ? AND holder IN ({', '.join('?' for _ in keys)});
                """,
                (_key(gamer), *keys),
            ) as cursor:
                rows = await cursor.fetchall()
        found = {row[0]: int(row[1]) for row in rows}
        return {k: found.get(k, 0) for k in keys}
