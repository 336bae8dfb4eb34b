from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

from ..domain.codec import BLOCK_COLUMNS, TX_COLUMNS, block_from_row, block_to_row, tx_from_row, tx_summary, tx_to_row
from ..domain.errors import IndexUnavailableError, StoreUnavailableError
from ..domain.models import (
    AccountActivity, AccountDelta, Block, BlockSample, Transaction, TxSummary, rollup,
)
from ..domain.value_types import Address, TxHash
from ..ports.index import ROLLUP_SECONDS, IndexedStore
from ..ports.storage import ChainStore

log = logging.getLogger(__name__)

R = TypeVar("R")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS blocks (
        number INTEGER PRIMARY KEY,
        hash TEXT NOT NULL UNIQUE,
        parent_hash TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        gas_used INTEGER NOT NULL,
        gas_limit INTEGER NOT NULL,
        base_fee_per_gas TEXT,
        miner TEXT NOT NULL,
        transaction_count INTEGER NOT NULL,
        size_bytes INTEGER,
        transaction_hashes TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_blocks_timestamp ON blocks(timestamp)",
    """
    CREATE TABLE IF NOT EXISTS transactions (
        hash TEXT PRIMARY KEY,
        block_number INTEGER,
        block_hash TEXT,
        transaction_index INTEGER,
        from_address TEXT NOT NULL,
        to_address TEXT,
        value TEXT NOT NULL,
        gas INTEGER NOT NULL,
        gas_price TEXT,
        max_fee_per_gas TEXT,
        max_priority_fee_per_gas TEXT,
        input TEXT,
        nonce INTEGER NOT NULL,
        type INTEGER NOT NULL,
        kind TEXT NOT NULL,
        access_list TEXT,
        status INTEGER,
        gas_used INTEGER,
        timestamp INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tx_from ON transactions(from_address, block_number)",
    "CREATE INDEX IF NOT EXISTS idx_tx_to ON transactions(to_address, block_number)",
    "CREATE INDEX IF NOT EXISTS idx_tx_block ON transactions(block_number)",
    "CREATE INDEX IF NOT EXISTS idx_tx_timestamp ON transactions(timestamp)",
    """
    CREATE TABLE IF NOT EXISTS accounts (
        address TEXT PRIMARY KEY,
        transaction_count INTEGER NOT NULL DEFAULT 0,
        first_seen_block INTEGER NOT NULL,
        last_seen_block INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ingest_state (
        key TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
)

_INSERT_BLOCK = (
    f"INSERT INTO blocks ({', '.join(BLOCK_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in BLOCK_COLUMNS)}) ON CONFLICT DO NOTHING"
)
_INSERT_TX = (
    f"INSERT INTO transactions ({', '.join(TX_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in TX_COLUMNS)}) ON CONFLICT(hash) DO NOTHING"
)
# Counter merge: count += delta, first_seen = min, last_seen = max.
_UPSERT_ACCOUNT = """
    INSERT INTO accounts (address, transaction_count, first_seen_block, last_seen_block)
    VALUES (?, ?, ?, ?)
    ON CONFLICT(address) DO UPDATE SET
        transaction_count = accounts.transaction_count + excluded.transaction_count,
        first_seen_block = MIN(accounts.first_seen_block, excluded.first_seen_block),
        last_seen_block = MAX(accounts.last_seen_block, excluded.last_seen_block)
"""


class SQLiteStore(ChainStore, IndexedStore):
    """
    Normalized chain store on a single SQLite connection. Every call takes the
    asyncio lock and runs in a worker thread, so concurrent coroutines never
    interleave statements on the connection.

    The same tables double as an IndexedStore for account history and analytics
    rollups once the ingestor has filled them.
    """

    name = "sqlite"

    def __init__(self, db_path: str) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self._lock = asyncio.Lock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._create_schema()

    def _create_schema(self) -> None:
        with self.conn:
            for stmt in _SCHEMA:
                self.conn.execute(stmt)

    async def _run(self, fn: Callable[..., R], *args: Any) -> R:
        async with self._lock:
            try:
                return await asyncio.to_thread(fn, *args)
            except sqlite3.Error as e:
                raise StoreUnavailableError(f"sqlite store {self.db_path}: {e}") from e

    # ---------- writes --------------------------------------------------------------

    def _insert_block(self, block: Block) -> bool:
        row = block_to_row(block)
        with self.conn:
            cur = self.conn.execute(_INSERT_BLOCK, [row[c] for c in BLOCK_COLUMNS])
        return cur.rowcount > 0

    async def insert_block(self, block: Block) -> bool:
        return await self._run(self._insert_block, block)

    def _record_transaction(self, tx: Transaction, deltas: Sequence[AccountDelta]) -> bool:
        row = tx_to_row(tx)
        with self.conn:
            cur = self.conn.execute(_INSERT_TX, [row[c] for c in TX_COLUMNS])
            if cur.rowcount == 0:
                return False
            for d in deltas:
                self.conn.execute(_UPSERT_ACCOUNT, (d.address, d.sent, d.block_number, d.block_number))
        return True

    async def record_transaction(self, tx: Transaction, deltas: Sequence[AccountDelta]) -> bool:
        return await self._run(self._record_transaction, tx, tuple(deltas))

    def _set_cursor(self, key: str, height: int) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO ingest_state (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, int(height)),
            )

    async def set_cursor(self, key: str, height: int) -> None:
        await self._run(self._set_cursor, key, height)

    # ---------- reads ---------------------------------------------------------------

    def _one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchone()

    def _all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    async def get_block(self, number: int) -> Optional[Block]:
        row = await self._run(self._one, "SELECT * FROM blocks WHERE number = ?", (int(number),))
        return block_from_row(dict(row)) if row else None

    async def get_transaction(self, tx_hash: TxHash) -> Optional[Transaction]:
        row = await self._run(self._one, "SELECT * FROM transactions WHERE hash = ?", (str(tx_hash).lower(),))
        return tx_from_row(dict(row)) if row else None

    async def get_account(self, address: Address) -> Optional[AccountActivity]:
        row = await self._run(self._one, "SELECT * FROM accounts WHERE address = ?", (str(address).lower(),))
        if row is None:
            return None
        return AccountActivity(
            address=Address(row["address"]),
            transaction_count=int(row["transaction_count"]),
            first_seen_block=int(row["first_seen_block"]),
            last_seen_block=int(row["last_seen_block"]),
        )

    async def get_cursor(self, key: str) -> Optional[int]:
        row = await self._run(self._one, "SELECT value FROM ingest_state WHERE key = ?", (key,))
        return int(row["value"]) if row else None

    async def height_range(self) -> Optional[tuple[int, int]]:
        row = await self._run(self._one, "SELECT MIN(number) AS lo, MAX(number) AS hi FROM blocks")
        if row is None or row["hi"] is None:
            return None
        return int(row["lo"]), int(row["hi"])

    async def blocks_between(self, from_block: int, to_block: int) -> list[Block]:
        rows = await self._run(
            self._all, "SELECT * FROM blocks WHERE number BETWEEN ? AND ? ORDER BY number", (from_block, to_block)
        )
        return [block_from_row(dict(r)) for r in rows]

    async def transactions_between(self, from_block: int, to_block: int) -> list[Transaction]:
        rows = await self._run(
            self._all,
            "SELECT * FROM transactions WHERE block_number BETWEEN ? AND ? "
            "ORDER BY block_number, transaction_index",
            (from_block, to_block),
        )
        return [tx_from_row(dict(r)) for r in rows]

    # ---------- IndexedStore --------------------------------------------------------

    async def _index(self, fn: Callable[..., R], *args: Any) -> R:
        try:
            return await self._run(fn, *args)
        except StoreUnavailableError as e:
            raise IndexUnavailableError(str(e)) from e

    async def probe(self) -> bool:
        row = await self._index(self._one, "SELECT 1 FROM blocks LIMIT 1")
        return row is not None

    async def account_transactions(self, address: Address, limit: int) -> list[TxSummary]:
        addr = str(address).lower()
        rows = await self._index(
            self._all,
            "SELECT * FROM transactions WHERE from_address = ? OR to_address = ? "
            "ORDER BY block_number DESC, transaction_index DESC LIMIT ?",
            (addr, addr, int(limit)),
        )
        return [tx_summary(tx_from_row(dict(r))) for r in rows]

    async def account_transaction_count(self, address: Address) -> Optional[int]:
        addr = str(address).lower()
        row = await self._index(
            self._one,
            "SELECT COUNT(*) AS n FROM transactions WHERE from_address = ? OR to_address = ?",
            (addr, addr),
        )
        return int(row["n"]) if row else 0

    async def latest_timestamp(self) -> Optional[int]:
        row = await self._index(self._one, "SELECT MAX(timestamp) AS ts FROM blocks")
        return int(row["ts"]) if row and row["ts"] is not None else None

    def _rollups(self, since_ts: int, until_ts: int) -> list[BlockSample]:
        blocks = self._all(
            "SELECT number, timestamp, transaction_count, gas_used FROM blocks "
            "WHERE timestamp BETWEEN ? AND ? ORDER BY number",
            (since_ts, until_ts),
        )
        values: dict[int, int] = {}
        for r in self._all(
            "SELECT block_number, value FROM transactions WHERE timestamp BETWEEN ? AND ?", (since_ts, until_ts)
        ):
            values[r["block_number"]] = values.get(r["block_number"], 0) + int(r["value"])
        return rollup(
            ((r["timestamp"], r["transaction_count"], r["gas_used"], values.get(r["number"], 0)) for r in blocks),
            ROLLUP_SECONDS,
        )

    async def rollups(self, since_ts: int, until_ts: int) -> list[BlockSample]:
        return await self._index(self._rollups, since_ts, until_ts)

    async def unique_addresses(self, since_ts: int, until_ts: int) -> Optional[int]:
        row = await self._index(
            self._one,
            "SELECT COUNT(*) AS n FROM ("
            " SELECT from_address AS a FROM transactions WHERE timestamp BETWEEN ? AND ?"
            " UNION"
            " SELECT to_address AS a FROM transactions WHERE timestamp BETWEEN ? AND ? AND to_address IS NOT NULL"
            ")",
            (since_ts, until_ts, since_ts, until_ts),
        )
        return int(row["n"]) if row else 0

    async def close(self) -> None:
        async with self._lock:
            self.conn.close()
