from __future__ import annotations
import os, asyncio, logging
import pandas as pd
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq
from typing import Any, Optional

from ..domain.codec import tx_from_row, tx_summary
from ..domain.errors import IndexUnavailableError
from ..domain.models import BlockSample, TxSummary
from ..domain.value_types import Address
from ..ports.index import ROLLUP_SECONDS, IndexedStore
from .manifest_jsonl import JSONLManifest
from .parquet_sink import chunk_name

log = logging.getLogger(__name__)


class ParquetIndex(IndexedStore):
    """IndexedStore over the done chunks of a Parquet export."""
    name = "parquet"

    def __init__(self, root_dir: str, manifest_name: str = "manifest.jsonl") -> None:
        self.root = root_dir
        self.manifest = JSONLManifest(os.path.join(root_dir, manifest_name))
        # last account read, keyed by (address, files)
        self._last_account: Optional[tuple[tuple[str, tuple[str, ...]], list[dict[str, Any]]]] = None

    def _files(self, table: str) -> list[str]:
        out: list[str] = []
        for fb, tb in self.manifest.done_chunks():
            path = os.path.join(self.root, table, chunk_name(fb, tb))
            if os.path.exists(path):
                out.append(path)
        return out

    def _read(self, table: str, columns: Optional[list[str]] = None, filters: Any = None,
              files: Optional[list[str]] = None) -> Optional[pa.Table]:
        files = self._files(table) if files is None else files
        if not files:
            return None
        try:
            return pq.ParquetDataset(files, filters=filters).read(columns=columns)
        except (OSError, pa.ArrowException) as e:
            raise IndexUnavailableError(f"parquet index at {self.root}: {e}") from e

    async def probe(self) -> bool:
        def _probe() -> bool:
            return bool(self._files("blocks"))
        return await asyncio.to_thread(_probe)

    def _account_rows(self, address: Address) -> list[dict[str, Any]]:
        addr = str(address).lower()
        files = self._files("transactions")
        key = (addr, tuple(files))
        if self._last_account is not None and self._last_account[0] == key:
            return self._last_account[1]
        t = self._read("transactions", filters=[[("from_address", "=", addr)], [("to_address", "=", addr)]],
                       files=files)
        rows: list[dict[str, Any]] = []
        if t is not None and t.num_rows:
            t = t.sort_by([("block_number", "descending"), ("transaction_index", "descending")])
            rows = t.to_pylist()
        self._last_account = (key, rows)
        return rows

    async def account_transactions(self, address: Address, limit: int) -> list[TxSummary]:
        rows = await asyncio.to_thread(self._account_rows, address)
        return [tx_summary(tx_from_row(r)) for r in rows[:limit]]

    async def account_transaction_count(self, address: Address) -> Optional[int]:
        rows = await asyncio.to_thread(self._account_rows, address)
        return len(rows)

    async def latest_timestamp(self) -> Optional[int]:
        def _latest() -> Optional[int]:
            t = self._read("blocks", columns=["timestamp"])
            if t is None or t.num_rows == 0:
                return None
            return int(pc.max(t.column("timestamp")).as_py())
        return await asyncio.to_thread(_latest)

    def _rollups(self, since_ts: int, until_ts: int) -> list[BlockSample]:
        window = [("timestamp", ">=", since_ts), ("timestamp", "<=", until_ts)]
        bt = self._read("blocks", columns=["number", "timestamp", "transaction_count", "gas_used"], filters=window)
        if bt is None or bt.num_rows == 0:
            return []
        df = bt.to_pandas()
        df["start"] = (df["timestamp"] // ROLLUP_SECONDS) * ROLLUP_SECONDS

        # values are decimal strings; sum as Python ints
        values: dict[int, int] = {}
        tt = self._read("transactions", columns=["block_number", "value"], filters=window)
        if tt is not None:
            for bn, v in zip(tt.column("block_number").to_pylist(), tt.column("value").to_pylist()):
                values[bn] = values.get(bn, 0) + int(v)
        df["value"] = [values.get(int(n), 0) for n in df["number"]]

        g = df.groupby("start", sort=True).agg(
            first_ts=("timestamp", "min"),
            last_ts=("timestamp", "max"),
            block_count=("number", "count"),
            tx_count=("transaction_count", "sum"),
            gas_used=("gas_used", "sum"),
        )
        value_by_start = {int(k): sum(int(x) for x in v) for k, v in df.groupby("start")["value"]}
        return [
            BlockSample(int(start), int(r.first_ts), int(r.last_ts), int(r.block_count),
                        int(r.tx_count), int(r.gas_used), value_by_start.get(int(start), 0))
            for start, r in g.iterrows()
        ]

    async def rollups(self, since_ts: int, until_ts: int) -> list[BlockSample]:
        return await asyncio.to_thread(self._rollups, since_ts, until_ts)

    async def unique_addresses(self, since_ts: int, until_ts: int) -> Optional[int]:
        def _unique() -> int:
            t = self._read("transactions", columns=["from_address", "to_address"],
                           filters=[("timestamp", ">=", since_ts), ("timestamp", "<=", until_ts)])
            if t is None or t.num_rows == 0:
                return 0
            df = t.to_pandas()
            return int(pd.concat([df["from_address"], df["to_address"]]).dropna().nunique())
        return await asyncio.to_thread(_unique)
