from __future__ import annotations
import os, asyncio, pyarrow as pa, pyarrow.parquet as pq
from typing import Any, Iterable

from ..domain.codec import block_to_row, tx_to_row
from ..domain.models import Block, Transaction
from ..ports.storage import BlockSink

# Wei amounts are decimal strings; gas and heights fit int64.
BLOCK_SCHEMA = pa.schema([
    ("number", pa.int64()),
    ("hash", pa.string()),
    ("parent_hash", pa.string()),
    ("timestamp", pa.int64()),
    ("gas_used", pa.int64()),
    ("gas_limit", pa.int64()),
    ("base_fee_per_gas", pa.string()),
    ("miner", pa.string()),
    ("transaction_count", pa.int64()),
    ("size_bytes", pa.int64()),
    ("transaction_hashes", pa.string()),
])

TX_SCHEMA = pa.schema([
    ("hash", pa.string()),
    ("block_number", pa.int64()),
    ("block_hash", pa.string()),
    ("transaction_index", pa.int64()),
    ("from_address", pa.string()),
    ("to_address", pa.string()),
    ("value", pa.string()),
    ("gas", pa.int64()),
    ("gas_price", pa.string()),
    ("max_fee_per_gas", pa.string()),
    ("max_priority_fee_per_gas", pa.string()),
    ("input", pa.string()),
    ("nonce", pa.int64()),
    ("type", pa.int64()),
    ("kind", pa.string()),
    ("access_list", pa.string()),
    ("status", pa.int64()),
    ("gas_used", pa.int64()),
    ("timestamp", pa.int64()),
])

def rows_to_table(rows: list[dict[str, Any]], schema: pa.Schema) -> pa.Table:
    return pa.Table.from_pydict(
        {f.name: pa.array([r[f.name] for r in rows], type=f.type) for f in schema},
        schema=schema,
    )

def chunk_name(fb: int, tb: int) -> str:
    return f"chunk_{fb:012d}_{tb:012d}.parquet"

class ParquetBlockSink(BlockSink):
    """
    One Parquet file per table per chunk:
      <root>/blocks/chunk_<from>_<to>.parquet
      <root>/transactions/chunk_<from>_<to>.parquet
    Written to a .tmp sibling first, then renamed into place.
    """
    def __init__(self, root_dir: str, codec: str = "zstd") -> None:
        self.root = root_dir
        self.blocks_dir = os.path.join(root_dir, "blocks")
        self.txs_dir = os.path.join(root_dir, "transactions")
        os.makedirs(self.blocks_dir, exist_ok=True)
        os.makedirs(self.txs_dir, exist_ok=True)
        self.codec = codec

    def paths(self, fb: int, tb: int) -> tuple[str, str]:
        name = chunk_name(fb, tb)
        return os.path.join(self.blocks_dir, name), os.path.join(self.txs_dir, name)

    def _write(self, table: pa.Table, path: str) -> None:
        tmp = path + ".tmp"
        pq.write_table(table, tmp, compression=self.codec)
        os.replace(tmp, path)

    def _write_chunk(self, fb: int, tb: int, blocks: list[Block], txs: list[Transaction]) -> None:
        bpath, tpath = self.paths(fb, tb)
        btable = rows_to_table([block_to_row(b) for b in blocks], BLOCK_SCHEMA).sort_by([("number", "ascending")])
        ttable = rows_to_table([tx_to_row(t) for t in txs], TX_SCHEMA).sort_by(
            [("block_number", "ascending"), ("transaction_index", "ascending")])
        self._write(ttable, tpath)
        self._write(btable, bpath)

    async def write_chunk(self, from_block: int, to_block: int,
                          blocks: Iterable[Block], transactions: Iterable[Transaction]) -> None:
        await asyncio.to_thread(self._write_chunk, from_block, to_block, list(blocks), list(transactions))
