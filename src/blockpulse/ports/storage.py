# blockpulse/ports/storage.py
from __future__ import annotations

from typing import Iterable, Optional, Protocol, Sequence

from ..domain.models import (
    AccountActivity, AccountDelta, Block, ChunkRec, Transaction,
)
from ..domain.value_types import Address, TxHash


class ChainStore(Protocol):
    """Port for the normalized, append-only store the ingestor writes into."""

    async def insert_block(self, block: Block) -> bool:
        """Insert the header; False when the height already exists (no-op)."""

    async def record_transaction(self, tx: Transaction, deltas: Sequence[AccountDelta]) -> bool:
        """
        Insert the transaction and, in the same atomic unit and only when the row
        was newly inserted, merge the account deltas. False on duplicate hash.
        """

    async def get_block(self, number: int) -> Optional[Block]: ...

    async def get_transaction(self, tx_hash: TxHash) -> Optional[Transaction]: ...

    async def get_account(self, address: Address) -> Optional[AccountActivity]: ...

    async def get_cursor(self, key: str) -> Optional[int]: ...

    async def set_cursor(self, key: str, height: int) -> None: ...

    async def height_range(self) -> Optional[tuple[int, int]]:
        """(lowest, highest) stored block number, or None when empty."""

    async def blocks_between(self, from_block: int, to_block: int) -> list[Block]: ...

    async def transactions_between(self, from_block: int, to_block: int) -> list[Transaction]: ...

    async def close(self) -> None: ...


class BlockSink(Protocol):
    """Port for writing one exported height chunk to durable storage (e.g., Parquet)."""

    async def write_chunk(
        self,
        from_block: int,
        to_block: int,
        blocks: Iterable[Block],
        transactions: Iterable[Transaction],
    ) -> None:
        """Persist the rows belonging to the chunk [from_block, to_block]."""


class ManifestSink(Protocol):
    """Port for appending export chunk status records (e.g., JSONL manifest)."""

    async def append(self, rec: ChunkRec) -> None:
        """Append a manifest record atomically (callers handle ordering/locking)."""
