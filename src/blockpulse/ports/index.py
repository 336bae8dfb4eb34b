# blockpulse/ports/index.py
from __future__ import annotations

from typing import Optional, Protocol

from ..domain.models import BlockSample, TxSummary
from ..domain.value_types import Address

ROLLUP_SECONDS = 30


class IndexedStore(Protocol):
    """
    Optional accelerator for history and analytics queries. Implementations may
    be cold (probe() is False) or fail mid-query with IndexUnavailableError.
    """

    name: str

    async def probe(self) -> bool:
        """True when the store is reachable and holds indexed data."""

    async def account_transactions(self, address: Address, limit: int) -> list[TxSummary]:
        """Newest-first transactions where address is sender or recipient."""

    async def account_transaction_count(self, address: Address) -> Optional[int]: ...

    async def latest_timestamp(self) -> Optional[int]: ...

    async def rollups(self, since_ts: int, until_ts: int) -> list[BlockSample]:
        """Per-ROLLUP_SECONDS aggregates of blocks with since_ts <= timestamp <= until_ts."""

    async def unique_addresses(self, since_ts: int, until_ts: int) -> Optional[int]: ...
