from __future__ import annotations

from typing import Optional

from ..domain.models import AccountActivity, AccountDelta, Transaction
from ..domain.value_types import Address
from ..ports.storage import ChainStore


def deltas_for(tx: Transaction) -> list[AccountDelta]:
    """
    Sender counts the transaction; the recipient is only touched (last/first
    seen move, count unchanged). Contract creations have no recipient.
    """
    if tx.block_number is None:
        return []
    out = [AccountDelta(tx.from_address, tx.block_number, 1)]
    if tx.to_address is not None:
        out.append(AccountDelta(tx.to_address, tx.block_number, 0))
    return out


class AccountActivityAggregator:
    """Read side of the per-address counters maintained by the store."""

    def __init__(self, store: ChainStore) -> None:
        self.store = store

    async def get(self, address: Address) -> Optional[AccountActivity]:
        return await self.store.get_account(Address(str(address).lower()))
