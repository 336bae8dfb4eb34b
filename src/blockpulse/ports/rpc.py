# blockpulse/ports/rpc.py
from __future__ import annotations

from typing import Any, Optional, Protocol

from ..domain.value_types import Address, BlockId, TxHash


class ChainRPC(Protocol):
    """
    Port for an EVM JSON-RPC node. Methods return the node's raw JSON objects;
    decoding into domain models happens in `domain.decoding`.

    Missing entities raise NotFoundError, exhausted transports raise
    RetryExhaustedError.
    """

    network: str

    async def latest_block_number(self) -> int:
        """Return the chain head height."""

    async def get_block(self, block_id: BlockId, include_tx: bool = True) -> dict[str, Any]:
        """Block by height or 32-byte hash; bodies when include_tx, else bare hashes."""

    async def get_transaction(self, tx_hash: TxHash) -> dict[str, Any]: ...

    async def get_transaction_receipt(self, tx_hash: TxHash) -> dict[str, Any]: ...

    async def get_block_receipts(self, number: int) -> Optional[list[dict[str, Any]]]:
        """All receipts of a block, or None when the node lacks eth_getBlockReceipts."""

    async def get_balance(self, address: Address) -> int: ...

    async def get_transaction_count(self, address: Address) -> int: ...

    async def get_code(self, address: Address) -> str: ...

    async def aclose(self) -> None: ...
