from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional, Union

from .value_types import Address, SearchKind, TickStatus, TxHash


@dataclass(slots=True, frozen=True)
class BlockRange:
    start: int
    end: int


# ──────────────────────────────
# Chain entities
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class AccessListEntry:
    address: Address
    storage_keys: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True, kw_only=True)
class _TxFields:
    hash: TxHash
    block_number: Optional[int]         # None while pending
    block_hash: Optional[str]
    transaction_index: Optional[int]
    from_address: Address
    to_address: Optional[Address]       # None == contract creation
    value: int
    gas: int
    input: str
    nonce: int
    type: int                           # raw type code as reported by the node
    timestamp: Optional[int] = None     # denormalized from the block
    status: Optional[int] = None        # None until a receipt is known
    gas_used: Optional[int] = None

    @property
    def is_contract_creation(self) -> bool:
        return self.to_address is None


@dataclass(slots=True, frozen=True, kw_only=True)
class LegacyTx(_TxFields):
    gas_price: int
    kind: Literal["legacy"] = "legacy"


@dataclass(slots=True, frozen=True, kw_only=True)
class AccessListTx(_TxFields):
    gas_price: int
    access_list: tuple[AccessListEntry, ...]
    kind: Literal["access_list"] = "access_list"


@dataclass(slots=True, frozen=True, kw_only=True)
class DynamicFeeTx(_TxFields):
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    access_list: tuple[AccessListEntry, ...] = ()
    gas_price: Optional[int] = None     # effective price, when the node reports it
    kind: Literal["dynamic_fee"] = "dynamic_fee"


Transaction = Union[LegacyTx, AccessListTx, DynamicFeeTx]


@dataclass(slots=True, frozen=True)
class Block:
    number: int
    hash: str
    parent_hash: str
    timestamp: int
    gas_used: int
    gas_limit: int
    miner: Address
    transaction_count: int
    base_fee_per_gas: Optional[int] = None
    size_bytes: Optional[int] = None
    transactions: tuple[Transaction, ...] = ()       # populated when fetched with bodies
    transaction_hashes: tuple[TxHash, ...] = ()

    def header(self) -> "Block":
        """Copy without transaction bodies (what the store persists)."""
        hashes = self.transaction_hashes or tuple(t.hash for t in self.transactions)
        return Block(self.number, self.hash, self.parent_hash, self.timestamp, self.gas_used,
                     self.gas_limit, self.miner, self.transaction_count, self.base_fee_per_gas,
                     self.size_bytes, (), hashes)


@dataclass(slots=True, frozen=True)
class Receipt:
    transaction_hash: TxHash
    block_number: int
    block_hash: str
    transaction_index: int
    from_address: Address
    to_address: Optional[Address]
    status: Optional[int]
    gas_used: int
    cumulative_gas_used: int
    effective_gas_price: Optional[int] = None
    contract_address: Optional[Address] = None
    log_count: int = 0


# ──────────────────────────────
# Account activity
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class AccountActivity:
    address: Address
    transaction_count: int
    first_seen_block: int
    last_seen_block: int


@dataclass(slots=True, frozen=True)
class AccountDelta:
    address: Address
    block_number: int
    sent: int                 # added to transaction_count (0 == touch only)


@dataclass(slots=True, frozen=True)
class AccountOverview:
    address: Address
    balance_wei: int
    nonce: int
    is_contract: bool


@dataclass(slots=True, frozen=True)
class SearchHit:
    kind: SearchKind
    query: str
    block_number: Optional[int] = None
    transaction_hash: Optional[TxHash] = None
    address: Optional[Address] = None
    is_contract: Optional[bool] = None


@dataclass(slots=True, frozen=True)
class TxSummary:
    hash: TxHash
    block_number: int
    from_address: Address
    to_address: Optional[Address]
    value: int
    timestamp: Optional[int]
    status: Optional[int] = None


@dataclass(slots=True, frozen=True)
class AccountTransactions:
    address: Address
    source: str                         # index name, or "rpc-scan"
    transactions: tuple[TxSummary, ...]
    partial: bool                       # True == best effort, older history may exist
    total_count: Optional[int] = None
    blocks_scanned: int = 0


@dataclass(slots=True, frozen=True)
class ScanResult:
    address: Address
    matches: tuple[TxSummary, ...]
    from_block: int                     # newest height examined
    to_block: int                       # oldest height examined
    blocks_scanned: int
    batches: int
    failed_blocks: int = 0
    partial: bool = True


# ──────────────────────────────
# Analytics
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class BlockSample:
    """A single block (block_count == 1) or a precomputed rollup of several."""
    start: int
    first_ts: int
    last_ts: int
    block_count: int
    tx_count: int
    gas_used: int
    value: int

    @classmethod
    def of_block(cls, timestamp: int, tx_count: int, gas_used: int, value: int) -> "BlockSample":
        return cls(timestamp, timestamp, timestamp, 1, tx_count, gas_used, value)


@dataclass(slots=True, frozen=True)
class TimeBucketStat:
    bucket_start: int
    transaction_count: int
    block_count: int
    gas_used_total: int
    value_total: int


@dataclass(slots=True, frozen=True)
class AnalyticsStats:
    total_transactions: int
    total_blocks: int
    total_gas_used: int
    total_value: int
    achieved_span: int
    tps: float
    avg_block_time: float
    avg_tx_per_block: float
    avg_gas_used: int
    unique_addresses: Optional[int] = None


@dataclass(slots=True, frozen=True)
class AnalyticsMeta:
    range: str
    range_seconds: int
    backend: str
    bucket_seconds: int
    bucket_label: str
    blocks_analyzed: int
    data_limited: bool
    partial: bool
    latest_block: Optional[int] = None


@dataclass(slots=True, frozen=True)
class AnalyticsReport:
    meta: AnalyticsMeta
    stats: AnalyticsStats
    series: tuple[TimeBucketStat, ...] = field(default_factory=tuple)


# ──────────────────────────────
# Ingestion / export bookkeeping
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class TickOutcome:
    height: Optional[int]
    status: TickStatus
    transactions: int = 0
    inserted: int = 0
    skipped_items: int = 0
    error: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ChunkRec:
    from_block: int
    to_block: int
    status: Literal["pending", "done", "failed"] = "pending"
    attempts: int = 0
    error: str | None = None
    blocks: int = 0
    transactions: int = 0
    updated_at: float = 0.0


def rollup(blocks: Iterable[tuple[int, int, int, int]], width: int) -> list[BlockSample]:
    """
    Fold (timestamp, tx_count, gas_used, value) per block into fixed-width
    samples aligned on `width`, oldest first.
    """
    acc: dict[int, list[int]] = {}
    for ts, txs, gas, value in blocks:
        start = (ts // width) * width
        cur = acc.get(start)
        if cur is None:
            acc[start] = [ts, ts, 1, txs, gas, value]
            continue
        cur[0] = min(cur[0], ts); cur[1] = max(cur[1], ts)
        cur[2] += 1; cur[3] += txs; cur[4] += gas; cur[5] += value
    return [BlockSample(s, *vals) for s, vals in sorted(acc.items())]
