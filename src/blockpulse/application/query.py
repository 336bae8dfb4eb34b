from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from eth_utils import is_address, to_normalized_address

from ..domain.decoding import decode_block, decode_full_block, decode_receipt, decode_transaction, is_hash
from ..domain.errors import (
    IndexUnavailableError, InvalidInputError, MalformedDataError, NotFoundError, RPCError,
    StoreUnavailableError, TransientTransportError,
)
from ..domain.models import (
    AccountActivity, AccountOverview, AccountTransactions, AnalyticsReport, Block, Receipt, SearchHit,
    Transaction,
)
from ..domain.results import Found, Lookup, NotFound, TransientError
from ..domain.value_types import Address, BlockId, TxHash
from ..ports.cache import MISS
from ..ports.index import IndexedStore
from ..ports.rpc import ChainRPC
from ..ports.storage import ChainStore
from .accounts import AccountActivityAggregator
from .analytics import RANGES, AnalyticsAggregator, IndexedAnalyticsBackend, RpcAnalyticsBackend
from .cache import ReadThroughCache, TTLPolicy, cache_key
from .scanner import FallbackScanner

log = logging.getLogger(__name__)

T = TypeVar("T")


def normalize_address(value: str) -> Address:
    if not isinstance(value, str) or not is_address(value):
        raise InvalidInputError(f"invalid address: {value!r}")
    return Address(to_normalized_address(value))


def normalize_tx_hash(value: str) -> TxHash:
    if not is_hash(value):
        raise InvalidInputError(f"invalid transaction hash: {value!r}")
    return TxHash(value.lower())


def normalize_block_id(value: Any) -> BlockId:
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise InvalidInputError(f"negative block number: {value}")
        return value
    if isinstance(value, str):
        s = value.strip().lower()
        if s.isdigit():
            return int(s)
        if is_hash(s):
            return s
    raise InvalidInputError(f"invalid block id: {value!r}")


def _is_contract(code: str) -> bool:
    return code not in ("", "0x", "0x0")


class IndexSelector:
    """
    Probes indexed stores in order and remembers the first healthy one (or that
    none is healthy) for `probe_ttl_s`.
    """

    def __init__(
        self,
        candidates: Sequence[IndexedStore] = (),
        *,
        probe_ttl_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.candidates = list(candidates)
        self.probe_ttl_s = probe_ttl_s
        self.clock = clock
        self.probes = 0
        self._chosen: Optional[IndexedStore] = None
        self._expires_at = float("-inf")

    async def select(self) -> Optional[IndexedStore]:
        if self.clock() < self._expires_at:
            return self._chosen
        chosen: Optional[IndexedStore] = None
        for c in self.candidates:
            self.probes += 1
            try:
                ok = await c.probe()
            except (IndexUnavailableError, OSError) as e:
                log.info("index %s unavailable: %s", c.name, e)
                ok = False
            if ok:
                chosen = c
                break
        self._chosen, self._expires_at = chosen, self.clock() + self.probe_ttl_s
        return chosen

    def invalidate(self) -> None:
        self._chosen, self._expires_at = None, float("-inf")


async def _guard(what: str, fn: Callable[[], Awaitable[T]]) -> Lookup[T]:
    try:
        return Found(await fn())
    except NotFoundError:
        return NotFound(what)
    except (TransientTransportError, RPCError, StoreUnavailableError) as e:
        log.info("%s temporarily unavailable: %s", what, e)
        return TransientError(f"{type(e).__name__}: {e}")
    except MalformedDataError as e:
        log.warning("%s: malformed node response: %s", what, e)
        return TransientError(f"MalformedDataError: {e}", retryable=False)


class QueryFacade:
    """
    Read API for one network. Get-by-id operations answer Found, NotFound or
    TransientError; invalid input raises InvalidInputError.
    """

    def __init__(
        self,
        network: str,
        rpc: ChainRPC,
        *,
        scanner: FallbackScanner,
        store: Optional[ChainStore] = None,
        selector: Optional[IndexSelector] = None,
        cache: Optional[ReadThroughCache] = None,
        ttl: TTLPolicy = TTLPolicy(),
        analytics: Optional[AnalyticsAggregator] = None,
        rpc_analytics: Optional[RpcAnalyticsBackend] = None,
        report_ttl_s: float = 30.0,
        max_page: int = 100,
    ) -> None:
        self.network = network
        self.rpc = rpc
        self.scanner = scanner
        self.store = store
        self.accounts = AccountActivityAggregator(store) if store is not None else None
        self.selector = selector or IndexSelector()
        self.cache = cache or ReadThroughCache(None)
        self.ttl = ttl
        self.analytics = analytics or AnalyticsAggregator()
        self.rpc_analytics = rpc_analytics or RpcAnalyticsBackend(scanner)
        self.report_ttl_s = report_ttl_s
        self.max_page = max_page

    def _key(self, entity: str, ident: Any) -> str:
        return cache_key(entity, self.network, ident)

    async def _ttl_at(self, block_number: Optional[int]) -> float:
        if block_number is None:
            return 0
        try:
            latest = await self.rpc.latest_block_number()
        except (TransientTransportError, RPCError):
            return self.ttl.short_ttl_s
        return self.ttl.ttl_for(latest - block_number)

    async def _cached(self, key: str, what: str, fetch: Callable[[], Awaitable[T]],
                      number_of: Callable[[T], Optional[int]]) -> Lookup[T]:
        hit = await self.cache.get(key)
        if hit is not MISS:
            return Found(hit)
        res = await _guard(what, fetch)
        if isinstance(res, Found):
            await self.cache.set(key, res.value, await self._ttl_at(number_of(res.value)))
        return res

    # ---------- blocks & transactions -----------------------------------------------

    async def get_latest_block_number(self) -> int:
        return await self.rpc.latest_block_number()

    async def get_block(self, block_id: Any, include_tx: bool = False) -> Lookup[Block]:
        bid = normalize_block_id(block_id)
        shape = "full" if include_tx else "header"

        async def fetch() -> Block:
            raw = await self.rpc.get_block(bid, include_tx=include_tx)
            return decode_full_block(raw) if include_tx else decode_block(raw)[0]

        return await self._cached(self._key("block", f"{bid}:{shape}"), f"block {bid}", fetch, lambda b: b.number)

    async def get_blocks(self, start: Optional[int] = None, count: int = 10) -> list[Block]:
        if not 1 <= count <= self.max_page:
            raise InvalidInputError(f"count must be within 1..{self.max_page}")
        raws = await self.scanner.recent_blocks(count, start, include_tx=False)
        out: list[Block] = []
        for raw in raws:
            try:
                out.append(decode_block(raw)[0])
            except MalformedDataError as e:
                log.warning("%s: skipping malformed block in listing: %s", self.network, e)
        return out

    async def get_transaction(self, tx_hash: str) -> Lookup[Transaction]:
        h = normalize_tx_hash(tx_hash)

        async def fetch() -> Transaction:
            return decode_transaction(await self.rpc.get_transaction(h))

        return await self._cached(self._key("tx", h), f"transaction {h}", fetch, lambda t: t.block_number)

    async def get_transaction_receipt(self, tx_hash: str) -> Lookup[Receipt]:
        h = normalize_tx_hash(tx_hash)

        async def fetch() -> Receipt:
            return decode_receipt(await self.rpc.get_transaction_receipt(h))

        return await self._cached(self._key("receipt", h), f"receipt {h}", fetch, lambda r: r.block_number)

    # ---------- accounts ------------------------------------------------------------

    async def get_account_activity(self, address: str) -> Lookup[AccountActivity]:
        addr = normalize_address(address)
        if self.accounts is None:
            return TransientError("no store configured", retryable=False)
        accounts = self.accounts

        async def fetch() -> AccountActivity:
            act = await accounts.get(addr)
            if act is None:
                raise NotFoundError(addr)
            return act

        return await _guard(f"account {addr}", fetch)

    async def get_account_transactions(self, address: str, limit: int = 25) -> Lookup[AccountTransactions]:
        addr = normalize_address(address)
        if not 1 <= limit <= self.max_page:
            raise InvalidInputError(f"limit must be within 1..{self.max_page}")

        index = await self.selector.select()
        if index is not None:
            try:
                rows = await index.account_transactions(addr, limit)
                if rows:
                    total = await index.account_transaction_count(addr)
                    return Found(AccountTransactions(addr, index.name, tuple(rows), False, total))
                log.debug("%s: index %s has no rows for %s; scanning", self.network, index.name, addr)
            except IndexUnavailableError as e:
                log.info("%s: index %s failed (%s); falling back to scan", self.network, index.name, e)
                self.selector.invalidate()

        async def scan() -> AccountTransactions:
            res = await self.scanner.transactions_for(addr, limit)
            return AccountTransactions(addr, "rpc-scan", res.matches, True, None, res.blocks_scanned)

        return await _guard(f"transactions of {addr}", scan)

    async def get_account_overview(self, address: str) -> Lookup[AccountOverview]:
        addr = normalize_address(address)
        key = self._key("account", addr)
        hit = await self.cache.get(key)
        if hit is not MISS:
            return Found(hit)

        async def fetch() -> AccountOverview:
            balance, nonce, code = await asyncio.gather(
                self.rpc.get_balance(addr), self.rpc.get_transaction_count(addr), self.rpc.get_code(addr))
            return AccountOverview(addr, balance, nonce, _is_contract(code))

        res = await _guard(f"account {addr}", fetch)
        if isinstance(res, Found):
            await self.cache.set(key, res.value, self.ttl.short_ttl_s)
        return res

    # ---------- analytics -----------------------------------------------------------

    async def get_analytics(self, range_label: str) -> Lookup[AnalyticsReport]:
        if range_label not in RANGES:
            raise InvalidInputError(f"unknown range {range_label!r}; expected one of {', '.join(RANGES)}")
        key = self._key("analytics", range_label)
        hit = await self.cache.get(key)
        if hit is not MISS:
            return Found(hit)

        async def compute() -> AnalyticsReport:
            index = await self.selector.select()
            if index is not None:
                try:
                    report = await self.analytics.report(IndexedAnalyticsBackend(index), range_label)
                    if report.stats.total_blocks:
                        return report
                except IndexUnavailableError as e:
                    log.info("%s: index analytics failed (%s); using rpc", self.network, e)
                    self.selector.invalidate()
            return await self.analytics.report(self.rpc_analytics, range_label)

        res = await _guard(f"analytics {range_label}", compute)
        if isinstance(res, Found):
            await self.cache.set(key, res.value, self.report_ttl_s)
        return res

    # ---------- search --------------------------------------------------------------

    async def search(self, query: str) -> Lookup[SearchHit]:
        """
        Universal lookup. Tried in order: address (with a contract check),
        transaction hash, block height, block hash. Nothing matching is NotFound.
        """
        q = query.strip() if isinstance(query, str) else ""
        if not q:
            raise InvalidInputError("search query is required")

        if q[:2].lower() == "0x" and is_address(q):
            addr = normalize_address(q)

            async def contract() -> SearchHit:
                return SearchHit("address", q, address=addr, is_contract=_is_contract(await self.rpc.get_code(addr)))

            return await _guard(f"address {addr}", contract)

        if is_hash(q):
            tx = await self.get_transaction(q)
            if isinstance(tx, Found):
                return Found(SearchHit("transaction", q, block_number=tx.value.block_number,
                                       transaction_hash=tx.value.hash))
            if isinstance(tx, TransientError):
                return tx

        if (q.isascii() and q.isdigit()) or is_hash(q):
            blk = await self.get_block(q)
            if isinstance(blk, Found):
                return Found(SearchHit("block", q, block_number=blk.value.number))
            if isinstance(blk, TransientError):
                return blk

        return NotFound(f"search {q!r}")
