from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

from ..adapters.cache_memory import MemoryCache
from ..adapters.cache_redis import RedisCache
from ..adapters.parquet_index import ParquetIndex
from ..adapters.rpc_httpx import HttpxRPC
from ..adapters.sqlite_store import SQLiteStore
from ..config import Settings
from ..domain.errors import UnknownNetworkError
from ..ports.cache import Cache
from ..ports.index import IndexedStore
from ..ports.rpc import ChainRPC
from .analytics import AnalyticsAggregator, RpcAnalyticsBackend
from .cache import ReadThroughCache, TTLPolicy
from .ingest import BlockIngestor, Mode
from .query import IndexSelector, QueryFacade
from .scanner import FallbackScanner, ScanLimits

log = logging.getLogger(__name__)


class ClientRegistry:
    """One independent chain client per network, built once and passed around."""

    def __init__(self, clients: Mapping[str, ChainRPC]) -> None:
        self._clients = dict(clients)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClientRegistry":
        return cls({
            name: HttpxRPC(
                net.rpc_url,
                network=name,
                timeout_s=net.timeout_s,
                max_conn=net.max_connections,
                max_attempts=net.max_attempts,
                retry_delay_s=net.retry_delay_s,
            )
            for name, net in settings.networks.items()
        })

    def get(self, network: str) -> ChainRPC:
        try:
            return self._clients[network]
        except KeyError:
            raise UnknownNetworkError(f"no client for network {network!r}") from None

    @property
    def networks(self) -> list[str]:
        return list(self._clients)

    async def aclose(self) -> None:
        for c in self._clients.values():
            await c.aclose()


@dataclass
class Runtime:
    """Everything one process needs, wired from Settings."""
    settings: Settings
    clients: ClientRegistry
    cache: ReadThroughCache
    stores: dict[str, SQLiteStore] = field(default_factory=dict)

    def store(self, network: str) -> SQLiteStore:
        st = self.stores.get(network)
        if st is None:
            net = self.settings.network(network)
            st = SQLiteStore(net.db_path or f"data/{network}.sqlite")
            self.stores[network] = st
        return st

    def scanner(self, network: str) -> FallbackScanner:
        s = self.settings.scanner
        return FallbackScanner(self.clients.get(network), ScanLimits(s.batch_size, s.max_blocks, s.max_results,
                                                                     s.batch_delay_s))

    def indexes(self, network: str) -> list[IndexedStore]:
        net = self.settings.network(network)
        out: list[IndexedStore] = [self.store(network)]
        if net.index_dir and os.path.isdir(net.index_dir):
            out.append(ParquetIndex(net.index_dir))
        return out

    def facade(self, network: str) -> QueryFacade:
        a = self.settings.analytics
        c = self.settings.cache
        scanner = self.scanner(network)
        return QueryFacade(
            network,
            self.clients.get(network),
            scanner=scanner,
            store=self.store(network),
            selector=IndexSelector(self.indexes(network), probe_ttl_s=a.probe_ttl_s),
            cache=self.cache,
            ttl=TTLPolicy(c.deep_threshold, c.long_ttl_s, c.short_ttl_s),
            analytics=AnalyticsAggregator(a.target_points),
            rpc_analytics=RpcAnalyticsBackend(scanner, blocks_per_second=a.blocks_per_second,
                                              max_blocks=a.max_rpc_blocks),
            report_ttl_s=a.report_ttl_s,
        )

    def ingestor(self, network: str, mode: Mode = "live", start: Optional[int] = None,
                 end: Optional[int] = None) -> BlockIngestor:
        i = self.settings.ingest
        return BlockIngestor(
            self.clients.get(network),
            self.store(network),
            network=network,
            mode=mode,
            start=start,
            end=end,
            tx_concurrency=i.tx_concurrency,
            tick_timeout_s=i.tick_timeout_s,
            with_receipts=i.with_receipts,
        )

    async def aclose(self) -> None:
        await self.clients.aclose()
        await self.cache.aclose()
        for st in self.stores.values():
            await st.close()


def build_cache(settings: Settings) -> Optional[Cache]:
    c = settings.cache
    if c.backend == "redis":
        return RedisCache(c.redis_url)
    if c.backend == "memory":
        return MemoryCache(c.max_entries)
    return None


def build_runtime(settings: Settings) -> Runtime:
    clients = ClientRegistry.from_settings(settings)
    log.debug("runtime for networks %s (cache=%s)", clients.networks, settings.cache.backend)
    return Runtime(settings, clients, ReadThroughCache(build_cache(settings)))
