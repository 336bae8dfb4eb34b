"""
Bucket selection, summary statistics and parity between the RPC and indexed
analytics backends.
"""

import pytest

from blockpulse.application.analytics import (
    BUCKET_LADDER, EXTENDED_LADDER, RANGES, AnalyticsAggregator, IndexedAnalyticsBackend, RpcAnalyticsBackend,
    bucket_label, bucketize, choose_bucket_seconds, summarize,
)
from blockpulse.application.ingest import BlockIngestor
from blockpulse.application.scanner import FallbackScanner, ScanLimits
from blockpulse.domain.errors import InvalidInputError
from blockpulse.domain.models import BlockSample

from conftest import BASE_TS, FakeChain, addr, no_sleep, raw_block, raw_tx


def _chain(n_blocks: int) -> FakeChain:
    """One block per second; every other block carries a transaction."""
    chain = FakeChain()
    for n in range(n_blocks):
        txs = [raw_tx(n, addr(n % 5 + 1), addr(n % 7 + 10), value=n)] if n % 2 == 0 else []
        chain.add(raw_block(n, txs))
    return chain


def _rpc_backend(chain: FakeChain) -> RpcAnalyticsBackend:
    return RpcAnalyticsBackend(FallbackScanner(chain, ScanLimits(batch_size=20), sleep=no_sleep),
                               blocks_per_second=1.0, max_blocks=1_000)


class TestBucketChoice:
    def test_minimum_is_thirty_seconds(self):
        assert choose_bucket_seconds(0) == 30
        assert choose_bucket_seconds(300) == 30

    def test_snaps_up_to_ladder(self):
        assert choose_bucket_seconds(480) == 60
        assert choose_bucket_seconds(3_600) == 300
        assert choose_bucket_seconds(86_400) == 3_600

    def test_extended_ladder_for_long_ranges(self):
        assert choose_bucket_seconds(RANGES["7d"], ladder=EXTENDED_LADDER) == 43_200
        assert choose_bucket_seconds(RANGES["30d"], ladder=EXTENDED_LADDER) == 86_400
        assert choose_bucket_seconds(RANGES["30d"], ladder=BUCKET_LADDER) == 3_600

    def test_labels(self):
        assert [bucket_label(s) for s in BUCKET_LADDER] == ["30s", "1m", "5m", "15m", "30m", "1h"]

    @pytest.mark.parametrize("span", [0, 45, 480, 1_200, 7_000, 40_000, 86_400])
    def test_bucket_count_stays_near_target(self, span):
        """A day at most yields one bucket per hour; shorter spans stay near the target."""
        step = choose_bucket_seconds(span)
        assert span // step + 1 <= max(16, span // 3_600 + 1)


class TestSummary:
    def test_block_time_is_mean_of_deltas(self):
        samples = [BlockSample.of_block(ts, 1, 100, 5) for ts in (10, 7, 1)]
        s = summarize(samples, unique_addresses=4)
        assert s.avg_block_time == 4.5
        assert s.achieved_span == 9
        assert s.tps == pytest.approx(3 / 9)
        assert s.avg_gas_used == 100
        assert s.total_value == 15
        assert s.unique_addresses == 4

    def test_empty(self):
        s = summarize([])
        assert (s.total_blocks, s.tps, s.avg_block_time, s.avg_tx_per_block) == (0, 0.0, 0.0, 0.0)

    def test_single_block_has_no_rate(self):
        s = summarize([BlockSample.of_block(5, 3, 1, 0)])
        assert s.tps == 0.0 and s.avg_block_time == 0.0

    def test_bucketize_groups_by_aligned_start(self):
        samples = [BlockSample.of_block(ts, 1, 1, 1) for ts in (0, 29, 30, 61)]
        out = bucketize(samples, 30)
        assert [(b.bucket_start, b.block_count) for b in out] == [(0, 2), (30, 1), (60, 1)]


class TestRpcBackend:
    """Analytics straight from the node."""

    @pytest.mark.asyncio
    async def test_day_range_with_short_history(self):
        """500 scannable blocks for a 24h request: one-minute buckets, not one and not 1440."""
        report = await AnalyticsAggregator(15).report(_rpc_backend(_chain(500)), "24h")
        assert report.meta.bucket_seconds == 60
        assert report.meta.bucket_label == "1m"
        assert 8 <= len(report.series) <= 10
        assert report.meta.data_limited is True
        assert report.meta.partial is False
        assert report.meta.backend == "rpc"
        assert report.stats.total_blocks == 500
        assert report.stats.total_transactions == 250
        assert report.stats.achieved_span == 499
        assert report.stats.avg_block_time == pytest.approx(1.0)
        assert sum(b.transaction_count for b in report.series) == 250

    @pytest.mark.asyncio
    async def test_scan_is_capped(self):
        chain = _chain(300)
        backend = RpcAnalyticsBackend(FallbackScanner(chain, ScanLimits(batch_size=50), sleep=no_sleep),
                                      max_blocks=100)
        report = await AnalyticsAggregator().report(backend, "1h")
        assert report.stats.total_blocks == 100
        assert report.meta.latest_block == 299

    @pytest.mark.asyncio
    async def test_unreadable_blocks_mark_partial(self):
        chain = _chain(60)
        blk = chain.blocks[30]
        blk["miner"] = "bad"
        report = await AnalyticsAggregator().report(_rpc_backend(chain), "1h")
        assert report.meta.partial is True
        assert report.stats.total_blocks == 59

    @pytest.mark.asyncio
    async def test_unknown_range(self):
        with pytest.raises(InvalidInputError):
            await AnalyticsAggregator().report(_rpc_backend(_chain(3)), "2h")


class TestIndexedBackend:
    """Rollups from the store give the same answer as a full scan."""

    @pytest.mark.asyncio
    async def test_parity_with_rpc(self, store):
        chain = _chain(120)
        await BlockIngestor(chain, store, network="testnet", mode="backfill", start=0, end=119).run(poll_interval_s=0)

        agg = AnalyticsAggregator()
        rpc_report = await agg.report(_rpc_backend(chain), "1h")
        idx_report = await agg.report(IndexedAnalyticsBackend(store), "1h")

        assert idx_report.meta.backend == "indexed:sqlite"
        assert idx_report.meta.bucket_seconds == rpc_report.meta.bucket_seconds == 30
        assert idx_report.series == rpc_report.series
        for f in ("total_transactions", "total_blocks", "total_gas_used", "total_value", "achieved_span",
                  "unique_addresses"):
            assert getattr(idx_report.stats, f) == getattr(rpc_report.stats, f), f
        assert idx_report.stats.avg_block_time == pytest.approx(rpc_report.stats.avg_block_time)

    @pytest.mark.asyncio
    async def test_rollups_are_aligned(self, store):
        chain = _chain(70)
        await BlockIngestor(chain, store, network="testnet", mode="backfill", start=0, end=69).run(poll_interval_s=0)
        rollups = await store.rollups(BASE_TS, BASE_TS + 69)
        assert all(r.start % 30 == 0 for r in rollups)
        assert sum(r.block_count for r in rollups) == 70

    @pytest.mark.asyncio
    async def test_empty_store_is_data_limited(self, store):
        report = await AnalyticsAggregator().report(IndexedAnalyticsBackend(store), "7d")
        assert report.meta.data_limited is True
        assert report.stats.total_blocks == 0
        assert report.series == ()
