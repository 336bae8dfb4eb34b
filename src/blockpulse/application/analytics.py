from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from ..domain.decoding import block_sample, hex_to_int
from ..domain.errors import InvalidInputError, MalformedDataError
from ..domain.models import AnalyticsMeta, AnalyticsReport, AnalyticsStats, BlockSample, TimeBucketStat
from ..ports.index import ROLLUP_SECONDS, IndexedStore
from .scanner import FallbackScanner

log = logging.getLogger(__name__)

RANGES: dict[str, int] = {
    "1h": 3_600,
    "24h": 86_400,
    "7d": 7 * 86_400,
    "30d": 30 * 86_400,
}

MIN_BUCKET = 30
BUCKET_LADDER: tuple[int, ...] = (30, 60, 300, 900, 1_800, 3_600)
# Precomputed rollups serve ranges beyond a day at coarser steps.
EXTENDED_LADDER: tuple[int, ...] = BUCKET_LADDER + (10_800, 21_600, 43_200, 86_400)

_LABELS = {30: "30s", 60: "1m", 300: "5m", 900: "15m", 1_800: "30m", 3_600: "1h",
           10_800: "3h", 21_600: "6h", 43_200: "12h", 86_400: "1d"}


def choose_bucket_seconds(span_s: int, target_points: int = 15, ladder: Sequence[int] = BUCKET_LADDER) -> int:
    """Smallest ladder step >= max(30, span / target_points); the last step otherwise."""
    ideal = max(MIN_BUCKET, int(span_s // max(1, target_points)))
    for step in ladder:
        if step >= ideal:
            return step
    return ladder[-1]


def bucket_label(seconds: int) -> str:
    return _LABELS.get(seconds, f"{seconds}s")


def achieved_span(samples: Sequence[BlockSample]) -> int:
    if not samples:
        return 0
    return max(s.last_ts for s in samples) - min(s.first_ts for s in samples)


def bucketize(samples: Sequence[BlockSample], bucket_s: int) -> list[TimeBucketStat]:
    acc: dict[int, list[int]] = {}
    for s in samples:
        start = (s.start // bucket_s) * bucket_s
        cur = acc.setdefault(start, [0, 0, 0, 0])
        cur[0] += s.tx_count
        cur[1] += s.block_count
        cur[2] += s.gas_used
        cur[3] += s.value
    return [TimeBucketStat(start, *vals) for start, vals in sorted(acc.items())]


def summarize(samples: Sequence[BlockSample], unique_addresses: Optional[int] = None) -> AnalyticsStats:
    """
    Totals and averages over samples given in scan order. With per-block
    samples avg_block_time is the mean of successive timestamp deltas; with
    rollups it is span / (blocks - 1).
    """
    blocks = sum(s.block_count for s in samples)
    txs = sum(s.tx_count for s in samples)
    gas = sum(s.gas_used for s in samples)
    value = sum(s.value for s in samples)
    span = achieved_span(samples)

    if samples and all(s.block_count == 1 for s in samples):
        deltas = [abs(a.first_ts - b.first_ts) for a, b in zip(samples, samples[1:])]
        avg_block_time = sum(deltas) / len(deltas) if deltas else 0.0
    else:
        avg_block_time = span / (blocks - 1) if blocks > 1 else 0.0

    return AnalyticsStats(
        total_transactions=txs,
        total_blocks=blocks,
        total_gas_used=gas,
        total_value=value,
        achieved_span=span,
        tps=txs / span if span > 0 else 0.0,
        avg_block_time=avg_block_time,
        avg_tx_per_block=txs / blocks if blocks else 0.0,
        avg_gas_used=gas // blocks if blocks else 0,
        unique_addresses=unique_addresses,
    )


# ---------- backends ------------------------------------------------------------------

@dataclass(slots=True, frozen=True)
class SampleSet:
    samples: tuple[BlockSample, ...]        # scan order
    unique_addresses: Optional[int] = None
    latest_block: Optional[int] = None
    data_limited: bool = False              # the range could not be fully covered
    partial: bool = False                   # some blocks in the covered span were unreadable


class AnalyticsBackend(Protocol):
    name: str

    def ladder_for(self, range_s: int) -> tuple[int, ...]: ...

    async def samples(self, range_s: int) -> SampleSet: ...


class RpcAnalyticsBackend(AnalyticsBackend):
    """Recent blocks straight from the node, newest first, capped at max_blocks."""

    name = "rpc"

    def __init__(self, scanner: FallbackScanner, *, blocks_per_second: float = 1.0, max_blocks: int = 1_000) -> None:
        self.scanner = scanner
        self.blocks_per_second = blocks_per_second
        self.max_blocks = max_blocks

    def ladder_for(self, range_s: int) -> tuple[int, ...]:
        return BUCKET_LADDER

    async def samples(self, range_s: int) -> SampleSet:
        rpc = self.scanner.rpc
        head = await rpc.latest_block_number()
        head_raw = await rpc.get_block(head, include_tx=False)
        newest_ts = hex_to_int(head_raw.get("timestamp"), field="block.timestamp")
        cutoff = newest_ts - range_s

        wanted = max(1, math.ceil(range_s * self.blocks_per_second))
        count = min(wanted, self.max_blocks)
        raws = await self.scanner.recent_blocks(count, head, include_tx=True, stop_before_ts=cutoff)

        out: list[BlockSample] = []
        seen: set[str] = set()
        malformed = 0
        oldest_ts: Optional[int] = None
        for raw in raws:
            try:
                sample, addrs = block_sample(raw)
            except MalformedDataError as e:
                malformed += 1
                log.debug("analytics: skipping malformed block: %s", e)
                continue
            oldest_ts = sample.first_ts if oldest_ts is None else min(oldest_ts, sample.first_ts)
            if sample.first_ts >= cutoff:
                out.append(sample)
                seen |= addrs

        expected = min(count, head + 1)
        return SampleSet(
            samples=tuple(out),
            unique_addresses=len(seen),
            latest_block=head,
            data_limited=oldest_ts is None or oldest_ts > cutoff,
            partial=malformed > 0 or (len(raws) < expected and (oldest_ts is None or oldest_ts >= cutoff)),
        )


class IndexedAnalyticsBackend(AnalyticsBackend):
    """Precomputed 30 s rollups from an indexed store; re-bucketed exactly."""

    def __init__(self, index: IndexedStore) -> None:
        self.index = index
        self.name = f"indexed:{index.name}"

    def ladder_for(self, range_s: int) -> tuple[int, ...]:
        return BUCKET_LADDER if range_s <= RANGES["24h"] else EXTENDED_LADDER

    async def samples(self, range_s: int) -> SampleSet:
        latest = await self.index.latest_timestamp()
        if latest is None:
            return SampleSet((), 0, data_limited=True)
        since = latest - range_s
        rollups = await self.index.rollups(since, latest)
        unique = await self.index.unique_addresses(since, latest)
        return SampleSet(
            samples=tuple(rollups),
            unique_addresses=unique,
            data_limited=not rollups or rollups[0].first_ts > since + ROLLUP_SECONDS,
        )


class AnalyticsAggregator:
    def __init__(self, target_points: int = 15) -> None:
        self.target_points = target_points

    async def report(self, backend: AnalyticsBackend, range_label: str) -> AnalyticsReport:
        range_s = RANGES.get(range_label)
        if range_s is None:
            raise InvalidInputError(f"unknown range {range_label!r}; expected one of {', '.join(RANGES)}")
        ss = await backend.samples(range_s)
        span = achieved_span(ss.samples)
        bucket_s = choose_bucket_seconds(span, self.target_points, backend.ladder_for(range_s))
        stats = summarize(ss.samples, ss.unique_addresses)
        meta = AnalyticsMeta(
            range=range_label,
            range_seconds=range_s,
            backend=backend.name,
            bucket_seconds=bucket_s,
            bucket_label=bucket_label(bucket_s),
            blocks_analyzed=stats.total_blocks,
            data_limited=ss.data_limited,
            partial=ss.partial,
            latest_block=ss.latest_block,
        )
        return AnalyticsReport(meta, stats, tuple(bucketize(ss.samples, bucket_s)))
