from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from ..domain.decoding import decode_block, hex_to_int, tx_summary
from ..domain.errors import MalformedDataError, NotFoundError, RPCError, TransientTransportError
from ..domain.models import ScanResult, TxSummary
from ..domain.value_types import Address
from ..ports.rpc import ChainRPC

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ScanLimits:
    batch_size: int = 20
    max_blocks: int = 1000
    max_results: int = 25
    batch_delay_s: float = 0.25


class FallbackScanner:
    """
    Direct chain traversal used when no indexed store can answer. Walks back
    from the head in concurrent batches with a pause between batches; results
    are always best effort.
    """

    def __init__(
        self,
        rpc: ChainRPC,
        limits: ScanLimits = ScanLimits(),
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.limits = limits
        self.sleep = sleep

    async def _fetch(self, height: int, include_tx: bool) -> Optional[dict[str, Any]]:
        try:
            return await self.rpc.get_block(height, include_tx=include_tx)
        except (NotFoundError, TransientTransportError, RPCError, MalformedDataError) as e:
            log.debug("scan: block %d unavailable (%s)", height, type(e).__name__)
            return None

    @staticmethod
    def _matches(raw: Mapping[str, Any], address: str, height: int) -> list[TxSummary]:
        block, items = decode_block(raw)
        out: list[TxSummary] = []
        for item in reversed(items):
            if not isinstance(item, Mapping):
                continue
            frm = str(item.get("from") or "").lower()
            to = str(item.get("to") or "").lower()
            if address in (frm, to):
                out.append(tx_summary(item, block_number=block.number, timestamp=block.timestamp))
        return out

    async def transactions_for(self, address: Address, limit: Optional[int] = None) -> ScanResult:
        lim = self.limits
        addr = str(address).lower()
        want = lim.max_results if limit is None else max(0, min(limit, lim.max_results))

        head = await self.rpc.latest_block_number()
        lowest = max(0, head - lim.max_blocks + 1)
        matches: list[TxSummary] = []
        scanned = batches = failed = 0
        height, oldest = head, head

        while height >= lowest and len(matches) < want:
            if batches:
                await self.sleep(lim.batch_delay_s)
            heights = list(range(height, max(lowest, height - lim.batch_size + 1) - 1, -1))
            tasks = [asyncio.create_task(self._fetch(h, True)) for h in heights]
            batches += 1
            try:
                for h, task in zip(heights, tasks):
                    raw = await task
                    scanned += 1
                    oldest = h
                    if raw is None:
                        failed += 1
                        continue
                    try:
                        found = self._matches(raw, addr, h)
                    except MalformedDataError as e:
                        log.debug("scan: block %d malformed: %s", h, e)
                        failed += 1
                        continue
                    matches.extend(found[: want - len(matches)])
                    if len(matches) >= want:
                        break
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            height = heights[-1] - 1

        log.debug("scan %s: %d matches in %d blocks (%d batches, %d failed)",
                  addr, len(matches), scanned, batches, failed)
        return ScanResult(Address(addr), tuple(matches), head, oldest, scanned, batches, failed, True)

    async def recent_blocks(
        self,
        count: int,
        start: Optional[int] = None,
        *,
        include_tx: bool = True,
        stop_before_ts: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Up to `count` raw blocks newest-first from `start` (default: head).
        Unavailable heights are skipped. With `stop_before_ts`, no further batch
        is issued once a block older than that timestamp has been seen.
        """
        lim = self.limits
        if start is None:
            start = await self.rpc.latest_block_number()
        lowest = max(0, start - count + 1)
        out: list[dict[str, Any]] = []
        height, batches = start, 0
        while height >= lowest:
            if batches:
                await self.sleep(lim.batch_delay_s)
            heights = list(range(height, max(lowest, height - lim.batch_size + 1) - 1, -1))
            batches += 1
            raws = await asyncio.gather(*(self._fetch(h, include_tx) for h in heights))
            out.extend(r for r in raws if r is not None)
            height = heights[-1] - 1
            if stop_before_ts is not None and out:
                ts = _timestamp(out[-1])
                if ts is not None and ts < stop_before_ts:
                    break
        return out


def _timestamp(raw: Any) -> Optional[int]:
    if not isinstance(raw, Mapping) or raw.get("timestamp") is None:
        return None
    try:
        return hex_to_int(raw["timestamp"], field="block.timestamp")
    except MalformedDataError as e:
        log.debug("scan: %s", e)
        return None
