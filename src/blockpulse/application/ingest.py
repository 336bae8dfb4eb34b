from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Literal, Optional

from ..domain.decoding import decode_block, decode_receipt, decode_transaction
from ..domain.errors import (
    MalformedDataError, NotFoundError, RPCError, StoreUnavailableError, TransientTransportError,
)
from ..domain.models import Block, Receipt, TickOutcome, Transaction
from ..ports.rpc import ChainRPC
from ..ports.storage import ChainStore
from .accounts import deltas_for

log = logging.getLogger(__name__)

Mode = Literal["live", "backfill"]


class BlockIngestor:
    """
    Pulls one height per tick into the store.

    live      follows the chain head from the persisted cursor (or the current
              head on first start)
    backfill  walks [start, end] and reports "done" past the end

    The cursor moves only after a height is fully persisted. A missing block,
    an exhausted transport, an unparseable node response, a failed store write
    or a tick timeout leaves it on the same height.
    """

    def __init__(
        self,
        rpc: ChainRPC,
        store: ChainStore,
        *,
        network: str,
        mode: Mode = "live",
        start: Optional[int] = None,
        end: Optional[int] = None,
        tx_concurrency: int = 16,
        tick_timeout_s: float = 30.0,
        with_receipts: bool = False,
    ) -> None:
        if mode == "backfill" and (start is None or end is None or start > end):
            raise ValueError(f"backfill needs start <= end, got {start}..{end}")
        self.rpc = rpc
        self.store = store
        self.network = network
        self.mode = mode
        self.start = start
        self.end = end
        self.tx_concurrency = max(1, tx_concurrency)
        self.tick_timeout_s = tick_timeout_s
        self.with_receipts = with_receipts
        self.next_height: Optional[int] = None

    @property
    def cursor_key(self) -> str:
        if self.mode == "backfill":
            return f"backfill:{self.network}:{self.start}-{self.end}"
        return f"live:{self.network}"

    async def _resolve_next(self) -> int:
        if self.next_height is not None:
            return self.next_height
        stored = await self.store.get_cursor(self.cursor_key)
        if stored is not None:
            self.next_height = stored + 1
        elif self.start is not None:
            self.next_height = self.start
        else:
            self.next_height = await self.rpc.latest_block_number()
        log.info("%s %s ingest starting at height %d", self.network, self.mode, self.next_height)
        return self.next_height

    # ---------- per-block routine ---------------------------------------------------

    async def ingest_block(self, height: int) -> TickOutcome:
        raw = await self.rpc.get_block(height, include_tx=True)
        try:
            block, items = decode_block(raw)
        except MalformedDataError as e:
            log.warning("%s skipping malformed block %d: %s", self.network, height, e)
            return TickOutcome(height, "skipped", error=str(e))

        txs: list[Transaction] = []
        skipped = 0
        for item in items:
            if isinstance(item, str):
                skipped += 1
                continue
            try:
                txs.append(decode_transaction(item, block=block))
            except MalformedDataError as e:
                skipped += 1
                log.warning("%s block %d: skipping malformed transaction: %s", self.network, height, e)
        if skipped:
            log.debug("%s block %d: %d of %d items skipped", self.network, height, skipped, len(items))

        if self.with_receipts and txs:
            txs = await self._attach_receipts(block, txs)

        await self.store.insert_block(block.header())

        sem = asyncio.Semaphore(self.tx_concurrency)

        async def record(tx: Transaction) -> bool:
            async with sem:
                return await self.store.record_transaction(tx, deltas_for(tx))

        # every write settles before a failure surfaces; the height is retried whole
        results = await asyncio.gather(*(record(t) for t in txs), return_exceptions=True)
        for r in results:
            if isinstance(r, BaseException):
                raise r
        return TickOutcome(height, "ingested", transactions=len(txs), inserted=sum(results), skipped_items=skipped)

    async def _attach_receipts(self, block: Block, txs: list[Transaction]) -> list[Transaction]:
        raws: Optional[list[Any]] = await self.rpc.get_block_receipts(block.number)
        if raws is None:
            sem = asyncio.Semaphore(self.tx_concurrency)

            async def one(tx: Transaction) -> Any:
                async with sem:
                    return await self.rpc.get_transaction_receipt(tx.hash)

            raws = list(await asyncio.gather(*(one(t) for t in txs)))

        by_hash: dict[str, Receipt] = {}
        for raw in raws:
            try:
                rc = decode_receipt(raw)
            except MalformedDataError as e:
                log.warning("%s block %d: skipping malformed receipt: %s", self.network, block.number, e)
                continue
            by_hash[rc.transaction_hash] = rc

        out: list[Transaction] = []
        for tx in txs:
            rc = by_hash.get(tx.hash)
            out.append(replace(tx, status=rc.status, gas_used=rc.gas_used) if rc else tx)
        return out

    # ---------- loop ----------------------------------------------------------------

    async def tick(self) -> TickOutcome:
        if self.mode == "backfill" and self.next_height is not None and self.next_height > self.end:
            return TickOutcome(None, "done")
        height: Optional[int] = self.next_height
        try:
            height = await self._resolve_next()
            if self.mode == "backfill" and height > self.end:
                return TickOutcome(None, "done")
            outcome = await asyncio.wait_for(self.ingest_block(height), timeout=self.tick_timeout_s)
        except NotFoundError:
            log.debug("%s block %s not available yet", self.network, height)
            return TickOutcome(height, "waiting")
        except (TransientTransportError, RPCError, MalformedDataError, StoreUnavailableError,
                asyncio.TimeoutError) as e:
            return self._retry(height, e)

        try:
            await self.store.set_cursor(self.cursor_key, height)
        except StoreUnavailableError as e:
            return self._retry(height, e)
        self.next_height = height + 1
        return outcome

    def _retry(self, height: Optional[int], e: BaseException) -> TickOutcome:
        name = type(e).__name__
        log.warning("%s height %s not ingested (%s: %s); retrying the same height next tick",
                    self.network, height, name, e)
        return TickOutcome(height, "retry", error=name)

    async def run(
        self,
        stop: Optional[asyncio.Event] = None,
        *,
        poll_interval_s: float = 1.0,
        on_tick: Optional[Callable[[TickOutcome], None]] = None,
    ) -> int:
        """Tick until stopped or the backfill completes. Returns heights persisted."""
        done = 0
        while stop is None or not stop.is_set():
            outcome = await self.tick()
            if on_tick is not None:
                on_tick(outcome)
            if outcome.status == "done":
                break
            if outcome.status in ("ingested", "skipped"):
                done += 1
                continue
            if stop is None:
                await asyncio.sleep(poll_interval_s)
            else:
                try:
                    await asyncio.wait_for(stop.wait(), timeout=poll_interval_s)
                except asyncio.TimeoutError:
                    pass
        return done
