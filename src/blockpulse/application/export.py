from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Callable, Optional

from ..adapters.manifest_jsonl import JSONLManifest
from ..adapters.parquet_sink import ParquetBlockSink
from ..domain.models import BlockRange, ChunkRec
from ..ports.storage import BlockSink, ChainStore, ManifestSink
from .planning import merge_intervals, plan_chunks, subtract_interval

log = logging.getLogger(__name__)


async def export_chunks(
    *,
    store: ChainStore,
    sink: BlockSink,
    manifest: ManifestSink,
    covered: list[tuple[int, int]],
    start_block: int,
    end_block: int,
    step: int,
    concurrency: int = 4,
    on_chunk: Optional[Callable[[ChunkRec], None]] = None,
) -> dict[str, int]:
    """
    Copy [start_block, end_block] from the store into the sink chunk by chunk,
    skipping `covered` ranges. Only chunks whose every height is present in
    the store are written and recorded as done; gaps are left for a later run.
    """
    written = failed = incomplete = n_blocks = n_txs = 0
    todo: list[ChunkRec] = []
    for part in subtract_interval(BlockRange(start_block, end_block), merge_intervals(covered)):
        todo.extend(plan_chunks(part.start, part.end, step))

    sem = asyncio.Semaphore(concurrency)

    async def run_chunk(rec: ChunkRec) -> None:
        nonlocal written, failed, incomplete, n_blocks, n_txs
        fb, tb = rec.from_block, rec.to_block
        async with sem:
            blocks = await store.blocks_between(fb, tb)
            if len(blocks) != tb - fb + 1:
                incomplete += 1
                log.info("export: chunk %d-%d has %d of %d blocks; leaving it for later",
                         fb, tb, len(blocks), tb - fb + 1)
                return
            txs = await store.transactions_between(fb, tb)
            try:
                await sink.write_chunk(fb, tb, blocks, txs)
            except OSError as e:
                failed += 1
                out = ChunkRec(fb, tb, "failed", 1, f"{type(e).__name__}: {e}", 0, 0, time.time())
                log.warning("export: chunk %d-%d failed: %s", fb, tb, e)
            else:
                written += 1
                n_blocks += len(blocks)
                n_txs += len(txs)
                out = ChunkRec(fb, tb, "done", 1, None, len(blocks), len(txs), time.time())
        await manifest.append(out)
        if on_chunk is not None:
            on_chunk(out)

    await asyncio.gather(*(run_chunk(r) for r in todo))
    return {
        "planned_chunks": len(todo),
        "chunks_written": written,
        "chunks_failed": failed,
        "chunks_incomplete": incomplete,
        "blocks": n_blocks,
        "transactions": n_txs,
    }


async def export_store_to_parquet(
    store: ChainStore,
    out_dir: str,
    *,
    step: int = 1_000,
    safety_margin: int = 12,
    concurrency: int = 4,
    on_chunk: Optional[Callable[[ChunkRec], None]] = None,
) -> dict[str, int]:
    """
    Export everything the store holds up to `safety_margin` blocks below its
    head. Chunks recorded as done in <out_dir>/manifest.jsonl are skipped.
    """
    rng = await store.height_range()
    empty = {"planned_chunks": 0, "chunks_written": 0, "chunks_failed": 0,
             "chunks_incomplete": 0, "blocks": 0, "transactions": 0}
    if rng is None:
        return empty
    lo, hi = rng
    end = hi - safety_margin
    if end < lo:
        log.info("export: store head %d is within the safety margin; nothing to do", hi)
        return empty

    os.makedirs(out_dir, exist_ok=True)
    manifest = JSONLManifest(os.path.join(out_dir, "manifest.jsonl"))
    return await export_chunks(
        store=store,
        sink=ParquetBlockSink(out_dir),
        manifest=manifest,
        covered=manifest.done_chunks(),
        start_block=lo,
        end_block=end,
        step=step,
        concurrency=concurrency,
        on_chunk=on_chunk,
    )
