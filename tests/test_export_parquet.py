"""
Chunked Parquet export from the SQLite store and the ParquetIndex that reads
it back.
"""

import json
import os

import pytest

from blockpulse.adapters.manifest_jsonl import JSONLManifest
from blockpulse.adapters.parquet_index import ParquetIndex
from blockpulse.adapters.parquet_sink import chunk_name
from blockpulse.application.export import export_chunks, export_store_to_parquet
from blockpulse.application.ingest import BlockIngestor
from blockpulse.application.planning import merge_intervals, plan_chunks, subtract_interval
from blockpulse.domain.models import BlockRange, ChunkRec

from conftest import A, B, BASE_TS, C, FakeChain, raw_block, raw_tx


def _chain(n_blocks: int) -> FakeChain:
    chain = FakeChain()
    for n in range(n_blocks):
        txs = [raw_tx(n, A, B, value=10**20 + n), raw_tx(10_000 + n, B, C, type_=0)] if n % 3 == 0 else []
        chain.add(raw_block(n, txs))
    return chain


async def _ingest(chain, store, heights):
    ing = BlockIngestor(chain, store, network="testnet")
    for h in heights:
        await ing.ingest_block(h)


class TestPlanning:
    def test_chunks_cover_range(self):
        recs = plan_chunks(5, 27, 10)
        assert [(r.from_block, r.to_block) for r in recs] == [(5, 14), (15, 24), (25, 27)]
        with pytest.raises(ValueError):
            plan_chunks(0, 10, 0)

    def test_merge_and_subtract(self):
        covered = merge_intervals([(10, 19), (0, 9), (30, 39)])
        assert covered == [(0, 19), (30, 39)]
        assert subtract_interval(BlockRange(0, 49), covered) == [BlockRange(20, 29), BlockRange(40, 49)]
        assert subtract_interval(BlockRange(0, 9), covered) == []


class TestExport:
    """Only complete chunks are written and recorded."""

    @pytest.mark.asyncio
    async def test_exports_below_safety_margin(self, store, tmp_path):
        await _ingest(_chain(60), store, range(60))
        out = tmp_path / "export"
        res = await export_store_to_parquet(store, str(out), step=10, safety_margin=5)
        assert res["planned_chunks"] == 6
        assert res["chunks_written"] == 6
        assert res["blocks"] == 55
        assert (out / "blocks" / chunk_name(50, 54)).exists()
        assert (out / "transactions" / chunk_name(0, 9)).exists()
        assert JSONLManifest(str(out / "manifest.jsonl")).done_chunks()[-1] == (50, 54)

    @pytest.mark.asyncio
    async def test_second_run_skips_done_chunks(self, store, tmp_path):
        chain = _chain(80)
        await _ingest(chain, store, range(40))
        out = str(tmp_path / "export")
        await export_store_to_parquet(store, out, step=10, safety_margin=0)
        again = await export_store_to_parquet(store, out, step=10, safety_margin=0)
        assert again["planned_chunks"] == 0

        await _ingest(chain, store, range(40, 80))
        more = await export_store_to_parquet(store, out, step=10, safety_margin=0)
        assert more["planned_chunks"] == 4 and more["chunks_written"] == 4

    @pytest.mark.asyncio
    async def test_gap_leaves_chunk_incomplete(self, store, tmp_path):
        await _ingest(_chain(30), store, [h for h in range(30) if h != 25])
        out = tmp_path / "export"
        res = await export_store_to_parquet(store, str(out), step=10, safety_margin=0)
        assert res["chunks_written"] == 2
        assert res["chunks_incomplete"] == 1
        assert not (out / "blocks" / chunk_name(20, 29)).exists()

    @pytest.mark.asyncio
    async def test_empty_store(self, store, tmp_path):
        res = await export_store_to_parquet(store, str(tmp_path / "x"))
        assert res["planned_chunks"] == 0

    @pytest.mark.asyncio
    async def test_sink_failure_is_recorded(self, store, tmp_path):
        class BrokenSink:
            async def write_chunk(self, from_block, to_block, blocks, transactions):
                raise OSError("disk full")

        await _ingest(_chain(10), store, range(10))
        manifest = JSONLManifest(str(tmp_path / "manifest.jsonl"))
        seen = []
        res = await export_chunks(store=store, sink=BrokenSink(), manifest=manifest, covered=[],
                                  start_block=0, end_block=9, step=5, on_chunk=seen.append)
        assert res["chunks_failed"] == 2
        assert {r.status for r in seen} == {"failed"}
        assert manifest.done_chunks() == []
        assert "disk full" in manifest.records()[(0, 4)].error


class TestManifest:
    @pytest.mark.asyncio
    async def test_last_record_wins_and_corrupt_lines_skipped(self, tmp_path):
        path = tmp_path / "m.jsonl"
        m = JSONLManifest(str(path))
        await m.append(ChunkRec(0, 9, "failed", 1, "boom"))
        with open(path, "a") as f:
            f.write("{truncated\n")
        await m.append(ChunkRec(0, 9, "done", 2, None, 10, 3))
        assert m.records()[(0, 9)].status == "done"
        assert m.done_chunks() == [(0, 9)]
        assert len([ln for ln in path.read_text().splitlines() if ln.startswith("{\"")]) == 2
        assert json.loads(path.read_text().splitlines()[0])["status"] == "failed"


class TestParquetIndex:
    """Reads exported chunks as an IndexedStore."""

    @pytest.mark.asyncio
    async def test_probe_on_missing_export(self, tmp_path):
        assert await ParquetIndex(str(tmp_path / "nothing")).probe() is False

    @pytest.mark.asyncio
    async def test_history_and_analytics_match_store(self, store, tmp_path):
        await _ingest(_chain(60), store, range(60))
        out = str(tmp_path / "export")
        await export_store_to_parquet(store, out, step=10, safety_margin=0)
        idx = ParquetIndex(out)

        assert await idx.probe() is True
        txs = await idx.account_transactions(A, 3)
        assert [t.block_number for t in txs] == [57, 54, 51]
        assert txs[0].value == 10**20 + 57
        assert await idx.account_transaction_count(B) == await store.account_transaction_count(B) == 40
        assert await idx.latest_timestamp() == BASE_TS + 59

        since, until = BASE_TS, BASE_TS + 59
        assert await idx.rollups(since, until) == await store.rollups(since, until)
        assert await idx.unique_addresses(since, until) == await store.unique_addresses(since, until) == 3

    @pytest.mark.asyncio
    async def test_unfinished_chunk_files_are_ignored(self, store, tmp_path):
        await _ingest(_chain(20), store, range(20))
        out = str(tmp_path / "export")
        await export_store_to_parquet(store, out, step=10, safety_margin=0)
        with open(os.path.join(out, "manifest.jsonl"), "a") as f:
            f.write(json.dumps({"from_block": 10, "to_block": 19, "status": "pending"}) + "\n")
        idx = ParquetIndex(out)
        assert await idx.latest_timestamp() == BASE_TS + 9

    @pytest.mark.asyncio
    async def test_history_and_count_share_one_read(self, store, tmp_path, monkeypatch):
        chain = _chain(40)
        await _ingest(chain, store, range(20))
        out = str(tmp_path / "export")
        await export_store_to_parquet(store, out, step=10, safety_margin=0)
        idx = ParquetIndex(out)
        real, tables = idx._read, []

        def counting(table, *args, **kwargs):
            tables.append(table)
            return real(table, *args, **kwargs)

        monkeypatch.setattr(idx, "_read", counting)
        rows = await idx.account_transactions(A, 25)
        assert await idx.account_transaction_count(A) == len(rows) == 7
        assert tables == ["transactions"]

        await _ingest(chain, store, range(20, 40))
        await export_store_to_parquet(store, out, step=10, safety_margin=0)
        assert await idx.account_transaction_count(A) == 14
        assert tables == ["transactions", "transactions"]
