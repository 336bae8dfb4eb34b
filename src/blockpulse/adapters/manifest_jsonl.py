from __future__ import annotations
import os, json, asyncio, logging
from dataclasses import asdict
from ..ports.storage import ManifestSink
from ..domain.models import ChunkRec

log = logging.getLogger(__name__)

class JSONLManifest(ManifestSink):
    """
    Append-only JSONL log of export chunks. The latest record for a
    (from_block, to_block) pair wins when the file is read back.
    """
    def __init__(self, path: str) -> None:
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = asyncio.Lock()

    def _write(self, line: str) -> None:
        with open(self.path, "a") as f:
            f.write(line); f.flush(); os.fsync(f.fileno())

    async def append(self, rec: ChunkRec) -> None:
        line = json.dumps(asdict(rec), separators=(",", ":")) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._write, line)

    def records(self) -> dict[tuple[int, int], ChunkRec]:
        out: dict[tuple[int, int], ChunkRec] = {}
        if not os.path.exists(self.path):
            return out
        with open(self.path, "r") as f:
            for n, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    rec = ChunkRec(**json.loads(line))
                except (ValueError, TypeError) as e:
                    log.warning("skipping corrupt manifest line %s:%d: %s", self.path, n, e)
                    continue
                out[(rec.from_block, rec.to_block)] = rec
        return out

    def done_chunks(self) -> list[tuple[int, int]]:
        return sorted(k for k, rec in self.records().items() if rec.status == "done")
