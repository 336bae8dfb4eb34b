from __future__ import annotations
from ..domain.models import BlockRange, ChunkRec

def plan_chunks(start_block: int, end_block: int, step: int) -> list[ChunkRec]:
    """Fixed-size inclusive chunks covering [start_block, end_block]; the last one may be short."""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    out: list[ChunkRec] = []
    b = start_block
    while b <= end_block:
        fb, tb = b, min(end_block, b + step - 1)
        out.append(ChunkRec(from_block=fb, to_block=tb))
        b = tb + 1
    return out

def merge_intervals(intervals: list[tuple[int,int]]) -> list[tuple[int,int]]:
    """Sorted union of inclusive intervals; adjacent ones are joined."""
    if not intervals: return []
    ivs = sorted(intervals)
    merged: list[list[int]] = [[ivs[0][0], ivs[0][1]]]
    for s, e in ivs[1:]:
        if s <= merged[-1][1] + 1: merged[-1][1] = max(merged[-1][1], e)
        else: merged.append([s, e])
    return [(s, e) for s, e in merged]

def subtract_interval(iv: BlockRange, covered: list[tuple[int,int]]) -> list[BlockRange]:
    """Parts of `iv` not inside any of the merged `covered` intervals."""
    if iv.start > iv.end: return []
    res: list[BlockRange] = []
    cur = iv.start
    for cs, ce in covered:
        if ce < cur: continue
        if cs > iv.end: break
        if cs > cur: res.append(BlockRange(cur, min(iv.end, cs - 1)))
        cur = max(cur, ce + 1)
        if cur > iv.end: break
    if cur <= iv.end: res.append(BlockRange(cur, iv.end))
    return res
