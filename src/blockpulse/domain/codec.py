from __future__ import annotations

import json
from dataclasses import fields, is_dataclass
from typing import Any, Mapping, Optional

from . import models as m
from .errors import MalformedDataError
from .value_types import Address, TxHash

# Wei-denominated amounts can exceed int64; they travel as decimal strings in
# SQLite and Parquet. Gas quantities and nonces stay native ints.

_TYPES: dict[str, type] = {
    cls.__name__: cls for cls in (
        m.BlockRange, m.AccessListEntry, m.LegacyTx, m.AccessListTx, m.DynamicFeeTx,
        m.Block, m.Receipt, m.AccountActivity, m.AccountOverview, m.TxSummary,
        m.AccountTransactions, m.ScanResult, m.TimeBucketStat, m.AnalyticsStats,
        m.AnalyticsMeta, m.AnalyticsReport,
    )
}


# ---------- tagged JSON (cache payloads) ----------------------------------------------

def _to_jsonable(obj: Any) -> Any:
    if is_dataclass(obj) and not isinstance(obj, type):
        name = type(obj).__name__
        if name not in _TYPES:
            raise TypeError(f"{name} is not cacheable")
        out = {"__type__": name}
        for f in fields(obj):
            out[f.name] = _to_jsonable(getattr(obj, f.name))
        return out
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(x) for x in obj]
    if isinstance(obj, Mapping):
        return {str(k): _to_jsonable(v) for k, v in obj.items()}
    return obj


def _from_jsonable(obj: Any) -> Any:
    if isinstance(obj, list):
        return tuple(_from_jsonable(x) for x in obj)
    if isinstance(obj, dict):
        tag = obj.get("__type__")
        if tag is None:
            return {k: _from_jsonable(v) for k, v in obj.items()}
        cls = _TYPES.get(tag)
        if cls is None:
            raise MalformedDataError(f"unknown cached type {tag!r}")
        kwargs = {k: _from_jsonable(v) for k, v in obj.items() if k != "__type__"}
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise MalformedDataError(f"cannot rebuild {tag}: {e}") from e
    return obj


def dumps(obj: Any) -> str:
    return json.dumps(_to_jsonable(obj), separators=(",", ":"))


def loads(payload: str | bytes) -> Any:
    try:
        raw = json.loads(payload)
    except ValueError as e:
        raise MalformedDataError(f"cached payload is not JSON: {e}") from e
    return _from_jsonable(raw)


# ---------- flat rows (SQLite / Parquet) ----------------------------------------------

def _s(v: Optional[int]) -> Optional[str]:
    return None if v is None else str(v)


def _i(v: Any) -> Optional[int]:
    return None if v is None else int(v)


BLOCK_COLUMNS = (
    "number", "hash", "parent_hash", "timestamp", "gas_used", "gas_limit",
    "base_fee_per_gas", "miner", "transaction_count", "size_bytes", "transaction_hashes",
)

TX_COLUMNS = (
    "hash", "block_number", "block_hash", "transaction_index", "from_address", "to_address",
    "value", "gas", "gas_price", "max_fee_per_gas", "max_priority_fee_per_gas", "input",
    "nonce", "type", "kind", "access_list", "status", "gas_used", "timestamp",
)


def block_to_row(b: m.Block) -> dict[str, Any]:
    hashes = b.transaction_hashes or tuple(t.hash for t in b.transactions)
    return {
        "number": b.number,
        "hash": b.hash,
        "parent_hash": b.parent_hash,
        "timestamp": b.timestamp,
        "gas_used": b.gas_used,
        "gas_limit": b.gas_limit,
        "base_fee_per_gas": _s(b.base_fee_per_gas),
        "miner": b.miner,
        "transaction_count": b.transaction_count,
        "size_bytes": b.size_bytes,
        "transaction_hashes": json.dumps(list(hashes)),
    }


def block_from_row(row: Mapping[str, Any]) -> m.Block:
    hashes = row.get("transaction_hashes")
    return m.Block(
        number=int(row["number"]),
        hash=row["hash"],
        parent_hash=row["parent_hash"],
        timestamp=int(row["timestamp"]),
        gas_used=int(row["gas_used"]),
        gas_limit=int(row["gas_limit"]),
        miner=Address(row["miner"]),
        transaction_count=int(row["transaction_count"]),
        base_fee_per_gas=_i(row.get("base_fee_per_gas")),
        size_bytes=_i(row.get("size_bytes")),
        transaction_hashes=tuple(TxHash(h) for h in json.loads(hashes)) if hashes else (),
    )


def _access_list_json(entries: tuple[m.AccessListEntry, ...]) -> str:
    return json.dumps([{"address": e.address, "storageKeys": list(e.storage_keys)} for e in entries])


def _access_list_from_json(raw: Optional[str]) -> tuple[m.AccessListEntry, ...]:
    if not raw:
        return ()
    return tuple(m.AccessListEntry(Address(e["address"]), tuple(e.get("storageKeys") or ())) for e in json.loads(raw))


def tx_to_row(tx: m.Transaction) -> dict[str, Any]:
    row: dict[str, Any] = {
        "hash": tx.hash,
        "block_number": tx.block_number,
        "block_hash": tx.block_hash,
        "transaction_index": tx.transaction_index,
        "from_address": tx.from_address,
        "to_address": tx.to_address,
        "value": str(tx.value),
        "gas": tx.gas,
        "gas_price": _s(tx.gas_price),
        "max_fee_per_gas": None,
        "max_priority_fee_per_gas": None,
        "input": tx.input,
        "nonce": tx.nonce,
        "type": tx.type,
        "kind": tx.kind,
        "access_list": None,
        "status": tx.status,
        "gas_used": tx.gas_used,
        "timestamp": tx.timestamp,
    }
    if isinstance(tx, m.DynamicFeeTx):
        row["max_fee_per_gas"] = str(tx.max_fee_per_gas)
        row["max_priority_fee_per_gas"] = str(tx.max_priority_fee_per_gas)
    if isinstance(tx, (m.AccessListTx, m.DynamicFeeTx)):
        row["access_list"] = _access_list_json(tx.access_list)
    return row


def tx_from_row(row: Mapping[str, Any]) -> m.Transaction:
    kind = row["kind"]
    common = dict(
        hash=TxHash(row["hash"]),
        block_number=_i(row.get("block_number")),
        block_hash=row.get("block_hash"),
        transaction_index=_i(row.get("transaction_index")),
        from_address=Address(row["from_address"]),
        to_address=Address(row["to_address"]) if row.get("to_address") else None,
        value=int(row["value"]),
        gas=int(row["gas"]),
        input=row.get("input") or "0x",
        nonce=int(row["nonce"]),
        type=int(row["type"]),
        timestamp=_i(row.get("timestamp")),
        status=_i(row.get("status")),
        gas_used=_i(row.get("gas_used")),
    )
    if kind == "dynamic_fee":
        return m.DynamicFeeTx(
            **common,
            max_fee_per_gas=int(row["max_fee_per_gas"]),
            max_priority_fee_per_gas=int(row["max_priority_fee_per_gas"]),
            access_list=_access_list_from_json(row.get("access_list")),
            gas_price=_i(row.get("gas_price")),
        )
    if kind == "access_list":
        return m.AccessListTx(**common, gas_price=int(row["gas_price"]),
                              access_list=_access_list_from_json(row.get("access_list")))
    if kind == "legacy":
        return m.LegacyTx(**common, gas_price=int(row["gas_price"]))
    raise MalformedDataError(f"unknown transaction kind {kind!r} for {row.get('hash')}")


def tx_summary(tx: m.Transaction) -> m.TxSummary:
    return m.TxSummary(
        hash=tx.hash,
        block_number=tx.block_number if tx.block_number is not None else -1,
        from_address=tx.from_address,
        to_address=tx.to_address,
        value=tx.value,
        timestamp=tx.timestamp,
        status=tx.status,
    )
