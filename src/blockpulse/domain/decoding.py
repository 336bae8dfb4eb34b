from __future__ import annotations

from typing import Any, Mapping, Optional

from eth_utils import is_hex_address

from .errors import MalformedDataError
from .models import (
    AccessListEntry, AccessListTx, Block, BlockSample, DynamicFeeTx, LegacyTx,
    Receipt, Transaction, TxSummary,
)
from .value_types import Address, TxHash

RawBlock = Mapping[str, Any]
RawTx = Mapping[str, Any]

# EIP-2718 type codes
LEGACY_TYPE, ACCESS_LIST_TYPE, DYNAMIC_FEE_TYPE, BLOB_TYPE = 0, 1, 2, 3


# ---------- scalar helpers ------------------------------------------------------

def hex_to_int(v: Any, *, field: str = "value") -> int:
    """Handles 0x..., decimal strings and native ints."""
    if isinstance(v, bool):
        raise MalformedDataError(f"{field}: unexpected bool")
    if isinstance(v, int):
        return v
    if isinstance(v, str):
        s = v.strip().lower()
        try:
            return int(s, 16) if s.startswith("0x") else int(s)
        except ValueError:
            pass
    raise MalformedDataError(f"{field}: not an integer quantity: {v!r}")


def opt_int(v: Any, *, field: str = "value") -> Optional[int]:
    return None if v is None else hex_to_int(v, field=field)


def normalize_address(v: Any, *, field: str = "address") -> Address:
    if not isinstance(v, str) or not is_hex_address(v):
        raise MalformedDataError(f"{field}: not a 20-byte hex address: {v!r}")
    return Address(v.lower())


def opt_address(v: Any, *, field: str = "address") -> Optional[Address]:
    return None if v in (None, "", "0x") else normalize_address(v, field=field)


def normalize_hash(v: Any, *, field: str = "hash") -> str:
    if not isinstance(v, str) or len(v) != 66 or not v[:2].lower() == "0x":
        raise MalformedDataError(f"{field}: not a 32-byte hash: {v!r}")
    try:
        int(v[2:], 16)
    except ValueError:
        raise MalformedDataError(f"{field}: not hex: {v!r}") from None
    return v.lower()


def is_hash(v: Any) -> bool:
    try:
        normalize_hash(v)
    except MalformedDataError:
        return False
    return True


def _require(raw: Mapping[str, Any], key: str, what: str) -> Any:
    if not isinstance(raw, Mapping):
        raise MalformedDataError(f"{what}: expected an object, got {type(raw).__name__}")
    if raw.get(key) is None:
        raise MalformedDataError(f"{what}: missing '{key}'")
    return raw[key]


# ---------- transactions ----------------------------------------------------------

def _access_list(raw: Any) -> tuple[AccessListEntry, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise MalformedDataError("accessList: expected a list")
    out: list[AccessListEntry] = []
    for item in raw:
        addr = normalize_address(_require(item, "address", "accessList entry"), field="accessList.address")
        keys = tuple(normalize_hash(k, field="accessList.storageKeys") for k in item.get("storageKeys") or [])
        out.append(AccessListEntry(addr, keys))
    return tuple(out)


def decode_transaction(raw: RawTx, *, block: Optional[Block] = None) -> Transaction:
    """
    Build the transaction variant matching the type code. Unknown codes fall back
    to the shape of the fee fields; anything else raises MalformedDataError.
    """
    tx_hash = TxHash(normalize_hash(_require(raw, "hash", "transaction"), field="tx.hash"))
    type_code = hex_to_int(raw.get("type", "0x0"), field="tx.type")

    block_number = opt_int(raw.get("blockNumber"), field="tx.blockNumber")
    block_hash = raw.get("blockHash")
    if block is not None:
        block_number = block.number if block_number is None else block_number
        block_hash = block_hash or block.hash

    common = dict(
        hash=tx_hash,
        block_number=block_number,
        block_hash=block_hash.lower() if isinstance(block_hash, str) else None,
        transaction_index=opt_int(raw.get("transactionIndex"), field="tx.transactionIndex"),
        from_address=normalize_address(_require(raw, "from", "transaction"), field="tx.from"),
        to_address=opt_address(raw.get("to"), field="tx.to"),
        value=hex_to_int(raw.get("value", "0x0"), field="tx.value"),
        gas=hex_to_int(raw.get("gas", "0x0"), field="tx.gas"),
        input=str(raw.get("input") or raw.get("data") or "0x"),
        nonce=hex_to_int(raw.get("nonce", "0x0"), field="tx.nonce"),
        type=type_code,
        timestamp=block.timestamp if block is not None else None,
    )

    has_dynamic = raw.get("maxFeePerGas") is not None and raw.get("maxPriorityFeePerGas") is not None
    if type_code in (DYNAMIC_FEE_TYPE, BLOB_TYPE) or (type_code > BLOB_TYPE and has_dynamic):
        return DynamicFeeTx(
            **common,
            max_fee_per_gas=hex_to_int(_require(raw, "maxFeePerGas", "dynamic-fee tx"), field="tx.maxFeePerGas"),
            max_priority_fee_per_gas=hex_to_int(
                _require(raw, "maxPriorityFeePerGas", "dynamic-fee tx"), field="tx.maxPriorityFeePerGas"),
            access_list=_access_list(raw.get("accessList")),
            gas_price=opt_int(raw.get("gasPrice"), field="tx.gasPrice"),
        )
    gas_price = hex_to_int(_require(raw, "gasPrice", "transaction"), field="tx.gasPrice")
    if type_code == ACCESS_LIST_TYPE:
        return AccessListTx(**common, gas_price=gas_price, access_list=_access_list(raw.get("accessList")))
    return LegacyTx(**common, gas_price=gas_price)


# ---------- blocks ------------------------------------------------------------------

def decode_block(raw: RawBlock) -> tuple[Block, list[Any]]:
    """
    Returns the block header plus its raw transaction entries (dicts or bare
    hashes) so callers can decide per item; bodies are NOT decoded here.
    """
    txs = raw.get("transactions") if isinstance(raw, Mapping) else None
    if txs is None:
        txs = []
    if not isinstance(txs, list):
        raise MalformedDataError("block.transactions: expected a list")

    hashes: list[TxHash] = []
    for t in txs:
        if isinstance(t, str):
            hashes.append(TxHash(normalize_hash(t, field="block.transactions[]")))
        elif isinstance(t, Mapping) and is_hash(t.get("hash")):
            hashes.append(TxHash(t["hash"].lower()))

    block = Block(
        number=hex_to_int(_require(raw, "number", "block"), field="block.number"),
        hash=normalize_hash(_require(raw, "hash", "block"), field="block.hash"),
        parent_hash=normalize_hash(_require(raw, "parentHash", "block"), field="block.parentHash"),
        timestamp=hex_to_int(_require(raw, "timestamp", "block"), field="block.timestamp"),
        gas_used=hex_to_int(raw.get("gasUsed", "0x0"), field="block.gasUsed"),
        gas_limit=hex_to_int(raw.get("gasLimit", "0x0"), field="block.gasLimit"),
        miner=normalize_address(_require(raw, "miner", "block"), field="block.miner"),
        transaction_count=len(txs),
        base_fee_per_gas=opt_int(raw.get("baseFeePerGas"), field="block.baseFeePerGas"),
        size_bytes=opt_int(raw.get("size"), field="block.size"),
        transaction_hashes=tuple(hashes),
    )
    return block, list(txs)


def decode_full_block(raw: RawBlock) -> Block:
    """Strict variant for read paths: every body must decode."""
    block, txs = decode_block(raw)
    bodies = tuple(decode_transaction(t, block=block) for t in txs if not isinstance(t, str))
    if not bodies:
        return block
    return Block(block.number, block.hash, block.parent_hash, block.timestamp, block.gas_used,
                 block.gas_limit, block.miner, block.transaction_count, block.base_fee_per_gas,
                 block.size_bytes, bodies, block.transaction_hashes)


def block_sample(raw: RawBlock) -> tuple[BlockSample, set[str]]:
    """Analytics view of a raw block: sample plus the addresses it touched."""
    block, txs = decode_block(raw)
    value = 0
    seen: set[str] = set()
    for t in txs:
        if not isinstance(t, Mapping):
            continue
        value += hex_to_int(t.get("value", "0x0"), field="tx.value")
        for k in ("from", "to"):
            a = t.get(k)
            if isinstance(a, str) and a:
                seen.add(a.lower())
    return BlockSample.of_block(block.timestamp, block.transaction_count, block.gas_used, value), seen


def tx_summary(raw: RawTx, *, block_number: int, timestamp: Optional[int]) -> TxSummary:
    return TxSummary(
        hash=TxHash(normalize_hash(_require(raw, "hash", "transaction"), field="tx.hash")),
        block_number=block_number,
        from_address=normalize_address(_require(raw, "from", "transaction"), field="tx.from"),
        to_address=opt_address(raw.get("to"), field="tx.to"),
        value=hex_to_int(raw.get("value", "0x0"), field="tx.value"),
        timestamp=timestamp,
    )


# ---------- receipts ----------------------------------------------------------------

def decode_receipt(raw: Mapping[str, Any]) -> Receipt:
    logs = raw.get("logs") if isinstance(raw, Mapping) else None
    return Receipt(
        transaction_hash=TxHash(normalize_hash(_require(raw, "transactionHash", "receipt"), field="receipt.transactionHash")),
        block_number=hex_to_int(_require(raw, "blockNumber", "receipt"), field="receipt.blockNumber"),
        block_hash=normalize_hash(_require(raw, "blockHash", "receipt"), field="receipt.blockHash"),
        transaction_index=hex_to_int(raw.get("transactionIndex", "0x0"), field="receipt.transactionIndex"),
        from_address=normalize_address(_require(raw, "from", "receipt"), field="receipt.from"),
        to_address=opt_address(raw.get("to"), field="receipt.to"),
        status=opt_int(raw.get("status"), field="receipt.status"),
        gas_used=hex_to_int(raw.get("gasUsed", "0x0"), field="receipt.gasUsed"),
        cumulative_gas_used=hex_to_int(raw.get("cumulativeGasUsed", "0x0"), field="receipt.cumulativeGasUsed"),
        effective_gas_price=opt_int(raw.get("effectiveGasPrice"), field="receipt.effectiveGasPrice"),
        contract_address=opt_address(raw.get("contractAddress"), field="receipt.contractAddress"),
        log_count=len(logs) if isinstance(logs, list) else 0,
    )
