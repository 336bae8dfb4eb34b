"""
Shared fixtures: an in-memory chain implementing ChainRPC, raw JSON-RPC
builders and a temp-file SQLite store.
"""

import copy
from collections import Counter
from typing import Any, Optional

import pytest

from blockpulse.adapters.sqlite_store import SQLiteStore
from blockpulse.domain.errors import NotFoundError, RPCError

BASE_TS = 1_700_000_000


def addr(n: int) -> str:
    return "0x" + f"{n:040x}"


def h32(n: int) -> str:
    return "0x" + f"{n:064x}"


A, B, C, D = addr(0xA), addr(0xB), addr(0xC), addr(0xD)


def raw_tx(n: int, frm: str, to: Optional[str], *, value: int = 1, type_: int = 2, nonce: int = 0) -> dict:
    tx = {
        "hash": h32(0x7000_0000 + n),
        "from": frm,
        "to": to,
        "value": hex(value),
        "gas": hex(21_000),
        "input": "0x",
        "nonce": hex(nonce),
        "type": hex(type_),
    }
    if type_ in (2, 3):
        tx["maxFeePerGas"] = hex(2_000_000_000)
        tx["maxPriorityFeePerGas"] = hex(1_000_000)
        tx["accessList"] = []
    else:
        tx["gasPrice"] = hex(1_000_000_000)
        if type_ == 1:
            tx["accessList"] = [{"address": addr(0xEE), "storageKeys": [h32(1)]}]
    return tx


def raw_block(number: int, txs: list = (), *, ts: Optional[int] = None, gas_used: int = 21_000) -> dict:
    blk = {
        "number": hex(number),
        "hash": h32(number + 1),
        "parentHash": h32(number),
        "timestamp": hex(BASE_TS + number if ts is None else ts),
        "gasUsed": hex(gas_used * max(1, len(txs))),
        "gasLimit": hex(30_000_000),
        "miner": addr(0xFEE),
        "baseFeePerGas": hex(1_000),
        "size": hex(600),
        "transactions": [],
    }
    for i, t in enumerate(txs):
        if isinstance(t, dict):
            t = dict(t, blockNumber=hex(number), blockHash=blk["hash"], transactionIndex=hex(i))
        blk["transactions"].append(t)
    return blk


class FakeChain:
    """ChainRPC over a dict of raw blocks; failures are injectable per height."""

    network = "testnet"

    def __init__(self, blocks: Optional[dict[int, dict]] = None, head: Optional[int] = None) -> None:
        self.blocks: dict[int, dict] = dict(blocks or {})
        self._head = head
        self.calls: Counter = Counter()
        self.block_requests: list[Any] = []
        self.failures: dict[int, list[BaseException]] = {}
        self.block_receipts_supported = True
        self.balances: dict[str, int] = {}
        self.codes: dict[str, str] = {}
        self.nonces: dict[str, int] = {}

    @property
    def head(self) -> int:
        if self._head is not None:
            return self._head
        return max(self.blocks) if self.blocks else 0

    @head.setter
    def head(self, v: int) -> None:
        self._head = v

    def add(self, blk: dict) -> None:
        self.blocks[int(blk["number"], 16)] = blk

    def fail(self, height: int, *errors: BaseException) -> None:
        self.failures.setdefault(height, []).extend(errors)

    async def latest_block_number(self) -> int:
        self.calls["eth_blockNumber"] += 1
        return self.head

    async def get_block(self, block_id, include_tx: bool = True) -> dict:
        self.calls["get_block"] += 1
        self.block_requests.append(block_id)
        if isinstance(block_id, int) and self.failures.get(block_id):
            raise self.failures[block_id].pop(0)
        if isinstance(block_id, str):
            match = [b for b in self.blocks.values() if b["hash"] == block_id]
            if not match:
                raise NotFoundError(block_id)
            blk = match[0]
        elif block_id in self.blocks:
            blk = self.blocks[block_id]
        else:
            raise NotFoundError(f"block {block_id}")
        blk = copy.deepcopy(blk)
        if not include_tx:
            blk["transactions"] = [t["hash"] if isinstance(t, dict) else t for t in blk["transactions"]]
        return blk

    def _find_tx(self, tx_hash: str) -> tuple[dict, dict]:
        for blk in self.blocks.values():
            for t in blk["transactions"]:
                if isinstance(t, dict) and t.get("hash") == tx_hash:
                    return blk, t
        raise NotFoundError(tx_hash)

    async def get_transaction(self, tx_hash) -> dict:
        self.calls["get_transaction"] += 1
        return copy.deepcopy(self._find_tx(tx_hash)[1])

    def _receipt(self, blk: dict, t: dict) -> dict:
        return {
            "transactionHash": t["hash"],
            "blockNumber": blk["number"],
            "blockHash": blk["hash"],
            "transactionIndex": t.get("transactionIndex", "0x0"),
            "from": t["from"],
            "to": t.get("to"),
            "status": "0x1",
            "gasUsed": hex(21_000),
            "cumulativeGasUsed": hex(21_000),
            "effectiveGasPrice": hex(1_500_000_000),
            "contractAddress": None,
            "logs": [],
        }

    async def get_transaction_receipt(self, tx_hash) -> dict:
        self.calls["get_transaction_receipt"] += 1
        return self._receipt(*self._find_tx(tx_hash))

    async def get_block_receipts(self, number: int):
        self.calls["get_block_receipts"] += 1
        if not self.block_receipts_supported:
            return None
        blk = self.blocks.get(number)
        if blk is None:
            raise NotFoundError(f"receipts {number}")
        return [self._receipt(blk, t) for t in blk["transactions"] if isinstance(t, dict)]

    async def get_balance(self, address) -> int:
        self.calls["get_balance"] += 1
        return self.balances.get(address, 0)

    async def get_transaction_count(self, address) -> int:
        self.calls["get_transaction_count"] += 1
        return self.nonces.get(address, 0)

    async def get_code(self, address) -> str:
        self.calls["get_code"] += 1
        if address == "0x" + "de" * 20:
            raise RPCError("eth_getCode", -32000, "boom")
        return self.codes.get(address, "0x")

    async def aclose(self) -> None:
        pass


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def store(tmp_path):
    st = SQLiteStore(str(tmp_path / "chain.sqlite"))
    yield st
    st.conn.close()


async def no_sleep(_s: float) -> None:
    return None
