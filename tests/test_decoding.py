"""Decoding raw JSON-RPC payloads into domain models."""

import pytest

from blockpulse.domain import codec
from blockpulse.domain.decoding import (
    block_sample, decode_block, decode_full_block, decode_receipt, decode_transaction, hex_to_int,
)
from blockpulse.domain.errors import MalformedDataError
from blockpulse.domain.models import AccessListTx, DynamicFeeTx, LegacyTx

from conftest import A, B, BASE_TS, addr, h32, raw_block, raw_tx


class TestScalars:
    def test_hex_and_decimal(self):
        assert hex_to_int("0x1f") == 31
        assert hex_to_int("42") == 42
        assert hex_to_int(7) == 7

    @pytest.mark.parametrize("bad", ["0xzz", "", None, True, 1.5])
    def test_rejects_non_quantities(self, bad):
        with pytest.raises(MalformedDataError):
            hex_to_int(bad)


class TestTransactionVariants:
    """Each type code maps to its own record shape."""

    def test_legacy(self):
        tx = decode_transaction(raw_tx(1, A, B, type_=0))
        assert isinstance(tx, LegacyTx)
        assert tx.kind == "legacy"
        assert tx.gas_price == 1_000_000_000

    def test_access_list(self):
        tx = decode_transaction(raw_tx(1, A, B, type_=1))
        assert isinstance(tx, AccessListTx)
        assert tx.access_list[0].address == addr(0xEE)
        assert tx.access_list[0].storage_keys == (h32(1),)

    def test_dynamic_fee(self):
        tx = decode_transaction(raw_tx(1, A, B, type_=2, value=10**21))
        assert isinstance(tx, DynamicFeeTx)
        assert tx.max_fee_per_gas == 2_000_000_000
        assert tx.gas_price is None
        assert tx.value == 10**21

    def test_unknown_type_with_fee_fields_is_dynamic(self):
        raw = raw_tx(1, A, B, type_=2)
        raw["type"] = "0x7e"
        assert isinstance(decode_transaction(raw), DynamicFeeTx)

    def test_unknown_type_with_gas_price_is_legacy(self):
        raw = raw_tx(1, A, B, type_=0)
        raw["type"] = "0xff"
        tx = decode_transaction(raw)
        assert isinstance(tx, LegacyTx) and tx.type == 0xFF

    def test_dynamic_fee_missing_fields_is_malformed(self):
        raw = raw_tx(1, A, B, type_=2)
        del raw["maxPriorityFeePerGas"]
        with pytest.raises(MalformedDataError):
            decode_transaction(raw)

    def test_contract_creation_and_address_case(self):
        raw = raw_tx(1, A.upper().replace("0X", "0x"), None, type_=0)
        tx = decode_transaction(raw)
        assert tx.is_contract_creation
        assert tx.from_address == A

    def test_pending_has_no_block(self):
        tx = decode_transaction(raw_tx(1, A, B))
        assert tx.block_number is None and tx.timestamp is None


class TestBlocks:
    def test_header_keeps_hashes_only(self):
        blk = decode_full_block(raw_block(9, [raw_tx(1, A, B), raw_tx(2, B, A, type_=0)]))
        assert len(blk.transactions) == 2
        assert blk.transactions[1].block_number == 9
        header = blk.header()
        assert header.transactions == ()
        assert header.transaction_hashes == tuple(t.hash for t in blk.transactions)

    def test_bare_hashes_are_not_decoded(self):
        block, items = decode_block(raw_block(3, [h32(5)]))
        assert block.transaction_count == 1
        assert items == [h32(5)]

    def test_missing_number_is_malformed(self):
        raw = raw_block(3)
        del raw["number"]
        with pytest.raises(MalformedDataError):
            decode_block(raw)

    def test_sample_collects_addresses_and_value(self):
        sample, seen = block_sample(raw_block(4, [raw_tx(1, A, B, value=5), raw_tx(2, B, None, value=7)]))
        assert sample.first_ts == BASE_TS + 4
        assert sample.tx_count == 2 and sample.value == 12
        assert seen == {A, B}


class TestReceipt:
    def test_decodes_receipt(self):
        rc = decode_receipt({
            "transactionHash": h32(1), "blockNumber": "0x10", "blockHash": h32(2),
            "transactionIndex": "0x0", "from": A, "to": None, "status": "0x0",
            "gasUsed": "0x5208", "cumulativeGasUsed": "0x5208", "contractAddress": B,
            "logs": [{}, {}],
        })
        assert rc.block_number == 16
        assert rc.status == 0
        assert rc.contract_address == B
        assert rc.log_count == 2


class TestRows:
    """Flat rows used by SQLite and Parquet keep wei amounts exact."""

    def test_tx_row_keeps_big_values(self):
        tx = decode_transaction(raw_tx(1, A, B, type_=1, value=2**100))
        back = codec.tx_from_row(codec.tx_to_row(tx))
        assert back == tx

    def test_cache_payload_rebuilds_variant(self):
        blk = decode_full_block(raw_block(9, [raw_tx(1, A, B)]))
        assert codec.loads(codec.dumps(blk)) == blk

    def test_unknown_payload_type(self):
        with pytest.raises(MalformedDataError):
            codec.loads('{"__type__": "Nope"}')
