"""HttpxRPC against an in-process httpx.MockTransport."""

import json

import httpx
import pytest

from blockpulse.adapters.rpc_httpx import HttpxRPC
from blockpulse.domain.errors import MalformedDataError, NotFoundError, RetryExhaustedError, RPCError

from conftest import A, h32


class Node:
    """Scripted JSON-RPC endpoint: each entry is a callable(request) -> httpx.Response."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        return step(request)


def ok(result):
    return lambda req: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": result})


def rpc_error(code, message):
    return lambda req: httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                                 "error": {"code": code, "message": message}})


def status(code, headers=None):
    return lambda req: httpx.Response(code, headers=headers or {})


def timeout(req):
    raise httpx.ConnectTimeout("timed out", request=req)


def client(node: Node, **kw) -> HttpxRPC:
    return HttpxRPC("http://node.test", network="testnet", retry_delay_s=0,
                    transport=httpx.MockTransport(node), **kw)


class TestCall:
    """Retry and error classification."""

    @pytest.mark.asyncio
    async def test_latest_block_number(self):
        node = Node(ok("0x10"))
        rpc = client(node)
        assert await rpc.latest_block_number() == 16
        assert node.requests[0]["method"] == "eth_blockNumber"
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_null_result_is_not_found(self):
        rpc = client(Node(ok(None)))
        with pytest.raises(NotFoundError):
            await rpc.get_block(123)
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_after_max_attempts(self):
        node = Node(timeout)
        rpc = client(node, max_attempts=3)
        with pytest.raises(RetryExhaustedError) as ei:
            await rpc.get_block(1)
        assert ei.value.attempts == 3
        assert isinstance(ei.value.last_error, httpx.ConnectTimeout)
        assert len(node.requests) == 3
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_5xx_then_success(self):
        node = Node(status(503), status(429, {"Retry-After": "0"}), ok("0x1"))
        rpc = client(node)
        assert await rpc.get_transaction_count(A) == 1
        assert len(node.requests) == 3
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        node = Node(status(400))
        rpc = client(node)
        with pytest.raises(RPCError):
            await rpc.latest_block_number()
        assert len(node.requests) == 1
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_not_found_message(self):
        rpc = client(Node(rpc_error(-32000, "transaction not found")))
        with pytest.raises(NotFoundError):
            await rpc.get_transaction(h32(1))
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_method_not_found_is_rpc_error(self):
        rpc = client(Node(rpc_error(-32601, "the method eth_foo does not exist/is not available")))
        with pytest.raises(RPCError) as ei:
            await rpc.get_transaction_receipt(h32(1))
        assert ei.value.code == -32601
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        rpc = client(Node(lambda req: httpx.Response(200, text="<html>")))
        with pytest.raises(MalformedDataError):
            await rpc.latest_block_number()
        await rpc.aclose()


class TestMethods:
    @pytest.mark.asyncio
    async def test_block_by_hash_and_number(self):
        node = Node(ok({"number": "0x1"}))
        rpc = client(node)
        await rpc.get_block(h32(9), include_tx=False)
        await rpc.get_block(255)
        await rpc.get_block("latest")
        assert node.requests[0]["method"] == "eth_getBlockByHash"
        assert node.requests[0]["params"] == [h32(9), False]
        assert node.requests[1]["params"] == ["0xff", True]
        assert node.requests[2]["params"] == ["latest", True]
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_block_receipts_unsupported(self):
        rpc = client(Node(rpc_error(-32601, "method not found")))
        assert await rpc.get_block_receipts(5) is None
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_code_of_empty_account(self):
        rpc = client(Node(ok(None)))
        assert await rpc.get_code(A) == "0x"
        await rpc.aclose()
