from __future__ import annotations
import asyncio, itertools, logging, httpx
from typing import Any, Optional
from ..domain.decoding import hex_to_int, is_hash
from ..domain.errors import MalformedDataError, NotFoundError, RetryExhaustedError, RPCError
from ..domain.value_types import Address, BlockId, TxHash
from ..ports.rpc import ChainRPC

log = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601
_RETRY_STATUS = {429, 500, 502, 503, 504}

def _to_hex_block(n: int) -> str: return hex(int(n))

def _error_message(err: Any) -> tuple[Optional[int], str]:
    if isinstance(err, dict):
        return err.get("code"), str(err.get("message", ""))
    return None, str(err)

class HttpxRPC(ChainRPC):
    """
    JSON-RPC client for one network. Transport failures (timeouts, refused
    connections, 429/5xx) are retried `max_attempts` times with a fixed delay,
    then surface as RetryExhaustedError; a null result is NotFoundError.
    """
    def __init__(
        self,
        rpc_url: str,
        *,
        network: str = "mainnet",
        timeout_s: float = 20,
        max_conn: int = 64,
        max_attempts: int = 3,
        retry_delay_s: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.network = network
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delay_s = retry_delay_s
        self._ids = itertools.count(1)
        self.client = httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max_conn//2),
            transport=transport,
        )

    async def _call(self, method: str, params: list[Any], *, allow_null: bool = False) -> Any:
        payload = {"jsonrpc":"2.0","id":next(self._ids),"method":method,"params":params}
        last: BaseException | None = None
        for attempt in range(1, self.max_attempts + 1):
            delay = self.retry_delay_s
            try:
                r = await self.client.post(self.rpc_url, json=payload)
                if r.status_code in _RETRY_STATUS:
                    ra = r.headers.get("Retry-After")
                    if r.status_code == 429 and ra and ra.isdigit():
                        delay = max(delay, float(ra))
                    raise httpx.HTTPStatusError(f"HTTP {r.status_code}", request=r.request, response=r)
                r.raise_for_status()
            except (httpx.TransportError, httpx.HTTPStatusError) as e:
                if isinstance(e, httpx.HTTPStatusError) and e.response.status_code not in _RETRY_STATUS:
                    raise RPCError(method, e.response.status_code, str(e)) from e
                last = e
                log.debug("%s %s attempt %d/%d failed: %s", self.network, method, attempt, self.max_attempts,
                          type(e).__name__)
                if attempt < self.max_attempts:
                    await asyncio.sleep(delay)
                continue

            try:
                data = r.json()
            except ValueError as e:
                raise MalformedDataError(f"{method}: response is not JSON") from e
            if not isinstance(data, dict):
                raise MalformedDataError(f"{method}: unexpected response {type(data).__name__}")
            if data.get("error") is not None:
                code, msg = _error_message(data["error"])
                if code != METHOD_NOT_FOUND and "not found" in msg.lower():
                    raise NotFoundError(f"{method}{params}: {msg}")
                raise RPCError(method, code, msg)
            result = data.get("result")
            if result is None and not allow_null:
                raise NotFoundError(f"{method}{params}: null result")
            return result

        log.warning("%s %s gave up after %d attempts: %r", self.network, method, self.max_attempts, last)
        raise RetryExhaustedError(method, self.max_attempts, last)

    async def latest_block_number(self) -> int:
        return hex_to_int(await self._call("eth_blockNumber", []), field="eth_blockNumber")

    async def get_block(self, block_id: BlockId, include_tx: bool = True) -> dict[str, Any]:
        if isinstance(block_id, int):
            return await self._call("eth_getBlockByNumber", [_to_hex_block(block_id), include_tx])
        s = str(block_id).strip().lower()
        if is_hash(s):
            return await self._call("eth_getBlockByHash", [s, include_tx])
        if s in ("latest", "earliest", "pending", "safe", "finalized"):
            return await self._call("eth_getBlockByNumber", [s, include_tx])
        return await self._call("eth_getBlockByNumber", [_to_hex_block(hex_to_int(s, field="block id")), include_tx])

    async def get_transaction(self, tx_hash: TxHash) -> dict[str, Any]:
        return await self._call("eth_getTransactionByHash", [str(tx_hash).lower()])

    async def get_transaction_receipt(self, tx_hash: TxHash) -> dict[str, Any]:
        return await self._call("eth_getTransactionReceipt", [str(tx_hash).lower()])

    async def get_block_receipts(self, number: int) -> Optional[list[dict[str, Any]]]:
        try:
            res = await self._call("eth_getBlockReceipts", [_to_hex_block(number)])
        except RPCError as e:
            log.debug("%s eth_getBlockReceipts unsupported: %s", self.network, e)
            return None
        if not isinstance(res, list):
            raise MalformedDataError("eth_getBlockReceipts: expected a list")
        return res

    async def get_balance(self, address: Address) -> int:
        return hex_to_int(await self._call("eth_getBalance", [str(address), "latest"]), field="eth_getBalance")

    async def get_transaction_count(self, address: Address) -> int:
        return hex_to_int(await self._call("eth_getTransactionCount", [str(address), "latest"]),
                          field="eth_getTransactionCount")

    async def get_code(self, address: Address) -> str:
        code = await self._call("eth_getCode", [str(address), "latest"], allow_null=True)
        return code or "0x"

    async def aclose(self) -> None:
        await self.client.aclose()
