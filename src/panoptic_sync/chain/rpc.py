"""JSON-RPC chain client over HTTP, built on httpx."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging

import httpx

from panoptic_sync.errors import BlockNotFoundError, RangeTooLargeError, RpcError
from panoptic_sync.interfaces.chain import ErrorCallback, LogsCallback, TopicFilter
from panoptic_sync.models.chain import BlockInfo, RawLog, TransactionInfo

log = logging.getLogger(__name__)

# Provider messages for "narrow your eth_getLogs range" (Infura, Alchemy, QuickNode, geth, erigon)
_RANGE_ERROR_PATTERNS = (
    "query returned more than",
    "block range",
    "range too large",
    "range is too large",
    "response size exceeded",
    "log response size",
    "too many results",
    "max results",
)


def _to_hex_block(n: int) -> str:
    return hex(int(n))


def rpc_error_from_response(method: str, err: object) -> RpcError:
    """Map a JSON-RPC error object to a typed error."""
    if not isinstance(err, dict):
        return RpcError(None, str(err))
    code = err.get("code")
    message = str(err.get("message", ""))
    lowered = message.lower()
    if method == "eth_getLogs" and any(p in lowered for p in _RANGE_ERROR_PATTERNS):
        return RangeTooLargeError(code, message, err.get("data"))
    return RpcError(code, message, err.get("data"))


class FilterWatch:
    """Emulated push watch: polls ``eth_getFilterChanges`` for one filter.

    Stops on the first failure and reports it through ``on_error``; the
    owner is expected to re-register.
    """

    def __init__(
        self,
        client: HttpxChainClient,
        filter_id: str,
        on_logs: LogsCallback,
        on_error: ErrorCallback,
        interval: float,
    ) -> None:
        self._client = client
        self._filter_id = filter_id
        self._on_logs = on_logs
        self._on_error = on_error
        self._interval = interval
        self._uninstalled = False
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                changes = await self._client.request(
                    "eth_getFilterChanges", [self._filter_id],
                )
            except Exception as exc:
                log.warning("Filter %s poll failed: %s", self._filter_id, exc)
                self._on_error(exc)
                return
            logs = [RawLog.from_rpc(r) for r in changes or () if not r.get("removed")]
            if logs:
                self._on_logs(logs)

    async def unwatch(self) -> None:
        if self._uninstalled:
            return
        self._uninstalled = True
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        try:
            await self._client.request("eth_uninstallFilter", [self._filter_id])
        except (httpx.HTTPError, RpcError) as exc:
            log.debug("Could not uninstall filter %s: %s", self._filter_id, exc)


class HttpxChainClient:
    """Implements the ChainClient protocol against a JSON-RPC HTTP endpoint.

    HTTP 429 responses are retried here, honouring ``Retry-After``; every
    other failure is left to the caller's retry policy.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        max_connections: int = 16,
        rate_limit_retries: int = 3,
        filter_poll_interval: float = 4.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max(1, max_connections // 2),
            ),
        )
        self._rate_limit_retries = rate_limit_retries
        self._filter_poll_interval = filter_poll_interval
        self._ids = itertools.count(1)

    async def __aenter__(self) -> HttpxChainClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def request(self, method: str, params: list) -> object:
        """Send one JSON-RPC call and return its ``result``."""
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        attempt = 0
        while True:
            resp = await self._client.post(self.rpc_url, json=payload)
            if resp.status_code == 429 and attempt < self._rate_limit_retries:
                retry_after = resp.headers.get("Retry-After")
                if retry_after and retry_after.isdigit():
                    delay = float(retry_after)
                else:
                    delay = 1.0 * (2 ** attempt)
                log.warning("%s rate limited, retrying in %.1fs", method, delay)
                attempt += 1
                await asyncio.sleep(delay)
                continue
            resp.raise_for_status()
            data = resp.json()
            if data.get("error"):
                raise rpc_error_from_response(method, data["error"])
            return data.get("result")

    # ── Reads ──────────────────────────────────────────────

    async def get_block_number(self) -> int:
        return int(await self.request("eth_blockNumber", []), 16)

    async def get_block(self, block_number: int) -> BlockInfo:
        raw = await self.request("eth_getBlockByNumber", [_to_hex_block(block_number), False])
        if raw is None:
            raise BlockNotFoundError(block_number)
        return BlockInfo.from_rpc(raw)

    async def get_transaction(self, tx_hash: str) -> TransactionInfo | None:
        raw = await self.request("eth_getTransactionByHash", [tx_hash])
        if raw is None:
            return None
        return TransactionInfo.from_rpc(raw)

    async def get_logs(
        self,
        address: str,
        *,
        topics: TopicFilter | None = None,
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        params: dict = {
            "address": address,
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
        }
        if topics:
            params["topics"] = list(topics)
        result = await self.request("eth_getLogs", [params])
        return [RawLog.from_rpc(r) for r in result or () if not r.get("removed")]

    # ── Watches ────────────────────────────────────────────

    async def watch_logs(
        self,
        address: str,
        *,
        topics: TopicFilter | None,
        on_logs: LogsCallback,
        on_error: ErrorCallback,
    ) -> FilterWatch:
        params: dict = {"address": address, "fromBlock": "latest"}
        if topics:
            params["topics"] = list(topics)
        filter_id = await self.request("eth_newFilter", [params])
        log.debug("Installed log filter %s for %s", filter_id, address)
        return FilterWatch(self, filter_id, on_logs, on_error, self._filter_poll_interval)
