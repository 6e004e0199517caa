"""WebSocket push watches via ``eth_subscribe("logs")``.

Requests still go over HTTP; the socket carries subscriptions only. When
the socket drops, every live watch gets ``on_error`` and is forgotten, so
owners re-register through ``watch_logs`` which reconnects lazily.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass

import websockets
from websockets.exceptions import ConnectionClosed

from panoptic_sync.chain.rpc import HttpxChainClient, rpc_error_from_response
from panoptic_sync.errors import RpcError
from panoptic_sync.interfaces.chain import ErrorCallback, LogsCallback, TopicFilter
from panoptic_sync.models.chain import RawLog

log = logging.getLogger(__name__)


@dataclass
class _Subscriber:
    on_logs: LogsCallback
    on_error: ErrorCallback


class SocketWatch:
    """Handle for one ``eth_subscribe`` subscription."""

    def __init__(self, client: WebSocketChainClient, subscription_id: str) -> None:
        self._client = client
        self.subscription_id = subscription_id

    async def unwatch(self) -> None:
        await self._client._unsubscribe(self.subscription_id)


class WebSocketChainClient(HttpxChainClient):
    """HttpxChainClient whose watches are real pushes over a websocket."""

    def __init__(self, rpc_url: str, ws_url: str, **kwargs) -> None:
        super().__init__(rpc_url, **kwargs)
        self.ws_url = ws_url
        self._request_timeout = float(kwargs.get("timeout", 30.0))
        self._ws = None
        self._connecting: asyncio.Task | None = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._subscribers: dict[str, _Subscriber] = {}
        # Notifications that beat their eth_subscribe reply, by subscription id
        self._early: dict[str, list[RawLog]] = {}
        self._subscribing = 0
        self._closing = False

    async def _connection(self):
        if self._ws is not None:
            return self._ws
        if self._connecting is None:
            self._connecting = asyncio.create_task(self._open())
        try:
            return await asyncio.shield(self._connecting)
        finally:
            if self._connecting is not None and self._connecting.done():
                self._connecting = None

    async def _open(self):
        ws = await websockets.connect(self.ws_url)
        self._ws = ws
        self._reader = asyncio.create_task(self._read_loop(ws))
        log.info("WebSocket connected to %s", self.ws_url)
        return ws

    async def _read_loop(self, ws) -> None:
        error: Exception = ConnectionError(f"WebSocket {self.ws_url} closed")
        try:
            async for message in ws:
                self._dispatch(message)
        except ConnectionClosed as exc:
            error = exc
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_all(error)

    def _fail_all(self, error: Exception) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.set_exception(error)
        self._pending.clear()
        self._early.clear()
        subscribers = list(self._subscribers.values())
        self._subscribers.clear()
        if self._closing:
            return
        if subscribers:
            log.warning("WebSocket lost with %d live subscriptions: %s", len(subscribers), error)
        for sub in subscribers:
            sub.on_error(error)

    def _dispatch(self, message: str | bytes) -> None:
        try:
            data = json.loads(message)
        except ValueError:
            log.warning("Dropping non-JSON websocket frame")
            return

        if "id" in data:
            fut = self._pending.pop(data["id"], None)
            if fut is None or fut.done():
                return
            if data.get("error"):
                fut.set_exception(rpc_error_from_response("ws", data["error"]))
            else:
                fut.set_result(data.get("result"))
            return

        if data.get("method") != "eth_subscription":
            return
        params = data.get("params") or {}
        subscription_id = params.get("subscription")
        sub = self._subscribers.get(subscription_id)
        if sub is None and not self._subscribing:
            return
        try:
            raw = RawLog.from_rpc(params["result"])
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("Malformed log notification: %s", exc)
            return
        if raw.removed:
            return
        if sub is None:
            # the reply for a pending eth_subscribe may still be in flight
            self._early.setdefault(subscription_id, []).append(raw)
            return
        sub.on_logs([raw])

    async def _ws_request(self, method: str, params: list) -> object:
        ws = await self._connection()
        request_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            await ws.send(json.dumps(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
            ))
            return await asyncio.wait_for(fut, self._request_timeout)
        finally:
            self._pending.pop(request_id, None)

    async def watch_logs(
        self,
        address: str,
        *,
        topics: TopicFilter | None,
        on_logs: LogsCallback,
        on_error: ErrorCallback,
    ) -> SocketWatch:
        self._closing = False
        params: dict = {"address": address}
        if topics:
            params["topics"] = list(topics)
        self._subscribing += 1
        try:
            subscription_id = await self._ws_request("eth_subscribe", ["logs", params])
            self._subscribers[subscription_id] = _Subscriber(on_logs, on_error)
            early = self._early.pop(subscription_id, [])
        finally:
            self._subscribing -= 1
            if not self._subscribing:
                self._early.clear()
        log.debug("Subscribed %s to logs of %s", subscription_id, address)
        for raw in early:
            on_logs([raw])
        return SocketWatch(self, subscription_id)

    async def _unsubscribe(self, subscription_id: str) -> None:
        if self._subscribers.pop(subscription_id, None) is None or self._ws is None:
            return
        try:
            await self._ws_request("eth_unsubscribe", [subscription_id])
        except (ConnectionClosed, ConnectionError, asyncio.TimeoutError, RpcError) as exc:
            log.debug("eth_unsubscribe %s failed: %s", subscription_id, exc)

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        await super().close()
