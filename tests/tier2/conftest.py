"""Tier 2 fixtures: in-process JSON-RPC node (HTTP + websocket) on aiohttp."""

from __future__ import annotations

import itertools
import json

import pytest
from aiohttp import WSMsgType, web

from panoptic_sync.models.chain import RawLog, TransactionInfo

from tests.factories import block_hash
from tests.mocks import topics_match


def rpc_log(raw: RawLog) -> dict:
    return {
        "address": raw.address,
        "topics": list(raw.topics),
        "data": raw.data,
        "blockNumber": hex(raw.block_number),
        "blockHash": raw.block_hash,
        "transactionHash": raw.transaction_hash,
        "logIndex": hex(raw.log_index),
        "removed": raw.removed,
    }


class FakeNode:
    """Minimal Ethereum node: enough JSON-RPC for the sync engine and feeds.

    ``rate_limited`` answers that many requests with HTTP 429 first;
    ``max_log_range`` makes wide eth_getLogs queries fail like Infura does;
    ``notify_before_reply`` logs are pushed on the next subscription ahead
    of its eth_subscribe reply.
    """

    def __init__(self, head: int = 1000) -> None:
        self.head = head
        self.logs: list[RawLog] = []
        self.transactions: dict[str, TransactionInfo] = {}
        self.max_log_range: int | None = None
        self.rate_limited = 0
        self.notify_before_reply: list[RawLog] = []
        self.requests: list[str] = []
        self.filters: dict[str, tuple[dict, list[dict]]] = {}
        self.subscriptions: dict[str, tuple[web.WebSocketResponse, dict]] = {}
        self.sockets: list[web.WebSocketResponse] = []
        self._ids = itertools.count(1)
        self.url = ""
        self.ws_url = ""

    # ── Chain state ───────────────────────────────────────

    def add_logs(self, *logs: RawLog) -> None:
        self.logs.extend(logs)
        for params, queue in self.filters.values():
            queue.extend(rpc_log(raw) for raw in logs if self._matches(params, raw))

    async def notify(self, *logs: RawLog) -> None:
        """Push logs to every websocket subscription they match."""
        self.add_logs(*logs)
        for sub_id, (ws, params) in list(self.subscriptions.items()):
            for raw in logs:
                if self._matches(params, raw) and not ws.closed:
                    await ws.send_json({
                        "jsonrpc": "2.0",
                        "method": "eth_subscription",
                        "params": {"subscription": sub_id, "result": rpc_log(raw)},
                    })

    async def drop_sockets(self) -> None:
        sockets, self.sockets = self.sockets, []
        self.subscriptions.clear()
        for ws in sockets:
            await ws.close()

    @staticmethod
    def _matches(params: dict, raw: RawLog) -> bool:
        address = params.get("address")
        if address and address.lower() != raw.address.lower():
            return False
        return topics_match(params.get("topics"), raw.topics)

    # ── JSON-RPC ──────────────────────────────────────────

    def call(self, method: str, params: list) -> object:
        self.requests.append(method)
        if method == "eth_blockNumber":
            return hex(self.head)
        if method == "eth_getBlockByNumber":
            n = int(params[0], 16)
            if n > self.head:
                return None
            return {"number": hex(n), "hash": block_hash(n), "timestamp": hex(1_700_000_000 + n * 12)}
        if method == "eth_getTransactionByHash":
            tx = self.transactions.get(params[0].lower())
            if tx is None:
                return None
            return {
                "hash": tx.hash,
                "from": tx.sender,
                "to": tx.to,
                "input": tx.input,
                "blockNumber": hex(tx.block_number) if tx.block_number is not None else None,
            }
        if method == "eth_getLogs":
            q = params[0]
            frm, to = int(q["fromBlock"], 16), int(q["toBlock"], 16)
            if self.max_log_range is not None and to - frm + 1 > self.max_log_range:
                raise _RpcFailure(-32005, "query returned more than 10000 results")
            found = [r for r in self.logs if frm <= r.block_number <= to and self._matches(q, r)]
            found.sort(key=lambda r: (r.block_number, r.log_index))
            return [rpc_log(r) for r in found]
        if method == "eth_newFilter":
            filter_id = hex(next(self._ids))
            self.filters[filter_id] = (params[0], [])
            return filter_id
        if method == "eth_getFilterChanges":
            if params[0] not in self.filters:
                raise _RpcFailure(-32000, "filter not found")
            _, queue = self.filters[params[0]]
            changes = list(queue)
            queue.clear()
            return changes
        if method == "eth_uninstallFilter":
            return self.filters.pop(params[0], None) is not None
        raise _RpcFailure(-32601, f"the method {method} does not exist")

    async def handle_http(self, request: web.Request) -> web.Response:
        if self.rate_limited > 0:
            self.rate_limited -= 1
            return web.Response(status=429, headers={"Retry-After": "0"})
        body = await request.json()
        return web.json_response(self._respond(body))

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            body = json.loads(msg.data)
            if body["method"] == "eth_subscribe":
                sub_id = hex(next(self._ids))
                self.subscriptions[sub_id] = (ws, body["params"][1])
                self.requests.append("eth_subscribe")
                early, self.notify_before_reply = self.notify_before_reply, []
                for raw in early:
                    await ws.send_json({
                        "jsonrpc": "2.0",
                        "method": "eth_subscription",
                        "params": {"subscription": sub_id, "result": rpc_log(raw)},
                    })
                await ws.send_json({"jsonrpc": "2.0", "id": body["id"], "result": sub_id})
            elif body["method"] == "eth_unsubscribe":
                removed = self.subscriptions.pop(body["params"][0], None) is not None
                self.requests.append("eth_unsubscribe")
                await ws.send_json({"jsonrpc": "2.0", "id": body["id"], "result": removed})
            else:
                await ws.send_json(self._respond(body))
        return ws

    def _respond(self, body: dict) -> dict:
        try:
            result = self.call(body["method"], body.get("params") or [])
        except _RpcFailure as exc:
            return {"jsonrpc": "2.0", "id": body["id"],
                    "error": {"code": exc.code, "message": exc.message}}
        return {"jsonrpc": "2.0", "id": body["id"], "result": result}


class _RpcFailure(Exception):
    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@pytest.fixture
async def node():
    """FakeNode served on an ephemeral localhost port.

    HTTP JSON-RPC at ``node.url``, websocket at ``node.ws_url``.
    """
    fake = FakeNode()
    app = web.Application()
    app.router.add_post("/", fake.handle_http)
    app.router.add_get("/ws", fake.handle_ws)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    fake.url = f"http://{host}:{port}/"
    fake.ws_url = f"ws://{host}:{port}/ws"
    yield fake
    await fake.drop_sockets()
    await runner.cleanup()
