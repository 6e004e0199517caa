"""Tests 65-67: Retry classification, bounded attempts and retried scan batches."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from panoptic_sync.errors import (
    BlockNotFoundError,
    ProviderLagError,
    RangeTooLargeError,
    RpcError,
)
from panoptic_sync.sync.retry import is_retryable_rpc_error, with_retry
from panoptic_sync.sync.orchestrator import sync_positions

from tests.factories import ACCOUNT, CHAIN_ID, POOL, make_burn_log, make_mint_log, make_pool_traffic


@pytest.fixture
def history(chain):
    chain.add_logs(
        *make_pool_traffic(50, 1000),
        make_mint_log(1, block=100),
        make_mint_log(2, block=300),
        make_burn_log(1, block=500),
        make_mint_log(3, block=700),
    )
    return chain


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://127.0.0.1:8545")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


# ── Test 65: What counts as transient ────────────────────────────


def test_transport_and_overload_errors_are_retryable():
    assert is_retryable_rpc_error(ConnectionError("reset by peer"))
    assert is_retryable_rpc_error(asyncio.TimeoutError())
    assert is_retryable_rpc_error(httpx.ConnectTimeout("connect timed out"))
    assert is_retryable_rpc_error(_status_error(429))
    assert is_retryable_rpc_error(_status_error(503))
    assert is_retryable_rpc_error(RpcError(-32005, "limit exceeded"))
    assert is_retryable_rpc_error(OSError("upstream answered 502"))


def test_typed_and_permanent_errors_are_not_retryable():
    assert not is_retryable_rpc_error(RangeTooLargeError(-32005, "query returned more than 10000 results"))
    assert not is_retryable_rpc_error(_status_error(400))
    assert not is_retryable_rpc_error(RpcError(-32601, "method not found"))
    assert not is_retryable_rpc_error(ValueError("bad topic"))
    assert not is_retryable_rpc_error(None)

    # block numbers in messages are not HTTP statuses
    assert not is_retryable_rpc_error(BlockNotFoundError(503))
    assert not is_retryable_rpc_error(BlockNotFoundError(429))
    assert not is_retryable_rpc_error(ProviderLagError(502, 504))
    assert not is_retryable_rpc_error(ValueError("token 503 unknown"))


def test_cause_chain_is_followed():
    wrapped = RuntimeError("batch failed")
    wrapped.__cause__ = ConnectionError("node down")
    assert is_retryable_rpc_error(wrapped)


# ── Test 66: with_retry gives up after max_retries ───────────────


async def test_with_retry_recovers_from_transient_failures():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset by peer")
        return "ok"

    assert await with_retry(flaky, max_retries=3, base_delay=0) == "ok"
    assert len(attempts) == 3


async def test_with_retry_stops_after_max_retries():
    attempts = []

    async def down():
        attempts.append(1)
        raise ConnectionError("node down")

    with pytest.raises(ConnectionError):
        await with_retry(down, max_retries=2, base_delay=0)
    assert len(attempts) == 3


async def test_with_retry_raises_permanent_errors_at_once():
    attempts = []

    async def broken():
        attempts.append(1)
        raise ValueError("bad params")

    with pytest.raises(ValueError):
        await with_retry(broken, max_retries=5, base_delay=0)
    assert len(attempts) == 1


# ── Test 67: Scan batches retried inside a pass ──────────────────


async def test_transient_log_failure_is_retried_during_sync(history, storage):
    history.fail_get_logs = [ConnectionError("reset by peer")]
    result = await sync_positions(
        history, storage, CHAIN_ID, POOL, ACCOUNT,
        batch_size=100, max_retries=2, retry_base_delay=0,
    )
    assert result.position_ids == {2, 3}
    assert history.fail_get_logs == []

    # the failed query was sent again unchanged
    assert history.get_logs_calls[0] == history.get_logs_calls[1]


async def test_transient_failure_mid_scan_is_retried(history, storage):
    await sync_positions(history, storage, CHAIN_ID, POOL, ACCOUNT, batch_size=100, max_retries=0)
    history.head = 1300
    history.add_logs(make_burn_log(2, block=1200))
    mark = len(history.get_logs_calls)

    history.fail_get_logs = [httpx.ConnectError("connection refused")]
    result = await sync_positions(
        history, storage, CHAIN_ID, POOL, ACCOUNT,
        batch_size=100, max_retries=1, retry_base_delay=0,
    )
    assert result.position_ids == {3}
    assert result.last_synced_block == 1300
    tail = history.get_logs_calls[mark:]
    assert tail[0][2] == 1001
    assert tail.count(tail[0]) == 2


async def test_permanent_log_failure_stops_the_pass(history, storage):
    history.fail_get_logs = [ValueError("bad filter")]
    with pytest.raises(ValueError):
        await sync_positions(
            history, storage, CHAIN_ID, POOL, ACCOUNT,
            batch_size=100, max_retries=3, retry_base_delay=0,
        )
    assert len(history.get_logs_calls) == 1
