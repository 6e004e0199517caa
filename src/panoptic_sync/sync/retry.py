"""Transient RPC failure classification and bounded retry."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, TypeVar

import httpx

from panoptic_sync.errors import PanopticSyncError, RangeTooLargeError, RpcError

log = logging.getLogger(__name__)

T = TypeVar("T")

# JSON-RPC server-error range used by nodes for overload, limits and timeouts
RETRYABLE_RPC_CODES = frozenset({
    -32000, -32001, -32002, -32003, -32005, -32097, -32098, -32099,
})

RETRYABLE_HTTP_STATUS = frozenset({429, 502, 503, 504})

_RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"timeout",
        r"timed out",
        r"rate limit",
        r"too many requests",
        r"connection refused",
        r"connection reset",
        r"network error",
        r"econnreset",
        r"econnrefused",
        r"etimedout",
        r"socket hang up",
        r"temporarily unavailable",
        r"service unavailable",
        r"server error",
        r"internal error",
    )
]

# Only meaningful in transport-level messages, where they are HTTP statuses
_STATUS_PATTERNS = [re.compile(r"\b429\b"), re.compile(r"\b50[234]\b")]


def is_retryable_rpc_error(exc: BaseException | None) -> bool:
    """True for network, rate-limit and node-overload failures.

    Follows the ``__cause__`` chain. Range-too-large errors are excluded:
    the same query would fail again. So are this package's own typed
    errors other than RpcError (a missing block, a lagging provider),
    whatever numbers their messages carry.
    """
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))

        if isinstance(exc, RangeTooLargeError):
            return False
        if isinstance(exc, PanopticSyncError) and not isinstance(exc, RpcError):
            return False
        if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            if exc.response.status_code in RETRYABLE_HTTP_STATUS:
                return True
        if isinstance(exc, RpcError) and exc.code in RETRYABLE_RPC_CODES:
            return True

        message = str(exc)
        if message and any(p.search(message) for p in _RETRYABLE_PATTERNS):
            return True
        if (
            message
            and isinstance(exc, (httpx.HTTPError, OSError))
            and any(p.search(message) for p in _STATUS_PATTERNS)
        ):
            return True

        exc = exc.__cause__
    return False


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    description: str = "RPC call",
) -> T:
    """Await ``fn()``, retrying retryable failures up to ``max_retries`` times.

    Delays double from ``base_delay`` (1s, 2s, 4s by default). Anything
    not retryable is re-raised immediately.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries or not is_retryable_rpc_error(exc):
                raise
            delay = base_delay * (2 ** attempt)
            attempt += 1
            log.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                description, attempt, max_retries, delay, exc,
            )
            await asyncio.sleep(delay)
