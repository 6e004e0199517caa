"""Outbound message channel for live event feeds.

A feed owns one channel and writes tagged messages to it; the caller
drains it with ``async for``. Closing the channel discards anything not
yet consumed and ends iteration, so nothing is delivered after a stop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Union

from panoptic_sync.models.events import ContractEvent


@dataclass(frozen=True)
class EventBatch:
    """Ordered, deduplicated events from one notification or fetched range."""

    events: tuple[ContractEvent, ...]
    gap_fill: bool = False

    @property
    def last_block(self) -> int:
        return self.events[-1].block_number


@dataclass(frozen=True)
class FeedError:
    error: Exception
    terminal: bool = False  # the feed stopped itself; call start() to resume


@dataclass(frozen=True)
class Connected:
    block_number: int  # chain head when the connection was (re)established


@dataclass(frozen=True)
class Reconnecting:
    attempt: int
    delay: float  # seconds until the attempt


FeedMessage = Union[EventBatch, FeedError, Connected, Reconnecting]

_CLOSED = object()


class FeedChannel:
    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, message: FeedMessage) -> None:
        if not self._closed:
            self._queue.put_nowait(message)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def reopen(self) -> None:
        if self._closed:
            self._queue = asyncio.Queue()
            self._closed = False

    async def get(self) -> FeedMessage | None:
        """Next message, or None once the channel is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # leave the marker for any other reader
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    async def __aiter__(self) -> AsyncIterator[FeedMessage]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message
