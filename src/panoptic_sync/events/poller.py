"""Polling event fetcher for transports without push subscriptions."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Sequence

from panoptic_sync.events.channel import EventBatch, FeedChannel, FeedError, FeedMessage
from panoptic_sync.events.targets import WatchTarget, fetch_target_events
from panoptic_sync.interfaces.chain import ChainClient

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 12.0  # seconds, about one mainnet block
DEFAULT_MAX_BLOCK_RANGE = 1000


class EventPoller:
    """Diffs the chain head against ``last_polled_block`` on a fixed interval.

    Each tick fetches at most ``max_block_range`` blocks; while a backlog
    remains the next tick runs immediately. A failed tick is reported on
    the channel and retried next interval over the same range.
    """

    def __init__(
        self,
        client: ChainClient,
        targets: Sequence[WatchTarget],
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        max_block_range: int = DEFAULT_MAX_BLOCK_RANGE,
        from_block: int | None = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        if max_block_range < 1:
            raise ValueError("max_block_range must be positive")
        self._client = client
        self._targets = list(targets)
        self._interval = interval
        self._max_block_range = max_block_range
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        # None until the first tick takes the chain head as baseline
        self._last_polled: int | None = None if from_block is None else from_block - 1
        self._running = False
        self._task: asyncio.Task | None = None
        self._channel = FeedChannel()

    @property
    def is_polling(self) -> bool:
        return self._running

    @property
    def last_polled_block(self) -> int:
        return self._last_polled or 0

    def messages(self) -> AsyncIterator[FeedMessage]:
        return self._channel.__aiter__()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._channel.reopen()
        self._task = asyncio.create_task(self._poll_loop())
        log.info("Event poller started (interval=%.1fs, max_block_range=%d)",
                 self._interval, self._max_block_range)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._channel.close()
        log.info("Event poller stopped at block %d", self.last_polled_block)

    async def poll_once(self) -> bool:
        """Run one tick. Returns True if blocks remain beyond what was fetched."""
        head = await self._client.get_block_number()
        if self._last_polled is None:
            self._last_polled = head
            log.info("Poller baseline set to block %d", head)
            return False
        if head <= self._last_polled:
            return False

        from_block = self._last_polled + 1
        to_block = min(head, self._last_polled + self._max_block_range)
        events = await fetch_target_events(
            self._client, self._targets, from_block, to_block,
            max_retries=self._max_retries, retry_base_delay=self._retry_base_delay,
        )
        self._last_polled = to_block
        if events:
            log.debug("Polled %d events in blocks %d-%d", len(events), from_block, to_block)
            self._channel.put(EventBatch(events=tuple(events)))
        return to_block < head

    async def _poll_loop(self) -> None:
        while self._running:
            backlog = False
            try:
                backlog = await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.warning("Poll failed after block %d: %s", self.last_polled_block, exc)
                self._channel.put(FeedError(exc))

            try:
                await asyncio.sleep(0 if backlog else self._interval)
            except asyncio.CancelledError:
                break
