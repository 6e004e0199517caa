"""Resilient push subscription with gap fill and exponential-backoff reconnect."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Sequence

from panoptic_sync.errors import MaxReconnectAttemptsError
from panoptic_sync.events.channel import (
    Connected,
    EventBatch,
    FeedChannel,
    FeedError,
    FeedMessage,
    Reconnecting,
)
from panoptic_sync.events.ordering import Cursor, events_after
from panoptic_sync.events.targets import WatchTarget, fetch_target_events
from panoptic_sync.interfaces.chain import ChainClient, LogWatch
from panoptic_sync.models.chain import RawLog
from panoptic_sync.models.config import ReconnectConfig
from panoptic_sync.sync.retry import with_retry

log = logging.getLogger(__name__)

DEFAULT_GAP_FILL_BATCH = 10_000


@dataclass
class ReconnectState:
    """Backoff bookkeeping, owned by one subscription's supervisor task."""

    config: ReconnectConfig
    attempts: int = 0
    current_delay: float = field(init=False)
    connected: bool = False

    def __post_init__(self) -> None:
        self.current_delay = self.config.initial_delay

    def reset(self) -> None:
        """Back to the initial delay after a successful (re)connect."""
        self.attempts = 0
        self.current_delay = self.config.initial_delay
        self.connected = True

    @property
    def exhausted(self) -> bool:
        """True once ``max_attempts`` reconnects were scheduled (0 = unlimited)."""
        return 0 < self.config.max_attempts <= self.attempts

    def next_delay(self) -> float:
        """Count one attempt and return its delay; grows the next one."""
        self.connected = False
        self.attempts += 1
        delay = self.current_delay
        self.current_delay = min(
            self.current_delay * self.config.backoff_multiplier, self.config.max_delay,
        )
        return delay


class EventSubscription:
    """Watches (contract, event type) targets and delivers ordered batches.

    States: stopped -> connecting (gap fill, register watches) -> connected;
    any watch error moves to reconnecting until a reconnect succeeds or the
    attempt budget runs out. Messages go to one channel, read with
    ``messages()``; the channel closes on ``stop()``.
    """

    def __init__(
        self,
        client: ChainClient,
        targets: Sequence[WatchTarget],
        *,
        reconnect: ReconnectConfig | None = None,
        gap_fill_batch: int = DEFAULT_GAP_FILL_BATCH,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
    ) -> None:
        self._client = client
        self._targets = list(targets)
        self._reconnect = reconnect or ReconnectConfig()
        self._gap_fill_batch = gap_fill_batch
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay

        self._running = False
        self._cursor = Cursor()
        self._state = ReconnectState(self._reconnect)
        self._watches: list[LogWatch] = []
        self._generation = 0
        self._failure: asyncio.Future | None = None
        self._task: asyncio.Task | None = None
        self._channel = FeedChannel()

    # ── State ─────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._state.connected

    @property
    def cursor(self) -> Cursor:
        return self._cursor

    @property
    def last_processed_block(self) -> int:
        return self._cursor.block_number

    @property
    def reconnect_attempts(self) -> int:
        return self._state.attempts

    def messages(self) -> AsyncIterator[FeedMessage]:
        return self._channel.__aiter__()

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        """Begin connecting in the background. No-op while running."""
        if self._running:
            return
        self._running = True
        self._state = ReconnectState(self._reconnect)
        self._channel.reopen()
        self._task = asyncio.create_task(self._supervise())
        log.info("Event subscription started (%d targets)", len(self._targets))

    async def stop(self) -> None:
        """Stop from any state. No message is delivered after this returns."""
        self._running = False
        self._generation += 1
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._unwatch_all()
        self._state.connected = False
        self._channel.close()
        log.info("Event subscription stopped at block %d", self._cursor.block_number)

    # ── Supervisor ────────────────────────────────────────

    async def _supervise(self) -> None:
        while self._running:
            try:
                await self._connect()
                error = await self._failure
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = exc

            self._generation += 1
            self._state.connected = False
            await self._unwatch_all()
            log.warning("Event subscription error: %s", error)
            self._channel.put(FeedError(error))

            if self._state.exhausted:
                terminal = MaxReconnectAttemptsError(self._reconnect.max_attempts)
                log.error("%s, subscription stopped", terminal)
                self._channel.put(FeedError(terminal, terminal=True))
                self._running = False
                return

            delay = self._state.next_delay()
            log.info("Reconnecting (attempt %d) in %.1fs", self._state.attempts, delay)
            self._channel.put(Reconnecting(attempt=self._state.attempts, delay=delay))
            await asyncio.sleep(delay)

    async def _connect(self) -> None:
        self._failure = asyncio.get_running_loop().create_future()
        head = await with_retry(
            self._client.get_block_number,
            max_retries=self._max_retries,
            base_delay=self._retry_base_delay,
            description="get_block_number",
        )

        if 0 < self._cursor.block_number < head:
            await self._fill_gap(self._cursor.block_number, head)
        if head > self._cursor.block_number:
            self._cursor = Cursor.at_block(head)

        generation = self._generation
        for target in self._targets:
            watch = await self._client.watch_logs(
                target.address,
                topics=target.topics,
                on_logs=lambda logs, t=target: self._on_logs(generation, t, logs),
                on_error=lambda exc: self._on_error(generation, exc),
            )
            self._watches.append(watch)

        self._state.reset()
        log.info("Event subscription connected at block %d", head)
        self._channel.put(Connected(block_number=head))

    async def _fill_gap(self, from_block: int, to_block: int) -> None:
        """Deliver missed events in ``[from_block, to_block]`` batch by batch.

        Starts at the cursor's own block so events later in that block are
        not lost; the cursor filter drops the ones already delivered.
        """
        log.info("Filling event gap, blocks %d-%d", from_block, to_block)
        current = from_block
        while current <= to_block:
            end = min(current + self._gap_fill_batch - 1, to_block)
            events = await fetch_target_events(
                self._client, self._targets, current, end,
                max_retries=self._max_retries, retry_base_delay=self._retry_base_delay,
            )
            self._deliver(events, gap_fill=True)
            current = end + 1

    async def _unwatch_all(self) -> None:
        watches, self._watches = self._watches, []
        for watch in watches:
            try:
                await watch.unwatch()
            except Exception as exc:
                log.debug("Ignoring unwatch failure: %s", exc)

    # ── Callbacks from the transport ──────────────────────

    def _on_logs(self, generation: int, target: WatchTarget, raw_logs: list[RawLog]) -> None:
        if generation != self._generation or not self._running:
            return
        self._deliver(target.decode(raw_logs))

    def _on_error(self, generation: int, exc: Exception) -> None:
        if generation != self._generation:
            return
        self._state.connected = False
        if self._failure is not None and not self._failure.done():
            self._failure.set_result(exc)

    def _deliver(self, events, gap_fill: bool = False) -> None:
        fresh = events_after(events, self._cursor)
        if not fresh:
            return
        self._channel.put(EventBatch(events=tuple(fresh), gap_fill=gap_fill))
        self._cursor = self._cursor.advanced_to(fresh[-1])
