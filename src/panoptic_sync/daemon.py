"""Sync daemon - periodic sync passes driven by a live event feed."""

from __future__ import annotations

import asyncio
import logging
import signal
import time

from panoptic_sync.chain.rpc import HttpxChainClient
from panoptic_sync.chain.ws import WebSocketChainClient
from panoptic_sync.events import create_event_poller, create_event_subscription
from panoptic_sync.events.channel import EventBatch, FeedError
from panoptic_sync.events.poller import EventPoller
from panoptic_sync.events.subscription import EventSubscription
from panoptic_sync.interfaces.chain import ChainClient
from panoptic_sync.interfaces.storage import StorageAdapter
from panoptic_sync.models.config import FeedMode, SyncConfig
from panoptic_sync.models.events import ContractEvent
from panoptic_sync.models.sync import ProgressKind, SyncProgressEvent, SyncResult
from panoptic_sync.storage.sqlite import SQLiteStorage
from panoptic_sync.sync.orchestrator import sync_positions

log = logging.getLogger(__name__)

# Event fields naming an account the event concerns
_PARTY_FIELDS = ("recipient", "user", "liquidatee", "owner", "sender", "receiver")


def event_touches_account(event: ContractEvent, account: str) -> bool:
    target = account.lower()
    return any(
        str(getattr(event, name, "")).lower() == target for name in _PARTY_FIELDS
    )


def build_client(cfg: SyncConfig) -> ChainClient:
    if cfg.ws_url and cfg.feed == FeedMode.SUBSCRIPTION:
        return WebSocketChainClient(cfg.rpc_url, cfg.ws_url, timeout=cfg.request_timeout)
    return HttpxChainClient(cfg.rpc_url, timeout=cfg.request_timeout)


class SyncDaemon:
    """Keeps one account's checkpoint current.

    Runs a sync pass every ``sync_interval`` seconds, and right away when
    the live feed delivers an event involving the account.
    """

    def __init__(
        self,
        cfg: SyncConfig,
        client: ChainClient | None = None,
        storage: StorageAdapter | None = None,
    ) -> None:
        if not cfg.pool_address or not cfg.account:
            raise ValueError("pool_address and account must be configured")
        self._cfg = cfg
        self._running = False
        self._start_time = time.monotonic()
        self._wake = asyncio.Event()
        self._feed_task: asyncio.Task | None = None

        self.client = client or build_client(cfg)
        self.storage = storage or SQLiteStorage(cfg.db_path)
        self.feed = self._build_feed()
        self.last_result: SyncResult | None = None
        self.passes = 0

    def _build_feed(self) -> EventSubscription | EventPoller | None:
        trackers = [t for t in (self._cfg.collateral_tracker0, self._cfg.collateral_tracker1) if t]
        if self._cfg.feed == FeedMode.SUBSCRIPTION:
            return create_event_subscription(
                self.client, self._cfg.pool_address,
                collateral_trackers=trackers,
                event_types=self._cfg.event_types,
                reconnect=self._cfg.reconnect,
                max_retries=self._cfg.max_retries,
            )
        if self._cfg.feed == FeedMode.POLLER:
            return create_event_poller(
                self.client, self._cfg.pool_address,
                collateral_trackers=trackers,
                event_types=self._cfg.event_types,
                interval=self._cfg.poll_interval,
                max_block_range=self._cfg.max_block_range,
                max_retries=self._cfg.max_retries,
            )
        return None

    async def start(self) -> None:
        """Initialize components and run the main loop."""
        log.info("Starting panoptic_sync daemon")
        log.info("  Chain: %d", self._cfg.chain_id)
        log.info("  Pool: %s", self._cfg.pool_address)
        log.info("  Account: %s", self._cfg.account)
        log.info("  RPC: %s", self._cfg.rpc_url)
        log.info("  Feed: %s", self._cfg.feed.value)

        await self.storage.initialize()
        self._running = True

        if self.feed is not None:
            await self.feed.start()
            self._feed_task = asyncio.create_task(self._consume_feed())

        try:
            await self._main_loop()
        finally:
            if self.feed is not None:
                await self.feed.stop()
            if self._feed_task:
                self._feed_task.cancel()
                try:
                    await self._feed_task
                except asyncio.CancelledError:
                    pass
                self._feed_task = None
            await self.client.close()
            await self.storage.close()
            log.info("Daemon shut down cleanly")

    async def stop(self) -> None:
        """Signal the daemon to stop gracefully."""
        log.info("Stop requested")
        self._running = False
        self._wake.set()

    async def run_pass(self) -> SyncResult:
        """One sync pass; progress records are logged once it finishes."""
        progress: asyncio.Queue = asyncio.Queue()
        try:
            result = await sync_positions(
                self.client, self.storage,
                self._cfg.chain_id, self._cfg.pool_address, self._cfg.account,
                from_block=self._cfg.start_block,
                batch_size=self._cfg.batch_size,
                sync_timeout=self._cfg.sync_timeout,
                min_block_number=self._cfg.min_block_number,
                reorg_depth=self._cfg.reorg_depth,
                max_retries=self._cfg.max_retries,
                progress=progress,
                pending_max_age_blocks=self._cfg.pending_max_age_blocks,
            )
        finally:
            _log_progress(progress)
        self.passes += 1
        self.last_result = result
        return result

    async def _main_loop(self) -> None:
        while self._running:
            try:
                await self.run_pass()
            except asyncio.CancelledError:
                log.info("Main loop cancelled")
                break
            except Exception as exc:
                log.error("Sync pass error: %s", exc, exc_info=True)
                await self._sleep(self._cfg.error_backoff)
                continue

            await self._sleep(self._cfg.sync_interval)

    async def _sleep(self, seconds: float) -> None:
        """Wait ``seconds`` or until a feed event or stop() wakes the loop."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _consume_feed(self) -> None:
        assert self.feed is not None
        async for message in self.feed.messages():
            if isinstance(message, EventBatch):
                relevant = [e for e in message.events if event_touches_account(e, self._cfg.account)]
                if relevant:
                    log.info(
                        "%d events for %s up to block %d, syncing now",
                        len(relevant), self._cfg.account, message.last_block,
                    )
                    self._wake.set()
            elif isinstance(message, FeedError):
                if not message.terminal:
                    log.warning("Feed error: %s", message.error)
                    continue
                log.error("Feed gave up: %s", message.error)
                await asyncio.sleep(self._cfg.error_backoff)
                if self._running:
                    await self.feed.start()
            else:
                log.debug("Feed: %s", message)


def _log_progress(progress: asyncio.Queue) -> None:
    while not progress.empty():
        event: SyncProgressEvent | None = progress.get_nowait()
        if event is None:
            break
        if event.kind == ProgressKind.POSITION_OPENED:
            log.info("Position opened: %d", event.token_id)
        elif event.kind == ProgressKind.POSITION_CLOSED:
            log.info("Position closed: %d", event.token_id)
        elif event.kind == ProgressKind.REORG_DETECTED:
            log.warning("Reorg detected at block %d", event.block_number)
        else:
            log.debug("Scanned %d/%d blocks", event.current, event.total)


async def run_daemon(cfg: SyncConfig) -> None:
    """Entry point for running the daemon."""
    daemon = SyncDaemon(cfg)

    loop = asyncio.get_running_loop()

    def _signal_handler():
        asyncio.ensure_future(daemon.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    await daemon.start()
