"""Sync orchestrator - drives one position synchronization pass.

Chooses between the empty-account fast path, snapshot recovery, full
event reconstruction and the incremental tail scan, enforces the pass's
wall-clock budget, and persists the result as a single checkpoint write.
A pass that runs out of time leaves its progress behind for the next one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Iterable, TypeVar

from panoptic_sync.chain.abi import decode_position_balance
from panoptic_sync.errors import (
    BlockNotFoundError,
    PositionSnapshotNotFoundError,
    ProviderLagError,
    RangeTooLargeError,
    StorageDataNotFoundError,
    SyncInProgressError,
    SyncTimeoutError,
)
from panoptic_sync.interfaces.chain import ChainClient
from panoptic_sync.interfaces.storage import StorageAdapter
from panoptic_sync.models.events import OptionMintedEvent
from panoptic_sync.models.sync import (
    Checkpoint,
    ClosedPosition,
    PartialScan,
    PositionFold,
    PositionMeta,
    ProgressKind,
    SyncProgressEvent,
    SyncResult,
    SyncStatus,
)
from panoptic_sync.storage.keys import checkpoint_key, pool_meta_key, position_meta_key
from panoptic_sync.sync.checkpoint import (
    REORG_DEPTH,
    calculate_resync_block,
    clear_checkpoint,
    clear_partial_scan,
    load_checkpoint,
    load_partial_scan,
    save_checkpoint,
    save_partial_scan,
)
from panoptic_sync.sync.pending import DEFAULT_MAX_AGE_BLOCKS, PendingPositionTracker
from panoptic_sync.sync.reconstruction import (
    DEFAULT_BATCH_SIZE,
    account_has_position_events,
    find_deployment_block,
    find_mint_event,
    iter_position_batches,
)
from panoptic_sync.sync.reorg import detect_reorg
from panoptic_sync.sync.retry import with_retry
from panoptic_sync.sync.snapshot import recover_snapshot, snapshot_from_transaction

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SYNC_TIMEOUT = 300.0  # seconds

# Checkpoint keys with a pass in flight in this process
_ACTIVE_PASSES: set[str] = set()


def position_meta_from_mint(event: OptionMintedEvent, pool_address: str) -> PositionMeta:
    """Immutable position record decoded from its OptionMinted event."""
    balance = decode_position_balance(event.balance_data)
    return PositionMeta(
        token_id=event.token_id,
        pool_address=pool_address,
        owner=event.recipient,
        position_size=balance.position_size,
        pool_utilization0=balance.pool_utilization0,
        pool_utilization1=balance.pool_utilization1,
        tick_at_mint=balance.tick_at_mint,
        timestamp_at_mint=balance.timestamp_at_mint,
        block_at_mint=balance.block_at_mint,
        swap_at_mint=balance.swap_at_mint,
        mint_block_number=event.block_number,
        mint_tx_hash=event.transaction_hash,
    )


class _SyncPass:
    """State of one ``sync_positions`` call. Not reused across calls."""

    def __init__(
        self,
        client: ChainClient,
        storage: StorageAdapter,
        chain_id: int,
        pool_address: str,
        account: str,
        *,
        from_block: int | None,
        to_block: int | None,
        batch_size: int,
        sync_timeout: float,
        min_block_number: int | None,
        snapshot_tx_hash: str | None,
        reorg_depth: int,
        max_retries: int,
        retry_base_delay: float,
        progress: asyncio.Queue | None,
        pending_max_age_blocks: int,
    ) -> None:
        self._client = client
        self._storage = storage
        self._chain_id = chain_id
        self._pool = pool_address
        self._account = account
        self._from_block = from_block
        self._to_block = to_block
        self._batch_size = batch_size
        self._sync_timeout = sync_timeout
        self._min_block_number = min_block_number
        self._snapshot_tx_hash = snapshot_tx_hash
        self._reorg_depth = reorg_depth
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._progress = progress
        self._pending_max_age_blocks = pending_max_age_blocks

        self._started = time.monotonic()
        self._target = 0
        self._checkpoint: Checkpoint | None = None
        # Metadata of mints found during this pass, stored for positions left open
        self._new_meta: dict[int, PositionMeta] = {}

    # ── Helpers ───────────────────────────────────────────

    async def _retry(self, fn: Callable[[], Awaitable[T]], description: str) -> T:
        return await with_retry(
            fn,
            max_retries=self._max_retries,
            base_delay=self._retry_base_delay,
            description=description,
        )

    async def _block_hash(self, number: int) -> str:
        block = await self._retry(lambda: self._client.get_block(number), f"get_block({number})")
        return block.hash

    def _emit(self, event: SyncProgressEvent) -> None:
        if self._progress is not None:
            self._progress.put_nowait(event)

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    def _timed_out(self) -> bool:
        return time.monotonic() - self._started > self._sync_timeout

    def _timeout_error(self, scan_from: int, last_processed_block: int) -> SyncTimeoutError:
        processed = max(0, last_processed_block - scan_from + 1)
        remaining = max(0, self._target - last_processed_block)
        log.warning(
            "Sync of %s timed out at block %d (%d blocks remaining)",
            self._account, last_processed_block, remaining,
        )
        return SyncTimeoutError(
            elapsed_ms=self._elapsed_ms(),
            blocks_processed=processed,
            blocks_remaining=remaining,
            last_processed_block=last_processed_block,
        )

    async def _position_meta(self, token_id: int) -> PositionMeta | None:
        """Stored or newly found metadata; looks the mint up on chain if unknown."""
        if token_id in self._new_meta:
            return self._new_meta[token_id]
        raw = await self._storage.get(position_meta_key(self._chain_id, self._pool, token_id))
        if raw is not None:
            return PositionMeta.from_dict(raw)

        try:
            mint = await find_mint_event(
                self._client, self._pool, self._account, token_id, self._target,
                from_block=self._from_block or 0,
                max_retries=self._max_retries, retry_base_delay=self._retry_base_delay,
            )
        except RangeTooLargeError as exc:
            log.warning("Could not look up mint of position %d: %s", token_id, exc)
            return None
        if mint is None:
            log.warning("No mint event found for position %d", token_id)
            return None
        meta = position_meta_from_mint(mint, self._pool)
        self._new_meta[token_id] = meta
        return meta

    async def _seed(
        self,
        token_ids: Iterable[int],
        scan_from: int,
        closed: Iterable[ClosedPosition] = (),
    ) -> PositionFold:
        """Fold state for positions held just before ``scan_from``.

        Positions minted at or after ``scan_from`` are left out: the scan
        sees their mint again, or finds it gone after a reorg. Positions in
        ``closed`` whose burn falls at or after ``scan_from`` are held
        again; the scan replays the burn if it is still on chain.
        """
        fold = PositionFold()
        for token_id in sorted(token_ids):
            meta = await self._position_meta(token_id)
            if meta is None:
                fold.sizes[token_id] = 1
                continue
            if meta.mint_block_number >= scan_from:
                continue
            fold.sizes[token_id] = max(meta.position_size, 1)
            fold.minted_at[token_id] = meta.mint_block_number

        for position in closed:
            if position.token_id in fold.sizes:
                continue
            if position.minted_at_block < scan_from <= position.closed_at_block:
                fold.sizes[position.token_id] = max(position.position_size, 1)
                fold.minted_at[position.token_id] = position.minted_at_block
        return fold

    def _closed_history(
        self, fold: PositionFold, scan_from: int, final: frozenset[int],
    ) -> list[ClosedPosition]:
        """Closes the next pass may have to undo after a reorg.

        Earlier records stay where this pass did not rescan them. Anything
        older than the next rollback window is dropped.
        """
        horizon = self._target - self._reorg_depth
        records: dict[int, ClosedPosition] = {}
        if self._checkpoint is not None:
            for position in self._checkpoint.closed_positions:
                if position.closed_at_block < scan_from:
                    records[position.token_id] = position
        for position in fold.closed_positions():
            records[position.token_id] = position
        return sorted(
            (p for p in records.values() if p.token_id not in final and p.closed_at_block >= horizon),
            key=lambda p: (p.closed_at_block, p.token_id),
        )

    async def _deployment_block(self, refresh: bool = False) -> int:
        """Pool deployment block, cached under the pool's metadata key."""
        key = pool_meta_key(self._chain_id, self._pool)
        pool_meta = await self._storage.get(key) or {}
        cached = pool_meta.get("deployment_block")
        if cached is not None and not refresh:
            return int(cached)

        block = await self._retry(
            lambda: find_deployment_block(self._client, self._pool, latest_block=self._target),
            "deployment block search",
        )
        if block is None:
            return 0
        pool_meta["deployment_block"] = block
        await self._storage.set(key, pool_meta)
        return block

    # ── Pass ──────────────────────────────────────────────

    async def run(self) -> SyncResult:
        head = await self._retry(self._client.get_block_number, "get_block_number")
        if self._min_block_number is not None and head < self._min_block_number:
            raise ProviderLagError(head, self._min_block_number)
        target = head if self._to_block is None else self._to_block
        if target > head:
            raise ProviderLagError(head, target)
        self._target = target

        checkpoint = await load_checkpoint(self._storage, self._chain_id, self._pool, self._account)
        self._checkpoint = checkpoint
        partial = await self._load_partial(checkpoint)
        if partial is not None:
            return await self._continue(partial)
        if checkpoint is None:
            log.info("No checkpoint for %s, starting initial sync to block %d", self._account, target)
            return await self._initial_sync()
        return await self._resume(checkpoint)

    async def _load_partial(self, checkpoint: Checkpoint | None) -> PartialScan | None:
        """A timed-out scan this pass can carry on. Stale ones are deleted."""
        partial = await load_partial_scan(self._storage, self._chain_id, self._pool, self._account)
        if partial is None:
            return None

        if checkpoint is None:
            base = (None, None)
        else:
            base = (checkpoint.last_block, checkpoint.last_block_hash)
        if (partial.base_block, partial.base_block_hash) != base:
            reason = "checkpoint has moved"
        elif partial.last_block > self._target:
            reason = f"target block {self._target} is behind it"
        else:
            try:
                current = await self._block_hash(partial.last_block)
            except BlockNotFoundError:
                current = ""
            if current.lower() == partial.last_block_hash.lower():
                return partial
            reason = f"block {partial.last_block} is no longer canonical"

        log.info(
            "Discarding partial scan of %s up to block %d: %s",
            self._account, partial.last_block, reason,
        )
        await clear_partial_scan(self._storage, self._chain_id, self._pool, self._account)
        return None

    async def _continue(self, partial: PartialScan) -> SyncResult:
        log.info(
            "Continuing timed-out scan of %s from block %d",
            self._account, partial.last_block + 1,
        )
        checkpoint = self._checkpoint
        known_hash = partial.last_block_hash if partial.last_block == self._target else None
        return await self._scan_and_commit(
            partial.scan_from, partial.fold,
            previous=checkpoint.position_ids if checkpoint is not None else frozenset(),
            incremental=partial.incremental,
            known_hash=known_hash,
            resume_at=partial.last_block + 1,
        )

    async def _initial_sync(self) -> SyncResult:
        start = self._from_block or 0
        try:
            has_events = await account_has_position_events(
                self._client, self._pool, self._account, start, self._target,
                max_retries=self._max_retries, retry_base_delay=self._retry_base_delay,
            )
        except RangeTooLargeError as exc:
            log.info("History probe refused by provider (%s), scanning in batches", exc)
            has_events = True
        if not has_events:
            log.info("No position history for %s, saving empty checkpoint", self._account)
            block_hash = await self._block_hash(self._target)
            return await self._commit(
                PositionFold(), self._target + 1, block_hash, previous=frozenset(), incremental=False,
            )

        try:
            snapshot = await recover_snapshot(
                self._client, self._pool, self._account, self._target,
                from_block=start,
                max_retries=self._max_retries, retry_base_delay=self._retry_base_delay,
            )
        except RangeTooLargeError as exc:
            log.info("Snapshot search refused by provider (%s)", exc)
            snapshot = None
        if snapshot is None and self._snapshot_tx_hash:
            snapshot = await snapshot_from_transaction(
                self._client, self._pool, self._account, self._snapshot_tx_hash,
            )
            if snapshot.block_number > self._target:
                raise PositionSnapshotNotFoundError(self._snapshot_tx_hash)

        if snapshot is not None:
            scan_from = snapshot.block_number + 1
            fold = await self._seed(snapshot.position_ids, scan_from)
        else:
            scan_from = self._from_block if self._from_block is not None else await self._deployment_block()
            fold = PositionFold()
            log.info("No snapshot for %s, reconstructing from block %d", self._account, scan_from)

        return await self._scan_and_commit(scan_from, fold, previous=frozenset(), incremental=False)

    async def _resume(self, checkpoint: Checkpoint) -> SyncResult:
        reorg = await detect_reorg(
            self._client, checkpoint,
            reorg_depth=self._reorg_depth,
            max_retries=self._max_retries, retry_base_delay=self._retry_base_delay,
        )
        if not reorg.detected:
            if self._target < checkpoint.last_block:
                log.warning(
                    "Target block %d is behind checkpoint block %d for %s, nothing to do",
                    self._target, checkpoint.last_block, self._account,
                )
                return SyncResult(
                    last_synced_block=checkpoint.last_block,
                    last_synced_block_hash=checkpoint.last_block_hash,
                    position_ids=checkpoint.position_ids,
                    incremental=True,
                    duration_ms=self._elapsed_ms(),
                )
            scan_from = checkpoint.last_block + 1
            fold = await self._seed(checkpoint.position_ids, scan_from)
            known_hash = checkpoint.last_block_hash if self._target == checkpoint.last_block else None
            return await self._scan_and_commit(
                scan_from, fold,
                previous=checkpoint.position_ids, incremental=True, known_hash=known_hash,
            )

        self._emit(SyncProgressEvent(kind=ProgressKind.REORG_DETECTED, block_number=reorg.block_number))
        scan_from = calculate_resync_block(checkpoint.last_block, self._reorg_depth)
        if scan_from == 0 or scan_from > self._target:
            # no trusted state at or below the target, rediscover where the pool starts
            scan_from = await self._deployment_block(refresh=True)
            fold = PositionFold()
        else:
            fold = await self._seed(checkpoint.position_ids, scan_from, checkpoint.closed_positions)
        log.info("Resyncing %s from block %d after reorg", self._account, scan_from)
        return await self._scan_and_commit(
            scan_from, fold, previous=checkpoint.position_ids, incremental=False,
        )

    async def _scan_and_commit(
        self,
        scan_from: int,
        fold: PositionFold,
        *,
        previous: frozenset[int],
        incremental: bool,
        known_hash: str | None = None,
        resume_at: int | None = None,
    ) -> SyncResult:
        """Fold the events of ``[scan_from, target]`` into ``fold`` and commit.

        ``resume_at`` skips the blocks a timed-out pass already folded in.
        """
        start = scan_from if resume_at is None else resume_at
        if start > self._target:
            block_hash = known_hash or await self._block_hash(self._target)
            return await self._commit(fold, scan_from, block_hash, previous=previous, incremental=incremental)

        if self._timed_out():
            raise self._timeout_error(start, start - 1)

        async for progress, events in iter_position_batches(
            self._client, self._pool, self._account, start, self._target,
            batch_size=self._batch_size,
            max_retries=self._max_retries,
            retry_base_delay=self._retry_base_delay,
        ):
            fold.extend(events)
            for event in events:
                if isinstance(event, OptionMintedEvent) and event.token_id not in self._new_meta:
                    self._new_meta[event.token_id] = position_meta_from_mint(event, self._pool)

            self._emit(SyncProgressEvent(
                kind=ProgressKind.PROGRESS,
                current=progress.blocks_processed,
                total=progress.blocks_total,
                block_number=progress.current_block,
            ))
            if progress.current_block < self._target and self._timed_out():
                await self._save_partial(scan_from, progress.current_block, fold, incremental)
                raise self._timeout_error(start, progress.current_block)

        block_hash = await self._block_hash(self._target)
        return await self._commit(fold, scan_from, block_hash, previous=previous, incremental=incremental)

    async def _save_partial(
        self, scan_from: int, last_block: int, fold: PositionFold, incremental: bool,
    ) -> None:
        block_hash = await self._block_hash(last_block)
        for token_id in sorted(fold.opened):
            if token_id in self._new_meta:
                await self._store_meta(token_id)
        await save_partial_scan(
            self._storage, self._chain_id, self._pool, self._account,
            base=self._checkpoint,
            scan_from=scan_from,
            last_block=last_block,
            last_block_hash=block_hash,
            fold=fold,
            incremental=incremental,
        )

    async def _commit(
        self,
        fold: PositionFold,
        scan_from: int,
        block_hash: str,
        *,
        previous: frozenset[int],
        incremental: bool,
    ) -> SyncResult:
        final = fold.opened
        closed = self._closed_history(fold, scan_from, final)

        for token_id in sorted(final - previous):
            self._emit(SyncProgressEvent(
                kind=ProgressKind.POSITION_OPENED, token_id=token_id, block_number=self._target,
            ))
        for token_id in sorted(previous - final):
            self._emit(SyncProgressEvent(
                kind=ProgressKind.POSITION_CLOSED, token_id=token_id, block_number=self._target,
            ))

        for token_id in sorted(final):
            await self._store_meta(token_id)

        # checkpoint last: a failure above leaves the previous one intact
        await save_checkpoint(
            self._storage, self._chain_id, self._pool, self._account,
            self._target, block_hash, final, closed,
        )
        await clear_partial_scan(self._storage, self._chain_id, self._pool, self._account)

        tracker = PendingPositionTracker(self._storage, self._chain_id, self._pool, self._account)
        await tracker.reconcile(set(final) | set(fold.minted_at), self._target, self._pending_max_age_blocks)

        duration_ms = self._elapsed_ms()
        log.info(
            "Synced %s up to block %d: %d positions (%s, %dms)",
            self._account, self._target, len(final),
            "incremental" if incremental else "full", duration_ms,
        )
        return SyncResult(
            last_synced_block=self._target,
            last_synced_block_hash=block_hash,
            position_ids=final,
            incremental=incremental,
            duration_ms=duration_ms,
        )

    async def _store_meta(self, token_id: int) -> None:
        key = position_meta_key(self._chain_id, self._pool, token_id)
        if await self._storage.has(key):
            return
        meta = await self._position_meta(token_id)
        if meta is not None:
            await self._storage.set(key, meta.to_dict())


# ── Public API ────────────────────────────────────────────


async def sync_positions(
    client: ChainClient,
    storage: StorageAdapter,
    chain_id: int,
    pool_address: str,
    account: str,
    *,
    from_block: int | None = None,
    to_block: int | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    sync_timeout: float = DEFAULT_SYNC_TIMEOUT,
    min_block_number: int | None = None,
    snapshot_tx_hash: str | None = None,
    reorg_depth: int = REORG_DEPTH,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
    progress: asyncio.Queue | None = None,
    pending_max_age_blocks: int = DEFAULT_MAX_AGE_BLOCKS,
) -> SyncResult:
    """Bring the account's checkpoint up to ``to_block`` (default: chain head).

    ``progress`` receives SyncProgressEvent records during the pass and a
    closing ``None`` when it ends, whether it succeeded or raised.

    Raises ProviderLagError, SyncTimeoutError, SyncInProgressError and
    PositionSnapshotNotFoundError; non-retryable RPC errors propagate as is.
    A pass that times out saves how far it got; the next pass carries on
    from there unless the checkpoint moved or that block was reorged out.
    """
    key = checkpoint_key(chain_id, pool_address, account)
    try:
        if key in _ACTIVE_PASSES:
            raise SyncInProgressError(key)
        _ACTIVE_PASSES.add(key)
        try:
            return await _SyncPass(
                client, storage, chain_id, pool_address, account,
                from_block=from_block,
                to_block=to_block,
                batch_size=batch_size,
                sync_timeout=sync_timeout,
                min_block_number=min_block_number,
                snapshot_tx_hash=snapshot_tx_hash,
                reorg_depth=reorg_depth,
                max_retries=max_retries,
                retry_base_delay=retry_base_delay,
                progress=progress,
                pending_max_age_blocks=pending_max_age_blocks,
            ).run()
        finally:
            _ACTIVE_PASSES.discard(key)
    finally:
        if progress is not None:
            progress.put_nowait(None)


async def get_sync_status(
    client: ChainClient,
    storage: StorageAdapter,
    chain_id: int,
    pool_address: str,
    account: str,
) -> SyncStatus:
    """Compare the stored checkpoint with the current chain head."""
    head = await client.get_block_number()
    checkpoint = await load_checkpoint(storage, chain_id, pool_address, account)
    if checkpoint is None:
        return SyncStatus(
            has_checkpoint=False,
            last_synced_block=0,
            is_synced=False,
            blocks_behind=head,
            position_count=0,
        )

    behind = head - checkpoint.last_block
    return SyncStatus(
        has_checkpoint=True,
        last_synced_block=checkpoint.last_block,
        is_synced=behind <= 0,
        blocks_behind=max(0, behind),
        position_count=len(checkpoint.position_ids),
    )


async def get_tracked_position_ids(
    storage: StorageAdapter, chain_id: int, pool_address: str, account: str,
) -> frozenset[int]:
    """Open positions as of the last sync. Reads storage only."""
    checkpoint = await load_checkpoint(storage, chain_id, pool_address, account)
    if checkpoint is None:
        return frozenset()
    return checkpoint.position_ids


async def is_position_tracked(
    storage: StorageAdapter, chain_id: int, pool_address: str, account: str, token_id: int,
) -> bool:
    return token_id in await get_tracked_position_ids(storage, chain_id, pool_address, account)


async def clear_tracked_positions(
    storage: StorageAdapter, chain_id: int, pool_address: str, account: str,
) -> None:
    """Forget the account's checkpoint; the next pass starts from scratch."""
    await clear_checkpoint(storage, chain_id, pool_address, account)
    log.info("Cleared tracked positions for %s", account)


async def get_position_meta(
    storage: StorageAdapter, chain_id: int, pool_address: str, token_id: int,
) -> PositionMeta:
    key = position_meta_key(chain_id, pool_address, token_id)
    raw = await storage.get(key)
    if raw is None:
        raise StorageDataNotFoundError("PositionMeta", key)
    return PositionMeta.from_dict(raw)
