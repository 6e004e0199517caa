"""Pending position tracking for optimistic UI state."""

from __future__ import annotations

import logging
import time
from typing import Iterable

from panoptic_sync.interfaces.storage import StorageAdapter
from panoptic_sync.models.pending import PendingPosition, PendingStatus, ReconcileReport
from panoptic_sync.storage.keys import pending_key

log = logging.getLogger(__name__)

DEFAULT_MAX_AGE_BLOCKS = 100


class PendingPositionTracker:
    """Store-backed list of submitted-but-unconfirmed positions for one account.

    Entries leave the list when confirmed, failed, or stale; the
    checkpoint is what records the outcome.
    """

    def __init__(
        self,
        storage: StorageAdapter,
        chain_id: int,
        pool_address: str,
        account: str,
    ) -> None:
        self._storage = storage
        self._key = pending_key(chain_id, pool_address, account)
        self.account = account

    async def _load(self) -> list[PendingPosition]:
        raw = await self._storage.get(self._key)
        if raw is None:
            return []
        return [PendingPosition.from_dict(d) for d in raw]

    async def _store(self, entries: list[PendingPosition]) -> None:
        if entries:
            await self._storage.set(self._key, [p.to_dict() for p in entries])
        else:
            await self._storage.delete(self._key)

    async def list_pending(self) -> list[PendingPosition]:
        """Entries still waiting on chain."""
        return [p for p in await self._load() if p.status == PendingStatus.PENDING]

    async def add(
        self,
        token_id: int,
        tx_hash: str,
        submitted_at_block: int,
        position_size: int = 0,
    ) -> PendingPosition:
        entry = PendingPosition(
            token_id=token_id,
            tx_hash=tx_hash,
            submitted_at_block=submitted_at_block,
            submitted_at=int(time.time()),
            position_size=position_size,
        )
        entries = await self._load()
        entries.append(entry)
        await self._store(entries)
        log.info("Tracking pending position %d (tx %s)", token_id, tx_hash)
        return entry

    async def confirm(self, token_id: int) -> PendingPosition | None:
        """Drop the entry for ``token_id``; returns it marked confirmed."""
        entries = await self._load()
        match = next((p for p in entries if p.token_id == token_id), None)
        if match is None:
            return None
        await self._store([p for p in entries if p.token_id != token_id])
        log.info("Pending position %d confirmed", token_id)
        return match.with_status(PendingStatus.CONFIRMED)

    async def fail(self, tx_hash: str) -> list[PendingPosition]:
        """Drop every entry submitted in ``tx_hash``; returns them marked failed."""
        entries = await self._load()
        failed = [p for p in entries if p.tx_hash.lower() == tx_hash.lower()]
        if not failed:
            return []
        await self._store([p for p in entries if p not in failed])
        log.info("Pending tx %s failed (%d positions)", tx_hash, len(failed))
        return [p.with_status(PendingStatus.FAILED) for p in failed]

    async def cleanup_stale(
        self, current_block: int, max_age_blocks: int = DEFAULT_MAX_AGE_BLOCKS,
    ) -> list[PendingPosition]:
        """Drop entries submitted before ``current_block - max_age_blocks``."""
        cutoff = current_block - max_age_blocks
        entries = await self._load()
        stale = [p for p in entries if p.submitted_at_block < cutoff]
        if stale:
            await self._store([p for p in entries if p.submitted_at_block >= cutoff])
            log.warning(
                "Pruned %d stale pending positions (submitted before block %d)",
                len(stale), cutoff,
            )
        return stale

    async def clear(self) -> None:
        await self._storage.delete(self._key)

    async def reconcile(
        self,
        observed_token_ids: Iterable[int],
        current_block: int,
        max_age_blocks: int = DEFAULT_MAX_AGE_BLOCKS,
    ) -> ReconcileReport:
        """Confirm entries whose token id a sync pass observed, then prune stale ones.

        Runs once after each sync pass with the ids it saw minted or holds open.
        """
        observed = set(observed_token_ids)
        entries = await self._load()
        confirmed = [p for p in entries if p.token_id in observed]
        remaining = [p for p in entries if p.token_id not in observed]

        cutoff = current_block - max_age_blocks
        stale = [p for p in remaining if p.submitted_at_block < cutoff]
        remaining = [p for p in remaining if p.submitted_at_block >= cutoff]

        if confirmed or stale:
            await self._store(remaining)
        if confirmed:
            log.info("Confirmed %d pending positions", len(confirmed))
        if stale:
            log.warning("Pruned %d stale pending positions", len(stale))

        return ReconcileReport(
            confirmed=tuple(p.with_status(PendingStatus.CONFIRMED) for p in confirmed),
            stale=tuple(stale),
            remaining=len(remaining),
        )
