"""Checkpoint persistence and reorg rollback arithmetic."""

from __future__ import annotations

import logging
import time
from typing import Iterable

from panoptic_sync.interfaces.storage import StorageAdapter
from panoptic_sync.models.sync import Checkpoint, ClosedPosition, PartialScan, PositionFold
from panoptic_sync.storage.keys import checkpoint_key, partial_scan_key

log = logging.getLogger(__name__)

# Blocks to roll back when the checkpoint's block is no longer canonical
REORG_DEPTH = 128


def calculate_resync_block(last_block: int, reorg_depth: int = REORG_DEPTH) -> int:
    """First block to rescan after a reorg at ``last_block``. Floors at 0."""
    if last_block <= reorg_depth:
        return 0
    return last_block - reorg_depth


async def load_checkpoint(
    storage: StorageAdapter, chain_id: int, pool_address: str, account: str,
) -> Checkpoint | None:
    """Stored checkpoint, or None if this account was never synced."""
    raw = await storage.get(checkpoint_key(chain_id, pool_address, account))
    if raw is None:
        return None
    return Checkpoint.from_dict(raw)


async def save_checkpoint(
    storage: StorageAdapter,
    chain_id: int,
    pool_address: str,
    account: str,
    last_block: int,
    last_block_hash: str,
    position_ids: frozenset[int] | set[int],
    closed_positions: Iterable[ClosedPosition] = (),
) -> Checkpoint:
    """Overwrite the checkpoint with one value in a single store write."""
    checkpoint = Checkpoint(
        chain_id=chain_id,
        pool_address=pool_address,
        account=account,
        last_block=last_block,
        last_block_hash=last_block_hash,
        position_ids=frozenset(position_ids),
        created_at=int(time.time()),
        closed_positions=tuple(closed_positions),
    )
    await storage.set(checkpoint_key(chain_id, pool_address, account), checkpoint.to_dict())
    log.debug(
        "Checkpoint for %s saved at block %d (%d positions)",
        account, last_block, len(checkpoint.position_ids),
    )
    return checkpoint


async def clear_checkpoint(
    storage: StorageAdapter, chain_id: int, pool_address: str, account: str,
) -> None:
    await storage.delete(checkpoint_key(chain_id, pool_address, account))
    await clear_partial_scan(storage, chain_id, pool_address, account)


# ── Timed-out scans ───────────────────────────────────────


async def load_partial_scan(
    storage: StorageAdapter, chain_id: int, pool_address: str, account: str,
) -> PartialScan | None:
    raw = await storage.get(partial_scan_key(chain_id, pool_address, account))
    if raw is None:
        return None
    return PartialScan.from_dict(raw)


async def save_partial_scan(
    storage: StorageAdapter,
    chain_id: int,
    pool_address: str,
    account: str,
    *,
    base: Checkpoint | None,
    scan_from: int,
    last_block: int,
    last_block_hash: str,
    fold: PositionFold,
    incremental: bool,
) -> PartialScan:
    """Record how far a pass got on top of ``base`` before running out of time."""
    partial = PartialScan(
        base_block=base.last_block if base is not None else None,
        base_block_hash=base.last_block_hash if base is not None else None,
        scan_from=scan_from,
        last_block=last_block,
        last_block_hash=last_block_hash,
        fold=fold,
        incremental=incremental,
        created_at=int(time.time()),
    )
    await storage.set(partial_scan_key(chain_id, pool_address, account), partial.to_dict())
    log.info(
        "Saved partial scan of %s: blocks %d-%d done", account, scan_from, last_block,
    )
    return partial


async def clear_partial_scan(
    storage: StorageAdapter, chain_id: int, pool_address: str, account: str,
) -> None:
    await storage.delete(partial_scan_key(chain_id, pool_address, account))
