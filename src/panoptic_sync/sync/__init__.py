"""Position sync engine - checkpoints, reorgs, snapshots, reconstruction."""

from panoptic_sync.sync.checkpoint import REORG_DEPTH, calculate_resync_block
from panoptic_sync.sync.orchestrator import (
    clear_tracked_positions,
    get_position_meta,
    get_sync_status,
    get_tracked_position_ids,
    is_position_tracked,
    sync_positions,
)
from panoptic_sync.sync.pending import PendingPositionTracker
from panoptic_sync.sync.reconstruction import find_deployment_block, reconstruct_from_events
from panoptic_sync.sync.reorg import detect_reorg
from panoptic_sync.sync.snapshot import recover_snapshot

__all__ = [
    "REORG_DEPTH",
    "PendingPositionTracker",
    "calculate_resync_block",
    "clear_tracked_positions",
    "detect_reorg",
    "find_deployment_block",
    "get_position_meta",
    "get_sync_status",
    "get_tracked_position_ids",
    "is_position_tracked",
    "reconstruct_from_events",
    "recover_snapshot",
    "sync_positions",
]
