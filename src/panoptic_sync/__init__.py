"""panoptic_sync - checkpointed Panoptic position sync and live event feeds."""

from panoptic_sync.events import create_event_poller, create_event_subscription
from panoptic_sync.sync import (
    PendingPositionTracker,
    clear_tracked_positions,
    get_position_meta,
    get_sync_status,
    get_tracked_position_ids,
    is_position_tracked,
    sync_positions,
)

__version__ = "0.1.0"

__all__ = [
    "PendingPositionTracker",
    "clear_tracked_positions",
    "create_event_poller",
    "create_event_subscription",
    "get_position_meta",
    "get_sync_status",
    "get_tracked_position_ids",
    "is_position_tracked",
    "sync_positions",
]
