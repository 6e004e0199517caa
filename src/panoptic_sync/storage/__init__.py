"""Key-value storage backends for checkpoints, metadata and pending lists."""

from panoptic_sync.storage.memory import MemoryStorage
from panoptic_sync.storage.sqlite import SQLiteStorage

__all__ = ["MemoryStorage", "SQLiteStorage"]
