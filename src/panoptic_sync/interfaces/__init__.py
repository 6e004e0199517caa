"""Protocol interfaces for the external collaborators of panoptic_sync."""

from panoptic_sync.interfaces.chain import (
    ChainClient,
    ErrorCallback,
    LogsCallback,
    LogWatch,
    TopicFilter,
)
from panoptic_sync.interfaces.storage import StorageAdapter

__all__ = [
    "ChainClient", "ErrorCallback", "LogsCallback", "LogWatch", "TopicFilter",
    "StorageAdapter",
]
