"""Data models for panoptic_sync."""

from panoptic_sync.models.chain import BlockInfo, RawLog, TransactionInfo
from panoptic_sync.models.config import FeedMode, ReconnectConfig, SyncConfig
from panoptic_sync.models.events import (
    AccountLiquidatedEvent,
    ContractEvent,
    DepositEvent,
    EventLocation,
    ForcedExercisedEvent,
    OptionBurntEvent,
    OptionMintedEvent,
    PositionEvent,
    PremiumSettledEvent,
    WithdrawEvent,
    event_key,
)
from panoptic_sync.models.pending import PendingPosition, PendingStatus, ReconcileReport
from panoptic_sync.models.sync import (
    Checkpoint,
    ClosedPosition,
    PartialScan,
    PositionBalance,
    PositionFold,
    PositionMeta,
    ProgressKind,
    ReconstructionResult,
    ReorgDetection,
    ScanProgress,
    Snapshot,
    SyncProgressEvent,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "BlockInfo", "RawLog", "TransactionInfo",
    "FeedMode", "ReconnectConfig", "SyncConfig",
    "AccountLiquidatedEvent", "ContractEvent", "DepositEvent", "EventLocation",
    "ForcedExercisedEvent", "OptionBurntEvent", "OptionMintedEvent",
    "PositionEvent", "PremiumSettledEvent", "WithdrawEvent", "event_key",
    "PendingPosition", "PendingStatus", "ReconcileReport",
    "Checkpoint", "ClosedPosition", "PartialScan", "PositionBalance",
    "PositionFold", "PositionMeta", "ProgressKind",
    "ReconstructionResult", "ReorgDetection", "ScanProgress", "Snapshot",
    "SyncProgressEvent", "SyncResult", "SyncStatus",
]
