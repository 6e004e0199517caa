"""Configuration models for the sync engine and daemon."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class FeedMode(str, Enum):
    """Live event feed run alongside periodic sync passes."""

    SUBSCRIPTION = "subscription"  # push, eth_subscribe or filter watches
    POLLER = "poller"  # pull, head diffing
    NONE = "none"


@dataclass
class ReconnectConfig:
    """Exponential backoff for the resilient subscription."""

    max_attempts: int = 10  # 0 retries forever
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    backoff_multiplier: float = 2.0


@dataclass
class SyncConfig:
    """Complete sync daemon configuration."""

    # Chain
    rpc_url: str = "http://127.0.0.1:8545"
    ws_url: str = ""  # empty: push watches emulated over HTTP filters
    chain_id: int = 1
    request_timeout: float = 30.0  # seconds

    # Pool
    pool_address: str = ""
    account: str = ""
    collateral_tracker0: str = ""
    collateral_tracker1: str = ""

    # Sync
    batch_size: int = 10_000  # blocks per log query
    sync_timeout: float = 300.0  # seconds
    reorg_depth: int = 128
    min_block_number: int | None = None
    start_block: int | None = None  # overrides deployment block discovery
    sync_interval: int = 60  # seconds between passes
    max_retries: int = 3

    # Events
    feed: FeedMode = FeedMode.SUBSCRIPTION
    poll_interval: float = 12.0  # seconds
    max_block_range: int = 1000
    event_types: list[str] = field(
        default_factory=lambda: ["OptionMinted", "OptionBurnt"]
    )
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)

    # Pending
    pending_max_age_blocks: int = 100

    # Storage
    db_path: str = "~/.panoptic_sync/state.db"

    # Daemon
    error_backoff: int = 30  # seconds
    log_level: str = "info"
