"""Configuration loading: TOML file + environment variables."""

from __future__ import annotations

import os
from pathlib import Path

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

from eth_utils import to_checksum_address

from panoptic_sync.models.config import FeedMode, ReconnectConfig, SyncConfig

_ADDRESS_FIELDS = ("pool_address", "account", "collateral_tracker0", "collateral_tracker1")


def load_config(
    config_path: str | Path | None = None,
    env_prefix: str = "PANOPTIC_SYNC_",
) -> SyncConfig:
    """Load sync configuration from a TOML file and env vars.

    Priority (highest wins):
        1. Environment variables (PANOPTIC_SYNC_RPC_URL, etc.)
        2. TOML config file
        3. Defaults from SyncConfig

    Raises ValueError on a malformed address or unknown feed mode.
    """
    raw: dict = {}
    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            with open(p, "rb") as f:
                raw = tomllib.load(f)

    cfg = SyncConfig()

    # ── Chain section ──────────────────────────────────────
    chain = raw.get("chain", {})
    if v := chain.get("rpc_url"):
        cfg.rpc_url = str(v)
    if v := chain.get("ws_url"):
        cfg.ws_url = str(v)
    if v := chain.get("chain_id"):
        cfg.chain_id = int(v)
    if v := chain.get("request_timeout"):
        cfg.request_timeout = float(v)

    # ── Pool section ───────────────────────────────────────
    pool = raw.get("pool", {})
    for name in _ADDRESS_FIELDS:
        if v := pool.get(name):
            setattr(cfg, name, str(v))

    # ── Sync section ───────────────────────────────────────
    sync = raw.get("sync", {})
    if v := sync.get("batch_size"):
        cfg.batch_size = int(v)
    if v := sync.get("sync_timeout"):
        cfg.sync_timeout = float(v)
    if v := sync.get("reorg_depth"):
        cfg.reorg_depth = int(v)
    if (v := sync.get("min_block_number")) is not None:
        cfg.min_block_number = int(v)
    if (v := sync.get("start_block")) is not None:
        cfg.start_block = int(v)
    if v := sync.get("sync_interval"):
        cfg.sync_interval = int(v)
    if (v := sync.get("max_retries")) is not None:
        cfg.max_retries = int(v)

    # ── Events section ─────────────────────────────────────
    events = raw.get("events", {})
    if v := events.get("feed"):
        cfg.feed = FeedMode(v)
    if v := events.get("poll_interval"):
        cfg.poll_interval = float(v)
    if v := events.get("max_block_range"):
        cfg.max_block_range = int(v)
    if v := events.get("event_types"):
        cfg.event_types = [str(t) for t in v]

    # ── Reconnect section ──────────────────────────────────
    reconnect = raw.get("reconnect", {})
    cfg.reconnect = ReconnectConfig(
        max_attempts=int(reconnect.get("max_attempts", 10)),
        initial_delay=float(reconnect.get("initial_delay", 1.0)),
        max_delay=float(reconnect.get("max_delay", 30.0)),
        backoff_multiplier=float(reconnect.get("backoff_multiplier", 2.0)),
    )

    # ── Pending section ────────────────────────────────────
    pending = raw.get("pending", {})
    if v := pending.get("max_age_blocks"):
        cfg.pending_max_age_blocks = int(v)

    # ── Storage section ────────────────────────────────────
    storage = raw.get("storage", {})
    if v := storage.get("db_path"):
        cfg.db_path = str(v)

    # ── Daemon section ─────────────────────────────────────
    daemon = raw.get("daemon", {})
    if v := daemon.get("error_backoff"):
        cfg.error_backoff = int(v)
    if v := daemon.get("log_level"):
        cfg.log_level = str(v)

    # ── Environment variable overrides (highest priority) ──
    if rpc := os.environ.get(f"{env_prefix}RPC_URL"):
        cfg.rpc_url = rpc
    if ws := os.environ.get(f"{env_prefix}WS_URL"):
        cfg.ws_url = ws
    if chain_id := os.environ.get(f"{env_prefix}CHAIN_ID"):
        cfg.chain_id = int(chain_id)
    if pool_env := os.environ.get(f"{env_prefix}POOL_ADDRESS"):
        cfg.pool_address = pool_env
    if account := os.environ.get(f"{env_prefix}ACCOUNT"):
        cfg.account = account
    if db := os.environ.get(f"{env_prefix}DB_PATH"):
        cfg.db_path = db
    if level := os.environ.get(f"{env_prefix}LOG_LEVEL"):
        cfg.log_level = level
    if feed := os.environ.get(f"{env_prefix}FEED"):
        cfg.feed = FeedMode(feed)

    for name in _ADDRESS_FIELDS:
        if value := getattr(cfg, name):
            setattr(cfg, name, to_checksum_address(value))

    # Expand ~ in paths
    if cfg.db_path != ":memory:":
        cfg.db_path = str(Path(cfg.db_path).expanduser())

    return cfg
