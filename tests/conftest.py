"""Shared fixtures for panoptic_sync tests."""

from __future__ import annotations

import pytest
from pytest_metadata.plugin import metadata_key

from panoptic_sync.models.config import FeedMode, ReconnectConfig, SyncConfig
from panoptic_sync.storage.memory import MemoryStorage
from panoptic_sync.storage.sqlite import SQLiteStorage

from tests.factories import ACCOUNT, CHAIN_ID, POOL, TRACKER0, TRACKER1
from tests.mocks import MockChain


# ── Report metadata ──────────────────────────────────────────────


def pytest_configure(config):
    """Add the synthetic chain setup to the report Environment table."""
    meta = config.stash.setdefault(metadata_key, {})
    meta["Chain ID"] = str(CHAIN_ID)
    meta["Pool"] = POOL
    meta["Account"] = ACCOUNT


def make_test_config(**overrides) -> SyncConfig:
    """Build a SyncConfig suitable for testing."""
    defaults = dict(
        rpc_url="http://127.0.0.1:8545",
        chain_id=CHAIN_ID,
        pool_address=POOL,
        account=ACCOUNT,
        collateral_tracker0=TRACKER0,
        collateral_tracker1=TRACKER1,
        batch_size=100,
        sync_timeout=30.0,
        sync_interval=1,
        error_backoff=1,
        feed=FeedMode.NONE,
        poll_interval=0.01,
        max_retries=0,
        reconnect=ReconnectConfig(max_attempts=3, initial_delay=0.01, max_delay=0.04),
        db_path=":memory:",
    )
    defaults.update(overrides)
    return SyncConfig(**defaults)


@pytest.fixture
def test_config():
    """Default SyncConfig for tests."""
    return make_test_config()


@pytest.fixture
def chain():
    """In-memory chain at block 1000 with no logs."""
    return MockChain(head=1000)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
async def sqlite_storage():
    """Initialized in-memory SQLiteStorage."""
    s = SQLiteStorage(":memory:")
    await s.initialize()
    yield s
    await s.close()
