"""Tests 15-27: sync_positions passes, checkpoints and read helpers."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from panoptic_sync.errors import (
    PositionSnapshotNotFoundError,
    ProviderLagError,
    StorageDataNotFoundError,
    SyncInProgressError,
    SyncTimeoutError,
)
from panoptic_sync.models.sync import ProgressKind
from panoptic_sync.storage.keys import pool_meta_key
from panoptic_sync.sync import orchestrator
from panoptic_sync.sync.checkpoint import load_checkpoint
from panoptic_sync.sync.orchestrator import (
    clear_tracked_positions,
    get_position_meta,
    get_sync_status,
    get_tracked_position_ids,
    is_position_tracked,
    sync_positions,
)
from panoptic_sync.sync.pending import PendingPositionTracker

from tests.factories import (
    ACCOUNT,
    CHAIN_ID,
    POOL,
    block_hash,
    make_burn_log,
    make_dispatch_input,
    make_mint_log,
    make_pool_traffic,
    make_transaction,
    tx_hash,
)
from tests.mocks import MockChain


async def _sync(chain, storage, **kwargs):
    kwargs.setdefault("batch_size", 100)
    kwargs.setdefault("max_retries", 0)
    return await sync_positions(chain, storage, CHAIN_ID, POOL, ACCOUNT, **kwargs)


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def _kinds(records, kind: ProgressKind) -> list:
    return [r for r in records if r is not None and r.kind == kind]


@pytest.fixture
def history(chain):
    """Pool active from block 50; the account ends at block 1000 holding {2, 3}."""
    chain.add_logs(
        *make_pool_traffic(50, 1000),
        make_mint_log(1, block=100),
        make_mint_log(2, block=300),
        make_burn_log(1, block=500),
        make_mint_log(3, block=700),
    )
    return chain


# ── Test 15: Initial sync by full reconstruction ──────────────────


async def test_initial_sync_reconstructs(history, storage):
    progress: asyncio.Queue = asyncio.Queue()
    result = await _sync(history, storage, progress=progress)

    assert result.position_ids == {2, 3}
    assert result.last_synced_block == 1000
    assert result.last_synced_block_hash == block_hash(1000)
    assert result.incremental is False

    checkpoint = await load_checkpoint(storage, CHAIN_ID, POOL, ACCOUNT)
    assert checkpoint.last_block == 1000
    assert checkpoint.position_ids == {2, 3}

    # deployment block discovered and cached
    assert await storage.get(pool_meta_key(CHAIN_ID, POOL)) == {"deployment_block": 50}

    records = _drain(progress)
    assert records[-1] is None
    assert [r.token_id for r in _kinds(records, ProgressKind.POSITION_OPENED)] == [2, 3]
    scans = _kinds(records, ProgressKind.PROGRESS)
    assert scans[-1].current == scans[-1].total == 951


# ── Test 16: Second pass at the same head is a no-op ──────────────


async def test_sync_is_idempotent(history, storage):
    first = await _sync(history, storage)
    calls = len(history.get_logs_calls)

    second = await _sync(history, storage)
    assert second.incremental is True
    assert second.position_ids == first.position_ids
    assert second.last_synced_block == first.last_synced_block
    assert second.last_synced_block_hash == first.last_synced_block_hash
    assert len(history.get_logs_calls) == calls


async def test_sync_is_idempotent_on_sqlite(history, sqlite_storage):
    first = await _sync(history, sqlite_storage)
    second = await _sync(history, sqlite_storage)
    assert second.position_ids == first.position_ids == {2, 3}
    assert second.incremental is True


# ── Test 17: Incremental tail scan ───────────────────────────────


async def test_incremental_sync_scans_only_new_blocks(history, storage):
    await _sync(history, storage)
    mark = len(history.get_logs_calls)

    history.head = 1200
    history.add_logs(make_burn_log(2, block=1050), make_mint_log(4, block=1100))
    progress: asyncio.Queue = asyncio.Queue()
    result = await _sync(history, storage, progress=progress)

    assert result.incremental is True
    assert result.position_ids == {3, 4}
    assert all(call[2] >= 1001 for call in history.get_logs_calls[mark:])

    records = _drain(progress)
    assert [r.token_id for r in _kinds(records, ProgressKind.POSITION_OPENED)] == [4]
    assert [r.token_id for r in _kinds(records, ProgressKind.POSITION_CLOSED)] == [2]


async def test_partial_burn_keeps_carried_position(history, storage):
    await _sync(history, storage)
    history.head = 1100
    history.add_logs(make_burn_log(3, 400, block=1050))
    result = await _sync(history, storage)
    assert result.position_ids == {2, 3}


# ── Test 18: Empty account fast path ─────────────────────────────


async def test_empty_account_skips_history_scan(chain, storage):
    chain.add_logs(*make_pool_traffic(50, 1000))
    result = await _sync(chain, storage)

    assert result.position_ids == frozenset()
    assert result.last_synced_block == 1000
    assert result.incremental is False
    # one history query per event type, no deployment search, no scan
    assert len(chain.get_logs_calls) == 2
    assert not await storage.has(pool_meta_key(CHAIN_ID, POOL))
    assert (await load_checkpoint(storage, CHAIN_ID, POOL, ACCOUNT)).last_block == 1000


# ── Test 19: Reorg rolls back and rescans ────────────────────────


async def test_reorg_resyncs_from_rollback_block(history, storage):
    history.add_logs(make_mint_log(5, block=950, log_index=1))
    first = await _sync(history, storage)
    assert first.position_ids == {2, 3, 5}

    # block 1000 replaced; the mint at 950 did not survive
    history.reorg(1000)
    history.logs = [raw for raw in history.logs if raw.block_number != 950]
    mark = len(history.get_logs_calls)

    progress: asyncio.Queue = asyncio.Queue()
    result = await _sync(history, storage, progress=progress)

    assert result.incremental is False
    assert result.position_ids == {2, 3}
    assert result.last_synced_block_hash == block_hash(1000, 1)
    scans = [c for c in history.get_logs_calls[mark:] if c[1] and len(c[1]) == 2]
    assert min(c[2] for c in scans) == 872

    records = _drain(progress)
    reorgs = _kinds(records, ProgressKind.REORG_DETECTED)
    assert [r.block_number for r in reorgs] == [1000]
    assert [r.token_id for r in _kinds(records, ProgressKind.POSITION_CLOSED)] == [5]


async def test_reorg_near_genesis_rediscovers_deployment(storage):
    chain = MockChain(head=100)
    chain.add_logs(*make_pool_traffic(20, 100, step=10), make_mint_log(1, block=30, log_index=1))
    assert (await _sync(chain, storage)).position_ids == {1}

    chain.reorg(100)
    result = await _sync(chain, storage)
    assert result.incremental is False
    assert result.position_ids == {1}
    assert await storage.get(pool_meta_key(CHAIN_ID, POOL)) == {"deployment_block": 20}


# ── Test 20: Wall-clock budget ───────────────────────────────────


async def test_sync_timeout_between_batches(history, storage, monkeypatch):
    ticks = iter(range(0, 1000, 10))
    monkeypatch.setattr(orchestrator, "time", SimpleNamespace(monotonic=lambda: next(ticks)))

    progress: asyncio.Queue = asyncio.Queue()
    with pytest.raises(SyncTimeoutError) as exc_info:
        await _sync(history, storage, sync_timeout=25, progress=progress)

    err = exc_info.value
    assert err.last_processed_block == 249
    assert err.blocks_processed == 200
    assert err.blocks_remaining == 751
    assert await load_checkpoint(storage, CHAIN_ID, POOL, ACCOUNT) is None
    assert _drain(progress)[-1] is None


# ── Test 21: Provider lag ────────────────────────────────────────


async def test_provider_behind_min_block(history, storage):
    with pytest.raises(ProviderLagError) as exc_info:
        await _sync(history, storage, min_block_number=1001)
    assert exc_info.value.provider_block == 1000
    assert exc_info.value.required_block == 1001


async def test_target_beyond_head(history, storage):
    with pytest.raises(ProviderLagError):
        await _sync(history, storage, to_block=1500)
    assert await load_checkpoint(storage, CHAIN_ID, POOL, ACCOUNT) is None


async def test_target_behind_checkpoint_returns_stored_state(history, storage):
    first = await _sync(history, storage)
    result = await _sync(history, storage, to_block=900)
    assert result.last_synced_block == 1000
    assert result.position_ids == first.position_ids
    assert (await load_checkpoint(storage, CHAIN_ID, POOL, ACCOUNT)).last_block == 1000


# ── Test 22: Snapshot recovery ───────────────────────────────────


async def test_snapshot_recovery_skips_full_scan(chain, storage):
    t1 = tx_hash(200, salt=1)
    chain.add_logs(
        *make_pool_traffic(50, 1000),
        make_mint_log(1, block=200, tx=t1),
        make_mint_log(2, block=600),
    )
    chain.add_transaction(make_transaction(t1, input=make_dispatch_input([1]), block=200))

    result = await _sync(chain, storage)
    assert result.position_ids == {1, 2}
    assert not await storage.has(pool_meta_key(CHAIN_ID, POOL))
    meta = await get_position_meta(storage, CHAIN_ID, POOL, 1)
    assert meta.mint_block_number == 200


async def test_manual_snapshot_transaction(chain, storage):
    manual = tx_hash(500, salt=9)
    chain.add_logs(
        *make_pool_traffic(50, 1000),
        make_mint_log(1, block=100),
        make_mint_log(2, block=400),
        make_mint_log(3, block=800),
    )
    chain.add_transaction(make_transaction(manual, input=make_dispatch_input([1, 2]), block=500))

    result = await _sync(chain, storage, snapshot_tx_hash=manual)
    assert result.position_ids == {1, 2, 3}
    assert chain.transaction_calls[-1] == manual
    assert not await storage.has(pool_meta_key(CHAIN_ID, POOL))


async def test_manual_snapshot_not_a_dispatch(history, storage):
    bogus = tx_hash(500, salt=9)
    history.add_transaction(make_transaction(bogus, input="0xdeadbeef", block=500))
    with pytest.raises(PositionSnapshotNotFoundError):
        await _sync(history, storage, snapshot_tx_hash=bogus)
    assert await load_checkpoint(storage, CHAIN_ID, POOL, ACCOUNT) is None


# ── Test 23: One pass per account at a time ──────────────────────


class GatedChain(MockChain):
    def __init__(self, head: int) -> None:
        super().__init__(head)
        self.gate = asyncio.Event()

    async def get_block_number(self) -> int:
        await self.gate.wait()
        return await super().get_block_number()


async def test_overlapping_pass_rejected(storage):
    chain = GatedChain(head=1000)
    first = asyncio.create_task(_sync(chain, storage))
    await asyncio.sleep(0)

    progress: asyncio.Queue = asyncio.Queue()
    with pytest.raises(SyncInProgressError):
        await _sync(chain, storage, progress=progress)
    assert _drain(progress) == [None]

    chain.gate.set()
    assert (await first).position_ids == frozenset()
    # the slot is released once the pass ends
    assert (await _sync(chain, storage)).incremental is True


# ── Test 24: Position metadata ───────────────────────────────────


async def test_position_meta_stored_from_mint(history, storage):
    await _sync(history, storage)
    meta = await get_position_meta(storage, CHAIN_ID, POOL, 2)
    assert meta.token_id == 2
    assert meta.position_size == 1000
    assert meta.mint_block_number == 300
    assert meta.block_at_mint == 300
    assert meta.timestamp_at_mint == 1_700_000_300
    assert meta.owner.lower() == ACCOUNT.lower()

    with pytest.raises(StorageDataNotFoundError):
        await get_position_meta(storage, CHAIN_ID, POOL, 1)


# ── Test 25: Pending entries reconciled after a pass ─────────────


async def test_pending_reconciled_after_sync(history, storage):
    tracker = PendingPositionTracker(storage, CHAIN_ID, POOL, ACCOUNT)
    await tracker.add(3, tx_hash(700), 690)
    await tracker.add(99, "0x" + "ee" * 32, 10)  # long gone
    await tracker.add(42, "0x" + "ff" * 32, 995)  # not mined yet

    await _sync(history, storage)
    assert [p.token_id for p in await tracker.list_pending()] == [42]


# ── Test 26: Status and read helpers ─────────────────────────────


async def test_sync_status(history, storage):
    status = await get_sync_status(history, storage, CHAIN_ID, POOL, ACCOUNT)
    assert status.has_checkpoint is False
    assert status.blocks_behind == 1000
    assert status.position_count == 0

    await _sync(history, storage)
    history.head = 1010
    status = await get_sync_status(history, storage, CHAIN_ID, POOL, ACCOUNT)
    assert status.has_checkpoint is True
    assert status.last_synced_block == 1000
    assert status.is_synced is False
    assert status.blocks_behind == 10
    assert status.position_count == 2


async def test_tracked_positions_and_clear(history, storage):
    assert await get_tracked_position_ids(storage, CHAIN_ID, POOL, ACCOUNT) == frozenset()
    await _sync(history, storage)
    assert await get_tracked_position_ids(storage, CHAIN_ID, POOL, ACCOUNT) == {2, 3}
    assert await is_position_tracked(storage, CHAIN_ID, POOL, ACCOUNT, 3)
    assert not await is_position_tracked(storage, CHAIN_ID, POOL, ACCOUNT, 1)

    await clear_tracked_positions(storage, CHAIN_ID, POOL, ACCOUNT)
    assert await get_tracked_position_ids(storage, CHAIN_ID, POOL, ACCOUNT) == frozenset()
    # next pass starts over
    assert (await _sync(history, storage)).incremental is False


# ── Test 27: Range-limited provider ──────────────────────────────


async def test_initial_sync_with_range_limited_provider(history, storage):
    history.max_log_range = 300
    result = await _sync(history, storage)
    assert result.position_ids == {2, 3}
    # history check and snapshot search were refused, the batched scan was not
    wide = [c for c in history.get_logs_calls if c[3] - c[2] + 1 > 300]
    assert len(wide) >= 2
    assert (await get_position_meta(storage, CHAIN_ID, POOL, 3)).mint_block_number == 700
