"""CLI entry point for panoptic_sync."""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from panoptic_sync.config import load_config
from panoptic_sync.daemon import build_client, run_daemon
from panoptic_sync.errors import PanopticSyncError
from panoptic_sync.events import create_event_poller, create_event_subscription
from panoptic_sync.events.channel import Connected, EventBatch, FeedError, Reconnecting
from panoptic_sync.models.config import FeedMode, SyncConfig
from panoptic_sync.models.sync import ProgressKind
from panoptic_sync.storage.sqlite import SQLiteStorage
from panoptic_sync.sync.orchestrator import (
    clear_tracked_positions,
    get_position_meta,
    get_sync_status,
    get_tracked_position_ids,
    sync_positions,
)
from panoptic_sync.sync.pending import PendingPositionTracker


def _require_pool(cfg: SyncConfig) -> None:
    """Exit with error if no pool/account is configured."""
    if not cfg.pool_address or not cfg.account:
        click.echo("Error: pool address and account must be configured.", err=True)
        click.echo(
            "Set PANOPTIC_SYNC_POOL_ADDRESS / PANOPTIC_SYNC_ACCOUNT or [pool] in config.",
            err=True,
        )
        sys.exit(1)


def _fail(exc: Exception) -> None:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


@click.group()
@click.option("-c", "--config", "config_path", default=None, help="Path to config TOML file")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """panoptic_sync - Panoptic position sync and event feed."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Daemon ─────────────────────────────────────────────


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the sync daemon."""
    cfg = load_config(ctx.obj["config_path"])
    _require_pool(cfg)

    click.echo(f"Starting panoptic_sync daemon (feed: {cfg.feed.value})")
    asyncio.run(run_daemon(cfg))


# ── Sync ───────────────────────────────────────────────


@cli.command()
@click.option("--from-block", type=int, default=None, help="Start block for a first sync")
@click.option("--to-block", type=int, default=None, help="Sync up to this block (default: head)")
@click.option("--snapshot-tx", default=None, help="dispatch tx to use if no snapshot is found")
@click.pass_context
def sync(
    ctx: click.Context,
    from_block: int | None,
    to_block: int | None,
    snapshot_tx: str | None,
) -> None:
    """Run one sync pass for the configured account."""
    cfg = load_config(ctx.obj["config_path"])
    _require_pool(cfg)

    async def _sync():
        client = build_client(cfg)
        storage = SQLiteStorage(cfg.db_path)
        await storage.initialize()
        progress: asyncio.Queue = asyncio.Queue()
        try:
            result = await sync_positions(
                client, storage, cfg.chain_id, cfg.pool_address, cfg.account,
                from_block=from_block if from_block is not None else cfg.start_block,
                to_block=to_block,
                batch_size=cfg.batch_size,
                sync_timeout=cfg.sync_timeout,
                min_block_number=cfg.min_block_number,
                snapshot_tx_hash=snapshot_tx,
                reorg_depth=cfg.reorg_depth,
                max_retries=cfg.max_retries,
                progress=progress,
                pending_max_age_blocks=cfg.pending_max_age_blocks,
            )
        finally:
            await client.close()
            await storage.close()

        while (event := progress.get_nowait()) is not None:
            if event.kind == ProgressKind.POSITION_OPENED:
                click.echo(f"  + {event.token_id}")
            elif event.kind == ProgressKind.POSITION_CLOSED:
                click.echo(f"  - {event.token_id}")
            elif event.kind == ProgressKind.REORG_DETECTED:
                click.echo(f"  reorg detected at block {event.block_number}")

        click.echo(f"Synced to:   {result.last_synced_block} ({result.last_synced_block_hash})")
        click.echo(f"Positions:   {result.position_count}")
        click.echo(f"Incremental: {result.incremental}")
        click.echo(f"Duration:    {result.duration_ms}ms")

    try:
        asyncio.run(_sync())
    except PanopticSyncError as exc:
        _fail(exc)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show configuration and how far the checkpoint is behind the chain."""
    cfg = load_config(ctx.obj["config_path"])
    click.echo(f"Chain ID:   {cfg.chain_id}")
    click.echo(f"RPC URL:    {cfg.rpc_url}")
    click.echo(f"WS URL:     {cfg.ws_url or '(not set)'}")
    click.echo(f"Pool:       {cfg.pool_address or '(not set)'}")
    click.echo(f"Account:    {cfg.account or '(not set)'}")
    click.echo(f"Feed:       {cfg.feed.value}")
    click.echo(f"DB path:    {cfg.db_path}")
    if not cfg.pool_address or not cfg.account:
        return

    async def _status():
        client = build_client(cfg)
        storage = SQLiteStorage(cfg.db_path)
        await storage.initialize()
        try:
            st = await get_sync_status(client, storage, cfg.chain_id, cfg.pool_address, cfg.account)
        finally:
            await client.close()
            await storage.close()

        click.echo("")
        if not st.has_checkpoint:
            click.echo("Checkpoint: NONE (run 'panoptic-sync sync')")
            return
        click.echo(f"Checkpoint: block {st.last_synced_block}")
        click.echo(f"  Synced:         {st.is_synced}")
        click.echo(f"  Blocks behind:  {st.blocks_behind}")
        click.echo(f"  Positions:      {st.position_count}")

    try:
        asyncio.run(_status())
    except PanopticSyncError as exc:
        _fail(exc)


@cli.command()
@click.option("--meta", is_flag=True, help="Include stored mint metadata")
@click.pass_context
def positions(ctx: click.Context, meta: bool) -> None:
    """List tracked position ids from the last sync (no RPC calls)."""
    cfg = load_config(ctx.obj["config_path"])
    _require_pool(cfg)

    async def _positions():
        storage = SQLiteStorage(cfg.db_path)
        await storage.initialize()
        try:
            ids = await get_tracked_position_ids(
                storage, cfg.chain_id, cfg.pool_address, cfg.account,
            )
            if not ids:
                click.echo("No tracked positions.")
                return

            for token_id in sorted(ids):
                if not meta:
                    click.echo(f"  {token_id}")
                    continue
                try:
                    m = await get_position_meta(storage, cfg.chain_id, cfg.pool_address, token_id)
                except PanopticSyncError:
                    click.echo(f"  {token_id}  (no metadata)")
                    continue
                click.echo(f"  {token_id}  size={m.position_size} tick={m.tick_at_mint} "
                           f"minted_at={m.mint_block_number} tx={m.mint_tx_hash[:18]}...")
        finally:
            await storage.close()

    asyncio.run(_positions())


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def clear(ctx: click.Context, yes: bool) -> None:
    """Forget the checkpoint so the next sync starts from scratch."""
    cfg = load_config(ctx.obj["config_path"])
    _require_pool(cfg)

    if not yes:
        click.confirm(f"Clear tracked positions for {cfg.account}?", abort=True)

    async def _clear():
        storage = SQLiteStorage(cfg.db_path)
        await storage.initialize()
        try:
            await clear_tracked_positions(storage, cfg.chain_id, cfg.pool_address, cfg.account)
        finally:
            await storage.close()

    asyncio.run(_clear())
    click.echo("Cleared.")


# ── Events ─────────────────────────────────────────────


@cli.command()
@click.option(
    "--feed", "feed_name", type=click.Choice([FeedMode.SUBSCRIPTION.value, FeedMode.POLLER.value]),
    default=None, help="Override the configured feed",
)
@click.option("--event-type", "event_types", multiple=True, help="Event type to watch (repeatable)")
@click.pass_context
def watch(ctx: click.Context, feed_name: str | None, event_types: tuple[str, ...]) -> None:
    """Print live pool events until interrupted."""
    cfg = load_config(ctx.obj["config_path"])
    if not cfg.pool_address:
        click.echo("Error: pool address must be configured.", err=True)
        sys.exit(1)
    if feed_name:
        cfg.feed = FeedMode(feed_name)
    types = list(event_types) or None
    trackers = [t for t in (cfg.collateral_tracker0, cfg.collateral_tracker1) if t]

    async def _watch():
        client = build_client(cfg)
        if cfg.feed == FeedMode.POLLER:
            feed = create_event_poller(
                client, cfg.pool_address,
                collateral_trackers=trackers, event_types=types,
                interval=cfg.poll_interval, max_block_range=cfg.max_block_range,
            )
        else:
            feed = create_event_subscription(
                client, cfg.pool_address,
                collateral_trackers=trackers, event_types=types, reconnect=cfg.reconnect,
            )
        await feed.start()
        try:
            async for message in feed.messages():
                if isinstance(message, EventBatch):
                    for event in message.events:
                        tag = " (gap fill)" if message.gap_fill else ""
                        click.echo(f"[{event.block_number}:{event.log_index}] "
                                   f"{type(event).__name__}{tag} tx={event.transaction_hash}")
                elif isinstance(message, Connected):
                    click.echo(f"Connected at block {message.block_number}")
                elif isinstance(message, Reconnecting):
                    click.echo(f"Reconnecting (attempt {message.attempt}) in {message.delay:.1f}s")
                elif isinstance(message, FeedError):
                    click.echo(f"Error: {message.error}", err=True)
                    if message.terminal:
                        break
        finally:
            await feed.stop()
            await client.close()

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        pass
    except ValueError as exc:
        _fail(exc)


# ── Pending positions ──────────────────────────────────


@cli.group()
def pending():
    """Optimistic tracking of submitted, unconfirmed positions."""
    pass


def _tracker(cfg: SyncConfig, storage: SQLiteStorage) -> PendingPositionTracker:
    return PendingPositionTracker(storage, cfg.chain_id, cfg.pool_address, cfg.account)


@pending.command("list")
@click.pass_context
def pending_list(ctx: click.Context) -> None:
    """List pending positions."""
    cfg = load_config(ctx.obj["config_path"])
    _require_pool(cfg)

    async def _list():
        storage = SQLiteStorage(cfg.db_path)
        await storage.initialize()
        try:
            entries = await _tracker(cfg, storage).list_pending()
            if not entries:
                click.echo("No pending positions.")
                return
            for p in entries:
                click.echo(f"  {p.token_id}  tx={p.tx_hash[:18]}... "
                           f"block={p.submitted_at_block} size={p.position_size}")
        finally:
            await storage.close()

    asyncio.run(_list())


@pending.command("add")
@click.argument("token_id", type=int)
@click.argument("tx_hash")
@click.argument("block", type=int)
@click.option("--size", type=int, default=0, help="Position size submitted")
@click.pass_context
def pending_add(ctx: click.Context, token_id: int, tx_hash: str, block: int, size: int) -> None:
    """Record a submitted position until a sync confirms it."""
    cfg = load_config(ctx.obj["config_path"])
    _require_pool(cfg)

    async def _add():
        storage = SQLiteStorage(cfg.db_path)
        await storage.initialize()
        try:
            await _tracker(cfg, storage).add(token_id, tx_hash, block, position_size=size)
        finally:
            await storage.close()

    asyncio.run(_add())
    click.echo(f"Tracking {token_id} as pending.")


@pending.command("fail")
@click.argument("tx_hash")
@click.pass_context
def pending_fail(ctx: click.Context, tx_hash: str) -> None:
    """Drop the pending positions of a reverted transaction."""
    cfg = load_config(ctx.obj["config_path"])
    _require_pool(cfg)

    async def _fail_tx():
        storage = SQLiteStorage(cfg.db_path)
        await storage.initialize()
        try:
            return await _tracker(cfg, storage).fail(tx_hash)
        finally:
            await storage.close()

    failed = asyncio.run(_fail_tx())
    click.echo(f"Marked {len(failed)} positions failed.")


@pending.command("cleanup")
@click.option("--current-block", type=int, default=None, help="Reference block (default: head)")
@click.option("--max-age", type=int, default=None, help="Max age in blocks")
@click.pass_context
def pending_cleanup(ctx: click.Context, current_block: int | None, max_age: int | None) -> None:
    """Prune pending positions older than the max age."""
    cfg = load_config(ctx.obj["config_path"])
    _require_pool(cfg)

    async def _cleanup():
        storage = SQLiteStorage(cfg.db_path)
        await storage.initialize()
        try:
            block = current_block
            if block is None:
                client = build_client(cfg)
                try:
                    block = await client.get_block_number()
                finally:
                    await client.close()
            return await _tracker(cfg, storage).cleanup_stale(
                block, max_age if max_age is not None else cfg.pending_max_age_blocks,
            )
        finally:
            await storage.close()

    stale = asyncio.run(_cleanup())
    click.echo(f"Pruned {len(stale)} stale positions.")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
