"""Live event feeds: resilient subscription and polling fetcher."""

from __future__ import annotations

from typing import Iterable, Sequence

from panoptic_sync.events.channel import (
    Connected,
    EventBatch,
    FeedChannel,
    FeedError,
    FeedMessage,
    Reconnecting,
)
from panoptic_sync.events.ordering import Cursor, events_after, sort_events
from panoptic_sync.events.poller import EventPoller
from panoptic_sync.events.subscription import EventSubscription, ReconnectState
from panoptic_sync.events.targets import WatchTarget, build_watch_targets, fetch_target_events
from panoptic_sync.interfaces.chain import ChainClient
from panoptic_sync.models.config import ReconnectConfig


def create_event_subscription(
    client: ChainClient,
    pool_address: str,
    *,
    collateral_trackers: Sequence[str] = (),
    event_types: Iterable[str] | None = None,
    reconnect: ReconnectConfig | None = None,
    max_retries: int = 3,
) -> EventSubscription:
    """Subscription over the pool (and collateral trackers). Call ``start()`` to run."""
    targets = build_watch_targets(pool_address, collateral_trackers, event_types)
    return EventSubscription(client, targets, reconnect=reconnect, max_retries=max_retries)


def create_event_poller(
    client: ChainClient,
    pool_address: str,
    *,
    collateral_trackers: Sequence[str] = (),
    event_types: Iterable[str] | None = None,
    interval: float = 12.0,
    max_block_range: int = 1000,
    from_block: int | None = None,
    max_retries: int = 3,
) -> EventPoller:
    targets = build_watch_targets(pool_address, collateral_trackers, event_types)
    return EventPoller(
        client, targets,
        interval=interval,
        max_block_range=max_block_range,
        from_block=from_block,
        max_retries=max_retries,
    )


__all__ = [
    "Connected",
    "Cursor",
    "EventBatch",
    "EventPoller",
    "EventSubscription",
    "FeedChannel",
    "FeedError",
    "FeedMessage",
    "ReconnectState",
    "Reconnecting",
    "WatchTarget",
    "build_watch_targets",
    "create_event_poller",
    "create_event_subscription",
    "events_after",
    "fetch_target_events",
    "sort_events",
]
