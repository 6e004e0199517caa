"""Watch targets: one (contract, event type) pair per log filter."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

from panoptic_sync.chain.abi import COLLATERAL_EVENTS, POOL_EVENTS, EventSpec
from panoptic_sync.events.ordering import sort_events
from panoptic_sync.interfaces.chain import ChainClient
from panoptic_sync.models.chain import RawLog
from panoptic_sync.models.events import ContractEvent
from panoptic_sync.sync.retry import with_retry

log = logging.getLogger(__name__)

ALL_EVENT_TYPES = (*POOL_EVENTS, *COLLATERAL_EVENTS)


@dataclass(frozen=True)
class WatchTarget:
    address: str
    spec: EventSpec

    @property
    def topics(self) -> list[str]:
        return [self.spec.topic0]

    def decode(self, raw_logs: Iterable[RawLog]) -> list[ContractEvent]:
        events = []
        for raw in raw_logs:
            event = self.spec.decode(raw)
            if event is None:
                log.debug(
                    "Dropping undecodable %s log at %d:%d",
                    self.spec.name, raw.block_number, raw.log_index,
                )
                continue
            events.append(event)
        return events


def build_watch_targets(
    pool_address: str,
    collateral_trackers: Sequence[str] = (),
    event_types: Iterable[str] | None = None,
) -> list[WatchTarget]:
    """Targets for the requested event types (all known types if None).

    Pool events are watched on the pool; Deposit/Withdraw on every
    collateral tracker given. Raises ValueError on an unknown type.
    """
    wanted = list(ALL_EVENT_TYPES if event_types is None else event_types)
    unknown = [t for t in wanted if t not in POOL_EVENTS and t not in COLLATERAL_EVENTS]
    if unknown:
        raise ValueError(f"Unknown event types: {', '.join(unknown)}")

    targets = [WatchTarget(pool_address, POOL_EVENTS[t]) for t in wanted if t in POOL_EVENTS]
    for tracker in collateral_trackers:
        if not tracker:
            continue
        targets.extend(
            WatchTarget(tracker, COLLATERAL_EVENTS[t]) for t in wanted if t in COLLATERAL_EVENTS
        )
    return targets


async def fetch_target_events(
    client: ChainClient,
    targets: Sequence[WatchTarget],
    from_block: int,
    to_block: int,
    *,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> list[ContractEvent]:
    """All targets' events in ``[from_block, to_block]``, in chain order.

    Transient failures are retried; anything else propagates so the
    caller can retry the whole range rather than skip it.
    """
    events: list[ContractEvent] = []
    for target in targets:
        raw_logs = await with_retry(
            lambda target=target: client.get_logs(
                target.address,
                topics=target.topics,
                from_block=from_block,
                to_block=to_block,
            ),
            max_retries=max_retries,
            base_delay=retry_base_delay,
            description=f"{target.spec.name} logs [{from_block}, {to_block}]",
        )
        events.extend(target.decode(raw_logs))
    return sort_events(events)
