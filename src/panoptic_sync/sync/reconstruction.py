"""Position reconstruction from OptionMinted/OptionBurnt history.

The fallback when no snapshot is available and the tail scanner for
incremental passes: replays an account's mint/burn events over a block
range and folds them into open and closed position sets.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Iterable, Mapping

from panoptic_sync.chain.abi import OPTION_BURNT, OPTION_MINTED, EventSpec, address_topic, uint_topic
from panoptic_sync.errors import RangeTooLargeError
from panoptic_sync.interfaces.chain import ChainClient
from panoptic_sync.models.events import OptionMintedEvent, PositionEvent, event_key
from panoptic_sync.models.sync import PositionFold, ReconstructionResult, ScanProgress
from panoptic_sync.sync.retry import with_retry

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10_000
DEPLOYMENT_SCAN_RANGE = 10_000
MAX_WINDOW_SHRINKS = 12


def position_topics(spec: EventSpec, account: str, token_id: int | None = None) -> list:
    """Topic filter for one position event, narrowed to ``account``."""
    topics: list = [spec.topic0, address_topic(account)]
    if token_id is not None:
        topics.append(uint_topic(token_id))
    return topics


async def _fetch(
    client: ChainClient,
    spec: EventSpec,
    pool_address: str,
    account: str,
    from_block: int,
    to_block: int,
    *,
    token_id: int | None = None,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> list[PositionEvent]:
    raw_logs = await with_retry(
        lambda: client.get_logs(
            pool_address,
            topics=position_topics(spec, account, token_id),
            from_block=from_block,
            to_block=to_block,
        ),
        max_retries=max_retries,
        base_delay=retry_base_delay,
        description=f"{spec.name} logs [{from_block}, {to_block}]",
    )
    events = []
    for raw in raw_logs:
        event = spec.decode(raw)
        if event is None:
            log.warning(
                "Skipping undecodable %s log at %d:%d",
                spec.name, raw.block_number, raw.log_index,
            )
            continue
        events.append(event)
    return events


async def fetch_position_events(
    client: ChainClient,
    pool_address: str,
    account: str,
    from_block: int,
    to_block: int,
    *,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> list[PositionEvent]:
    """Mint and burn events for ``account`` in one range, in chain order."""
    mints, burns = await asyncio.gather(
        _fetch(client, OPTION_MINTED, pool_address, account, from_block, to_block,
               max_retries=max_retries, retry_base_delay=retry_base_delay),
        _fetch(client, OPTION_BURNT, pool_address, account, from_block, to_block,
               max_retries=max_retries, retry_base_delay=retry_base_delay),
    )
    return sorted([*mints, *burns], key=event_key)


def fold_position_events(
    events: Iterable[PositionEvent],
    initial_sizes: Mapping[int, int] | None = None,
) -> tuple[frozenset[int], frozenset[int]]:
    """Fold mints (+size) and burns (-size) per token id in chain order.

    ``initial_sizes`` seeds the fold with positions already held before
    the first event. Returns (opened, closed): ids whose net size ends
    > 0, and the rest.
    """
    fold = PositionFold(sizes=dict(initial_sizes or {}))
    fold.extend(events)
    return fold.opened, fold.closed


async def iter_position_batches(
    client: ChainClient,
    pool_address: str,
    account: str,
    from_block: int,
    to_block: int,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> AsyncIterator[tuple[ScanProgress, list[PositionEvent]]]:
    """Scan ``[from_block, to_block]`` in consecutive batches, one at a time.

    Yields each batch's events with the progress reached after it. The
    consumer may stop iterating between batches.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")

    found = 0
    current = from_block
    while current <= to_block:
        end = min(current + batch_size - 1, to_block)
        events = await fetch_position_events(
            client, pool_address, account, current, end,
            max_retries=max_retries, retry_base_delay=retry_base_delay,
        )
        found += len(events)
        log.debug(
            "Scanned blocks %d-%d for %s: %d events", current, end, account, len(events),
        )
        yield ScanProgress(
            from_block=from_block,
            current_block=end,
            target_block=to_block,
            events_found=found,
        ), events
        current = end + 1


async def reconstruct_from_events(
    client: ChainClient,
    pool_address: str,
    account: str,
    from_block: int,
    to_block: int,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    initial_sizes: Mapping[int, int] | None = None,
    on_progress: Callable[[ScanProgress], None] | None = None,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> ReconstructionResult:
    """Replay the account's position events over a range.

    ``initial_sizes`` is the fold's starting state (held positions and
    their sizes); untouched seeds come back in ``opened``.
    ``on_progress`` runs after every batch; raising from it aborts the
    scan before the next batch is requested.
    """
    events: list[PositionEvent] = []
    async for progress, batch in iter_position_batches(
        client, pool_address, account, from_block, to_block,
        batch_size=batch_size, max_retries=max_retries, retry_base_delay=retry_base_delay,
    ):
        events.extend(batch)
        if on_progress is not None:
            on_progress(progress)

    events.sort(key=event_key)
    opened, closed = fold_position_events(events, initial_sizes)

    mints: dict[int, OptionMintedEvent] = {}
    for event in events:
        if isinstance(event, OptionMintedEvent):
            mints.setdefault(event.token_id, event)

    block = await with_retry(
        lambda: client.get_block(to_block),
        max_retries=max_retries,
        base_delay=retry_base_delay,
        description=f"get_block({to_block})",
    )

    log.info(
        "Reconstructed %s over blocks %d-%d: %d open, %d closed",
        account, from_block, to_block, len(opened), len(closed),
    )
    return ReconstructionResult(
        opened=opened,
        closed=closed,
        last_block=to_block,
        last_block_hash=block.hash,
        blocks_scanned=max(0, to_block - from_block + 1),
        mints=mints,
    )


async def account_has_position_events(
    client: ChainClient,
    pool_address: str,
    account: str,
    from_block: int,
    to_block: int,
    *,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> bool:
    """Whether the account ever minted or burnt in this pool.

    One indexed query per event type over the whole range.
    """
    for spec in (OPTION_MINTED, OPTION_BURNT):
        logs = await with_retry(
            lambda spec=spec: client.get_logs(
                pool_address,
                topics=position_topics(spec, account),
                from_block=from_block,
                to_block=to_block,
            ),
            max_retries=max_retries,
            base_delay=retry_base_delay,
            description=f"{spec.name} probe",
        )
        if logs:
            return True
    return False


async def find_mint_event(
    client: ChainClient,
    pool_address: str,
    account: str,
    token_id: int,
    to_block: int,
    *,
    from_block: int = 0,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> OptionMintedEvent | None:
    """Earliest mint of ``token_id`` by ``account``, via a token-filtered query."""
    mints = await _fetch(
        client, OPTION_MINTED, pool_address, account, from_block, to_block,
        token_id=token_id, max_retries=max_retries, retry_base_delay=retry_base_delay,
    )
    if not mints:
        return None
    return min(mints, key=event_key)


async def find_deployment_block(
    client: ChainClient,
    address: str,
    *,
    latest_block: int | None = None,
    scan_range: int = DEPLOYMENT_SCAN_RANGE,
    max_shrinks: int = MAX_WINDOW_SHRINKS,
) -> int | None:
    """Earliest block with a log from ``address``, by windowed binary search.

    Probes a window at the midpoint of the remaining range. A hit narrows
    the search to below the earliest log found; a miss discards the whole
    window. When the provider refuses a window it is halved, at most
    ``max_shrinks`` times, after which the error propagates.
    """
    if latest_block is None:
        latest_block = await client.get_block_number()

    low, high = 0, latest_block
    window = scan_range
    shrinks = 0
    found: int | None = None

    while low <= high:
        mid = (low + high) // 2
        range_end = min(mid + window, high)
        try:
            logs = await client.get_logs(address, from_block=mid, to_block=range_end)
        except RangeTooLargeError:
            shrinks += 1
            if shrinks > max_shrinks or window <= 1:
                raise
            window = max(1, window // 2)
            log.debug("Deployment probe refused, shrinking window to %d blocks", window)
            continue

        if logs:
            earliest = min(entry.block_number for entry in logs)
            found = earliest if found is None else min(found, earliest)
            high = earliest - 1
        else:
            low = range_end + 1

    if found is not None:
        log.info("Contract %s first emitted at block %d", address, found)
    else:
        log.warning("No logs found for %s up to block %d", address, latest_block)
    return found
