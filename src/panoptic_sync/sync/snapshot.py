"""Snapshot recovery from dispatch calldata.

``dispatch`` and ``dispatchFrom`` carry the caller's complete final
position list, so the most recent such transaction gives the whole open
set in a handful of RPC calls instead of a historical scan.
"""

from __future__ import annotations

import logging

from panoptic_sync.chain.abi import OPTION_BURNT, OPTION_MINTED, DispatchCall, decode_dispatch_calldata
from panoptic_sync.errors import PositionSnapshotNotFoundError
from panoptic_sync.interfaces.chain import ChainClient
from panoptic_sync.models.chain import TransactionInfo
from panoptic_sync.models.sync import Snapshot
from panoptic_sync.sync.reconstruction import position_topics
from panoptic_sync.sync.retry import with_retry

log = logging.getLogger(__name__)

# Newest transactions inspected before giving up on recovery
MAX_CANDIDATE_TRANSACTIONS = 25


def _same_address(a: str | None, b: str) -> bool:
    return a is not None and a.lower() == b.lower()


def snapshot_call_for(
    tx: TransactionInfo, pool_address: str, account: str,
) -> DispatchCall | None:
    """Decoded dispatch call if ``tx`` defines ``account``'s positions in ``pool_address``."""
    if tx.to is not None and not _same_address(tx.to, pool_address):
        return None
    call = decode_dispatch_calldata(tx.input)
    if call is None:
        return None
    if call.account is None:
        # dispatch acts on msg.sender
        return call if _same_address(tx.sender, account) else None
    return call if _same_address(call.account, account) else None


async def recover_snapshot(
    client: ChainClient,
    pool_address: str,
    account: str,
    to_block: int,
    *,
    from_block: int = 0,
    max_candidates: int = MAX_CANDIDATE_TRANSACTIONS,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> Snapshot | None:
    """Most recent decodable dispatch snapshot for ``account``, or None.

    Candidates are the transactions behind the account's mint/burn logs,
    newest first. Foreign or malformed calldata is skipped, never raised.
    """
    raw_logs = []
    for spec in (OPTION_MINTED, OPTION_BURNT):
        raw_logs.extend(await with_retry(
            lambda spec=spec: client.get_logs(
                pool_address,
                topics=position_topics(spec, account),
                from_block=from_block,
                to_block=to_block,
            ),
            max_retries=max_retries,
            base_delay=retry_base_delay,
            description=f"{spec.name} snapshot candidates",
        ))

    raw_logs.sort(key=lambda r: (r.block_number, r.log_index), reverse=True)

    seen: set[str] = set()
    for raw in raw_logs:
        tx_hash = raw.transaction_hash.lower()
        if tx_hash in seen:
            continue
        seen.add(tx_hash)
        if len(seen) > max_candidates:
            log.info(
                "No dispatch snapshot among the newest %d transactions of %s",
                max_candidates, account,
            )
            return None

        try:
            tx = await with_retry(
                lambda: client.get_transaction(raw.transaction_hash),
                max_retries=max_retries,
                base_delay=retry_base_delay,
                description=f"get_transaction({raw.transaction_hash})",
            )
        except Exception as exc:
            # an older snapshot is still correct, the tail scan covers the rest
            log.warning("Skipping snapshot candidate %s: %s", raw.transaction_hash, exc)
            continue
        if tx is None:
            continue

        call = snapshot_call_for(tx, pool_address, account)
        if call is None:
            log.debug("Transaction %s is not a dispatch for %s", raw.transaction_hash, account)
            continue

        log.info(
            "Recovered %d positions for %s from %s at block %d",
            len(call.position_ids), account, call.function, raw.block_number,
        )
        return Snapshot(
            block_number=raw.block_number,
            position_ids=frozenset(call.position_ids),
            tx_hash=raw.transaction_hash,
        )

    return None


async def snapshot_from_transaction(
    client: ChainClient,
    pool_address: str,
    account: str,
    tx_hash: str,
) -> Snapshot:
    """Decode a caller-chosen dispatch transaction into a snapshot.

    Raises PositionSnapshotNotFoundError if the transaction is unknown,
    unmined, or not a dispatch for this account and pool.
    """
    tx = await client.get_transaction(tx_hash)
    if tx is None or tx.block_number is None:
        raise PositionSnapshotNotFoundError(tx_hash)
    call = snapshot_call_for(tx, pool_address, account)
    if call is None:
        raise PositionSnapshotNotFoundError(tx_hash)
    log.info("Using manual snapshot %s: %d positions", tx_hash, len(call.position_ids))
    return Snapshot(
        block_number=tx.block_number,
        position_ids=frozenset(call.position_ids),
        tx_hash=tx_hash,
    )
