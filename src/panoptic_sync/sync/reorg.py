"""Reorg detection against a stored checkpoint."""

from __future__ import annotations

import logging

from panoptic_sync.interfaces.chain import ChainClient
from panoptic_sync.models.sync import Checkpoint, ReorgDetection
from panoptic_sync.sync.checkpoint import REORG_DEPTH
from panoptic_sync.sync.retry import with_retry

log = logging.getLogger(__name__)


async def detect_reorg(
    client: ChainClient,
    checkpoint: Checkpoint,
    *,
    reorg_depth: int = REORG_DEPTH,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
) -> ReorgDetection:
    """Compare the checkpoint's block hash with the chain's current one.

    A block that cannot be fetched counts as divergence, same as a hash
    mismatch: either way the recorded segment is no longer trusted.
    """
    try:
        block = await with_retry(
            lambda: client.get_block(checkpoint.last_block),
            max_retries=max_retries,
            base_delay=retry_base_delay,
            description=f"get_block({checkpoint.last_block})",
        )
    except Exception as exc:
        log.warning(
            "Could not fetch checkpoint block %d (%s), treating as reorg",
            checkpoint.last_block, exc,
        )
        return ReorgDetection(
            detected=True,
            block_number=checkpoint.last_block,
            expected_hash=checkpoint.last_block_hash,
            actual_hash=None,
            blocks_to_resync=reorg_depth,
        )

    if block.hash.lower() != checkpoint.last_block_hash.lower():
        log.info(
            "Reorg detected at block %d: expected %s, chain has %s",
            checkpoint.last_block, checkpoint.last_block_hash, block.hash,
        )
        return ReorgDetection(
            detected=True,
            block_number=checkpoint.last_block,
            expected_hash=checkpoint.last_block_hash,
            actual_hash=block.hash,
            blocks_to_resync=reorg_depth,
        )

    return ReorgDetection(
        detected=False,
        block_number=checkpoint.last_block,
        expected_hash=checkpoint.last_block_hash,
        actual_hash=block.hash,
    )
