"""Error taxonomy for position sync and event delivery."""

from __future__ import annotations


class PanopticSyncError(Exception):
    """Base class for every error raised by panoptic_sync."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        if cause is not None:
            self.__cause__ = cause


# ── Sync ──────────────────────────────────────────────────


class ProviderLagError(PanopticSyncError):
    """The RPC provider's head is behind a block the caller requires."""

    def __init__(self, provider_block: int, required_block: int) -> None:
        super().__init__(
            f"Provider is at block {provider_block}, "
            f"behind required block {required_block}"
        )
        self.provider_block = provider_block
        self.required_block = required_block


class SyncTimeoutError(PanopticSyncError):
    """A sync pass ran past its wall-clock budget between two batches.

    ``last_processed_block`` is the last block whose events were fully
    fetched. The checkpoint is untouched; the scan state up to that block
    is saved and the next pass for the account continues after it.
    """

    def __init__(
        self,
        elapsed_ms: int,
        blocks_processed: int,
        blocks_remaining: int,
        last_processed_block: int,
    ) -> None:
        super().__init__(
            f"Sync timed out after {elapsed_ms}ms: "
            f"{blocks_processed} blocks processed, {blocks_remaining} remaining "
            f"(last processed block {last_processed_block})"
        )
        self.elapsed_ms = elapsed_ms
        self.blocks_processed = blocks_processed
        self.blocks_remaining = blocks_remaining
        self.last_processed_block = last_processed_block


class PositionSnapshotNotFoundError(PanopticSyncError):
    """A caller-supplied snapshot transaction could not be decoded."""

    def __init__(self, tx_hash: str, cause: BaseException | None = None) -> None:
        super().__init__(f"No usable position snapshot in transaction {tx_hash}", cause)
        self.tx_hash = tx_hash


class SyncInProgressError(PanopticSyncError):
    """Another sync pass for the same (chain, pool, account) is running."""

    def __init__(self, key: str) -> None:
        super().__init__(f"A sync pass is already running for {key}")
        self.key = key


# ── Storage ───────────────────────────────────────────────


class StorageDataNotFoundError(PanopticSyncError):
    """A persisted value that must exist is missing."""

    def __init__(self, data_type: str, key: str) -> None:
        super().__init__(f"{data_type} not found in storage (key: {key})")
        self.data_type = data_type
        self.key = key


# ── Chain transport ───────────────────────────────────────


class RpcError(PanopticSyncError):
    """A JSON-RPC error object returned by the node."""

    def __init__(self, code: int | None, message: str, data: object = None) -> None:
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.rpc_message = message
        self.data = data


class RangeTooLargeError(RpcError):
    """The provider refused a log query because the range or result set is too big."""


class BlockNotFoundError(PanopticSyncError):
    """The node has no block at the requested height."""

    def __init__(self, block_number: int) -> None:
        super().__init__(f"Block {block_number} not found")
        self.block_number = block_number


class MaxReconnectAttemptsError(PanopticSyncError):
    """A subscription gave up reconnecting. Call ``start()`` again to resume."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Max reconnection attempts ({attempts}) exceeded")
        self.attempts = attempts
