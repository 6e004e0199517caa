"""ChainClient protocol - the JSON-RPC surface the sync engine consumes."""

from __future__ import annotations

from typing import Callable, Protocol, Sequence, Union

from panoptic_sync.models.chain import BlockInfo, RawLog, TransactionInfo

# One entry per topic position: a topic, any of several topics, or a wildcard.
TopicFilter = Sequence[Union[str, Sequence[str], None]]

LogsCallback = Callable[[list[RawLog]], None]
ErrorCallback = Callable[[Exception], None]


class LogWatch(Protocol):
    """Handle for one registered push watch."""

    async def unwatch(self) -> None:
        """Stop delivery. Safe to call more than once."""
        ...


class ChainClient(Protocol):
    """Reads blocks, transactions and logs from one EVM chain."""

    async def get_block_number(self) -> int:
        """Current chain head."""
        ...

    async def get_block(self, block_number: int) -> BlockInfo:
        """Block header at a height. Raises BlockNotFoundError if absent."""
        ...

    async def get_transaction(self, tx_hash: str) -> TransactionInfo | None:
        """Transaction by hash, or None if the node does not know it."""
        ...

    async def get_logs(
        self,
        address: str,
        *,
        topics: TopicFilter | None = None,
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        """Logs emitted by ``address`` in the inclusive block range.

        Raises RangeTooLargeError when the provider refuses the range.
        """
        ...

    async def watch_logs(
        self,
        address: str,
        *,
        topics: TopicFilter | None,
        on_logs: LogsCallback,
        on_error: ErrorCallback,
    ) -> LogWatch:
        """Register a push watch. ``on_logs`` gets one list per notification."""
        ...

    async def close(self) -> None:
        ...
