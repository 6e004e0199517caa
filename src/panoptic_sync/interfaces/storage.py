"""StorageAdapter protocol - async key-value persistence."""

from __future__ import annotations

from typing import Protocol


class StorageAdapter(Protocol):
    """String-keyed store of JSON-serializable values."""

    async def initialize(self) -> None:
        """Open connections and create tables. Called once before use."""
        ...

    async def close(self) -> None:
        ...

    async def get(self, key: str) -> object | None:
        """Value for ``key``, or None if absent."""
        ...

    async def set(self, key: str, value: object) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def has(self, key: str) -> bool:
        ...

    async def keys(self, prefix: str = "") -> list[str]:
        """All keys starting with ``prefix``, sorted."""
        ...

    async def clear(self, prefix: str = "") -> int:
        """Delete every key starting with ``prefix``. Returns the count removed."""
        ...
