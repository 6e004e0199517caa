"""In-process StorageAdapter. State is lost when the process exits."""

from __future__ import annotations

import copy


class MemoryStorage:
    """Dict-backed implementation of the StorageAdapter protocol.

    Values are deep-copied on the way in and out so callers can never
    mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._data: dict[str, object] = {}

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def get(self, key: str) -> object | None:
        value = self._data.get(key)
        return copy.deepcopy(value)

    async def set(self, key: str, value: object) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def has(self, key: str) -> bool:
        return key in self._data

    async def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))

    async def clear(self, prefix: str = "") -> int:
        doomed = [k for k in self._data if k.startswith(prefix)]
        for k in doomed:
            del self._data[k]
        return len(doomed)
