"""Event ordering cursor shared by the live feeds."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from panoptic_sync.models.events import ContractEvent, event_key


@dataclass(frozen=True, order=True)
class Cursor:
    """(block_number, log_index) watermark of the last delivered event.

    (0, -1) means nothing seen; (head, -1) means "everything before head".
    """

    block_number: int = 0
    log_index: int = -1

    @classmethod
    def at_block(cls, block_number: int) -> Cursor:
        return cls(block_number, -1)

    @property
    def key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def precedes(self, event: ContractEvent) -> bool:
        """True if ``event`` is strictly after this cursor."""
        return event_key(event) > self.key

    def advanced_to(self, event: ContractEvent) -> Cursor:
        if not self.precedes(event):
            return self
        return Cursor(event.block_number, event.log_index)


def sort_events(events: Iterable[ContractEvent]) -> list[ContractEvent]:
    return sorted(events, key=event_key)


def events_after(events: Iterable[ContractEvent], cursor: Cursor) -> list[ContractEvent]:
    """Events strictly after ``cursor``, deduplicated by key and sorted."""
    unique: dict[tuple[int, int], ContractEvent] = {}
    for event in events:
        if cursor.precedes(event):
            unique.setdefault(event_key(event), event)
    return [unique[k] for k in sorted(unique)]
