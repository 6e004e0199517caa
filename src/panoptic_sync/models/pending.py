"""Optimistic records for submitted-but-unconfirmed positions."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum


class PendingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"  # mint observed by a sync pass
    FAILED = "failed"  # reverted or explicitly marked


@dataclass(frozen=True)
class PendingPosition:
    """A position write the caller submitted and is waiting to see on chain.

    Advisory only: the checkpoint remains the source of truth.
    """

    token_id: int
    tx_hash: str
    submitted_at_block: int
    submitted_at: int  # unix seconds
    position_size: int = 0
    status: PendingStatus = PendingStatus.PENDING

    def with_status(self, status: PendingStatus) -> PendingPosition:
        return replace(self, status=status)

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "tx_hash": self.tx_hash,
            "submitted_at_block": self.submitted_at_block,
            "submitted_at": self.submitted_at,
            "position_size": self.position_size,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PendingPosition:
        return cls(
            token_id=int(d["token_id"]),
            tx_hash=d["tx_hash"],
            submitted_at_block=int(d["submitted_at_block"]),
            submitted_at=int(d["submitted_at"]),
            position_size=int(d.get("position_size", 0)),
            status=PendingStatus(d.get("status", "pending")),
        )


@dataclass(frozen=True)
class ReconcileReport:
    """Outcome of reconciling pending entries against a finished sync pass."""

    confirmed: tuple[PendingPosition, ...] = ()
    stale: tuple[PendingPosition, ...] = ()
    remaining: int = 0
