"""Records produced and persisted by the position sync engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from panoptic_sync.models.events import OptionMintedEvent, PositionEvent, event_key


@dataclass(frozen=True)
class ClosedPosition:
    """A position whose net size dropped to zero inside the reorg window.

    Kept with the checkpoint so a rescan that rolls back past
    ``closed_at_block`` can hold the position again until it replays the
    burn, or finds the burn orphaned.
    """

    token_id: int
    position_size: int  # held just before the closing burn
    minted_at_block: int  # 0 when the mint was never seen
    closed_at_block: int

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "position_size": self.position_size,
            "minted_at_block": self.minted_at_block,
            "closed_at_block": self.closed_at_block,
        }

    @classmethod
    def from_dict(cls, d: dict) -> ClosedPosition:
        return cls(
            token_id=int(d["token_id"]),
            position_size=int(d["position_size"]),
            minted_at_block=int(d["minted_at_block"]),
            closed_at_block=int(d["closed_at_block"]),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Last trusted sync state for one (chain, pool, account).

    ``last_block_hash`` must still be the canonical hash of ``last_block``
    for the checkpoint to be trusted; a mismatch means a reorg.
    """

    chain_id: int
    pool_address: str
    account: str
    last_block: int
    last_block_hash: str
    position_ids: frozenset[int]
    created_at: int  # unix seconds
    closed_positions: tuple[ClosedPosition, ...] = ()

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "pool_address": self.pool_address,
            "account": self.account,
            "last_block": self.last_block,
            "last_block_hash": self.last_block_hash,
            "position_ids": sorted(self.position_ids),
            "created_at": self.created_at,
            "closed_positions": [c.to_dict() for c in self.closed_positions],
        }

    @classmethod
    def from_dict(cls, d: dict) -> Checkpoint:
        return cls(
            chain_id=int(d["chain_id"]),
            pool_address=d["pool_address"],
            account=d["account"],
            last_block=int(d["last_block"]),
            last_block_hash=d["last_block_hash"],
            position_ids=frozenset(int(t) for t in d["position_ids"]),
            created_at=int(d["created_at"]),
            closed_positions=tuple(
                ClosedPosition.from_dict(c) for c in d.get("closed_positions", [])
            ),
        )


def _int_map(d: dict) -> dict[int, int]:
    return {int(k): int(v) for k, v in d.items()}


def _str_map(d: dict[int, int]) -> dict[str, int]:
    return {str(k): v for k, v in sorted(d.items())}


@dataclass
class PositionFold:
    """Running fold of mints (+size) and burns (-size) per token id.

    Events must be applied in chain order. For tokens whose net size last
    fell to zero or below, ``closed_at`` and ``closed_size`` hold the block
    of that burn and the size held just before it.
    """

    sizes: dict[int, int] = field(default_factory=dict)
    minted_at: dict[int, int] = field(default_factory=dict)
    closed_at: dict[int, int] = field(default_factory=dict)
    closed_size: dict[int, int] = field(default_factory=dict)

    def apply(self, event: PositionEvent) -> None:
        token_id = event.token_id
        held = self.sizes.get(token_id, 0)
        if isinstance(event, OptionMintedEvent):
            self.minted_at.setdefault(token_id, event.block_number)
            net = held + event.position_size
        else:
            net = held - event.position_size
        self.sizes[token_id] = net

        if net > 0:
            self.closed_at.pop(token_id, None)
            self.closed_size.pop(token_id, None)
        elif held > 0:
            self.closed_at[token_id] = event.block_number
            self.closed_size[token_id] = held

    def extend(self, events: Iterable[PositionEvent]) -> None:
        for event in sorted(events, key=event_key):
            self.apply(event)

    @property
    def opened(self) -> frozenset[int]:
        return frozenset(t for t, size in self.sizes.items() if size > 0)

    @property
    def closed(self) -> frozenset[int]:
        return frozenset(self.sizes) - self.opened

    def closed_positions(self) -> list[ClosedPosition]:
        return [
            ClosedPosition(
                token_id=token_id,
                position_size=self.closed_size[token_id],
                minted_at_block=self.minted_at.get(token_id, 0),
                closed_at_block=block,
            )
            for token_id, block in sorted(self.closed_at.items())
        ]

    def to_dict(self) -> dict:
        return {
            "sizes": _str_map(self.sizes),
            "minted_at": _str_map(self.minted_at),
            "closed_at": _str_map(self.closed_at),
            "closed_size": _str_map(self.closed_size),
        }

    @classmethod
    def from_dict(cls, d: dict) -> PositionFold:
        return cls(
            sizes=_int_map(d["sizes"]),
            minted_at=_int_map(d["minted_at"]),
            closed_at=_int_map(d["closed_at"]),
            closed_size=_int_map(d["closed_size"]),
        )


@dataclass(frozen=True)
class PartialScan:
    """Where a timed-out pass stopped, so the next pass can carry on.

    Only valid on top of the checkpoint it started from (``base_block`` and
    ``base_block_hash``, both None for a first sync) and while
    ``last_block_hash`` is still the canonical hash of ``last_block``.
    """

    base_block: int | None
    base_block_hash: str | None
    scan_from: int
    last_block: int
    last_block_hash: str
    fold: PositionFold
    incremental: bool
    created_at: int  # unix seconds

    def to_dict(self) -> dict:
        return {
            "base_block": self.base_block,
            "base_block_hash": self.base_block_hash,
            "scan_from": self.scan_from,
            "last_block": self.last_block,
            "last_block_hash": self.last_block_hash,
            "fold": self.fold.to_dict(),
            "incremental": self.incremental,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PartialScan:
        base_block = d.get("base_block")
        return cls(
            base_block=int(base_block) if base_block is not None else None,
            base_block_hash=d.get("base_block_hash"),
            scan_from=int(d["scan_from"]),
            last_block=int(d["last_block"]),
            last_block_hash=d["last_block_hash"],
            fold=PositionFold.from_dict(d["fold"]),
            incremental=bool(d["incremental"]),
            created_at=int(d["created_at"]),
        )


@dataclass(frozen=True)
class Snapshot:
    """Complete position set as of ``block_number``, decoded from one transaction."""

    block_number: int
    position_ids: frozenset[int]
    tx_hash: str


@dataclass(frozen=True)
class ReorgDetection:
    detected: bool
    block_number: int
    expected_hash: str
    actual_hash: str | None = None  # None when the block could not be fetched
    blocks_to_resync: int = 0


@dataclass(frozen=True)
class PositionBalance:
    """Fields packed into an OptionMinted ``balanceData`` word."""

    position_size: int
    pool_utilization0: int
    pool_utilization1: int
    tick_at_mint: int
    timestamp_at_mint: int
    block_at_mint: int
    swap_at_mint: bool


@dataclass(frozen=True)
class PositionMeta:
    """Immutable per-position data captured from the mint event."""

    token_id: int
    pool_address: str
    owner: str
    position_size: int
    pool_utilization0: int
    pool_utilization1: int
    tick_at_mint: int
    timestamp_at_mint: int
    block_at_mint: int
    swap_at_mint: bool
    mint_block_number: int
    mint_tx_hash: str

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "pool_address": self.pool_address,
            "owner": self.owner,
            "position_size": self.position_size,
            "pool_utilization0": self.pool_utilization0,
            "pool_utilization1": self.pool_utilization1,
            "tick_at_mint": self.tick_at_mint,
            "timestamp_at_mint": self.timestamp_at_mint,
            "block_at_mint": self.block_at_mint,
            "swap_at_mint": self.swap_at_mint,
            "mint_block_number": self.mint_block_number,
            "mint_tx_hash": self.mint_tx_hash,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PositionMeta:
        return cls(
            token_id=int(d["token_id"]),
            pool_address=d["pool_address"],
            owner=d["owner"],
            position_size=int(d["position_size"]),
            pool_utilization0=int(d["pool_utilization0"]),
            pool_utilization1=int(d["pool_utilization1"]),
            tick_at_mint=int(d["tick_at_mint"]),
            timestamp_at_mint=int(d["timestamp_at_mint"]),
            block_at_mint=int(d["block_at_mint"]),
            swap_at_mint=bool(d["swap_at_mint"]),
            mint_block_number=int(d["mint_block_number"]),
            mint_tx_hash=d["mint_tx_hash"],
        )


@dataclass(frozen=True)
class ScanProgress:
    """Reported by event reconstruction after every batch."""

    from_block: int
    current_block: int  # last block of the finished batch
    target_block: int
    events_found: int

    @property
    def blocks_processed(self) -> int:
        return self.current_block - self.from_block + 1

    @property
    def blocks_total(self) -> int:
        return self.target_block - self.from_block + 1


@dataclass
class ReconstructionResult:
    opened: frozenset[int]
    closed: frozenset[int]
    last_block: int
    last_block_hash: str
    blocks_scanned: int
    mints: dict[int, object] = field(default_factory=dict)  # token_id -> first OptionMintedEvent


@dataclass(frozen=True)
class SyncResult:
    last_synced_block: int
    last_synced_block_hash: str
    position_ids: frozenset[int]
    incremental: bool
    duration_ms: int

    @property
    def position_count(self) -> int:
        return len(self.position_ids)


@dataclass(frozen=True)
class SyncStatus:
    has_checkpoint: bool
    last_synced_block: int
    is_synced: bool
    blocks_behind: int
    position_count: int


class ProgressKind(str, Enum):
    """Kinds of record sent on a sync pass's progress channel."""

    REORG_DETECTED = "reorg-detected"
    PROGRESS = "progress"
    POSITION_OPENED = "position-opened"
    POSITION_CLOSED = "position-closed"


@dataclass(frozen=True)
class SyncProgressEvent:
    kind: ProgressKind
    token_id: int | None = None  # position-opened / position-closed
    current: int | None = None  # progress: blocks processed
    total: int | None = None  # progress: blocks in the scan
    block_number: int | None = None  # reorg-detected: divergent block
