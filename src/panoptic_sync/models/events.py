"""Contract event models decoded from pool and collateral tracker logs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class EventLocation:
    """Where a log sits on chain. Ordering key is (block_number, log_index)."""

    block_number: int
    log_index: int
    block_hash: str
    transaction_hash: str
    address: str  # emitting contract


@dataclass(frozen=True)
class OptionMintedEvent(EventLocation):
    """A position was opened. ``balance_data`` packs size and mint-time state."""

    recipient: str
    token_id: int
    balance_data: int

    @property
    def position_size(self) -> int:
        return self.balance_data & ((1 << 128) - 1)


@dataclass(frozen=True)
class OptionBurntEvent(EventLocation):
    """A position was closed."""

    recipient: str
    token_id: int
    position_size: int
    premia_by_leg: tuple[int, int, int, int]


@dataclass(frozen=True)
class AccountLiquidatedEvent(EventLocation):
    liquidator: str
    liquidatee: str
    bonus_amounts: int  # LeftRight packed, signed


@dataclass(frozen=True)
class ForcedExercisedEvent(EventLocation):
    exercisor: str
    user: str
    token_id: int
    exercise_fee: int  # LeftRight packed, signed


@dataclass(frozen=True)
class PremiumSettledEvent(EventLocation):
    user: str
    token_id: int
    leg_index: int
    settled_amounts: int  # LeftRight packed, signed


@dataclass(frozen=True)
class DepositEvent(EventLocation):
    """ERC4626 deposit into a collateral tracker."""

    sender: str
    owner: str
    assets: int
    shares: int


@dataclass(frozen=True)
class WithdrawEvent(EventLocation):
    """ERC4626 withdrawal from a collateral tracker."""

    sender: str
    receiver: str
    owner: str
    assets: int
    shares: int


PositionEvent = Union[OptionMintedEvent, OptionBurntEvent]

ContractEvent = Union[
    OptionMintedEvent,
    OptionBurntEvent,
    AccountLiquidatedEvent,
    ForcedExercisedEvent,
    PremiumSettledEvent,
    DepositEvent,
    WithdrawEvent,
]


def event_key(event: EventLocation) -> tuple[int, int]:
    """Chain ordering key."""
    return event.block_number, event.log_index
