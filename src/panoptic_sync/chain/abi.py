"""Panoptic pool and collateral tracker ABI fragments.

Covers the events the sync engine watches, the packed words those events
carry, and the two call shapes (``dispatch`` / ``dispatchFrom``) whose
calldata holds an account's complete position list.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import cached_property

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import (
    decode_hex,
    encode_hex,
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
    to_checksum_address,
)

from panoptic_sync.models.chain import RawLog
from panoptic_sync.models.events import (
    AccountLiquidatedEvent,
    ContractEvent,
    DepositEvent,
    ForcedExercisedEvent,
    OptionBurntEvent,
    OptionMintedEvent,
    PremiumSettledEvent,
    WithdrawEvent,
)
from panoptic_sync.models.sync import PositionBalance

log = logging.getLogger(__name__)

_UINT128_MASK = (1 << 128) - 1
_UINT256_MASK = (1 << 256) - 1


@dataclass(frozen=True)
class EventSpec:
    """One event shape: name, ordered inputs and the model it decodes into.

    Input field names double as the model's keyword arguments.
    """

    name: str
    inputs: tuple[tuple[str, str, bool], ...]  # (field, abi type, indexed)
    model: type

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(t for _, t, _ in self.inputs)})"

    @cached_property
    def topic0(self) -> str:
        return encode_hex(event_signature_to_log_topic(self.signature))

    def decode(self, raw: RawLog) -> ContractEvent | None:
        """Decode a raw log. Returns None if it is not this event or is malformed."""
        if not raw.topics or raw.topics[0].lower() != self.topic0:
            return None

        indexed = [(n, t) for n, t, is_indexed in self.inputs if is_indexed]
        plain = [(n, t) for n, t, is_indexed in self.inputs if not is_indexed]
        if len(raw.topics) != len(indexed) + 1:
            log.debug("%s log at %d:%d has %d topics, expected %d",
                      self.name, raw.block_number, raw.log_index,
                      len(raw.topics), len(indexed) + 1)
            return None

        try:
            args: dict = {}
            for (field_name, abi_type), topic in zip(indexed, raw.topics[1:]):
                (args[field_name],) = decode([abi_type], decode_hex(topic))
            values = decode([t for _, t in plain], decode_hex(raw.data))
        except (DecodingError, ValueError) as exc:
            log.debug("Could not decode %s log at %d:%d: %s",
                      self.name, raw.block_number, raw.log_index, exc)
            return None

        for (field_name, _), value in zip(plain, values):
            args[field_name] = tuple(value) if isinstance(value, (list, tuple)) else value

        return self.model(
            block_number=raw.block_number,
            log_index=raw.log_index,
            block_hash=raw.block_hash,
            transaction_hash=raw.transaction_hash,
            address=to_checksum_address(raw.address),
            **args,
        )


# ── Event catalogue ───────────────────────────────────────

OPTION_MINTED = EventSpec(
    "OptionMinted",
    (
        ("recipient", "address", True),
        ("token_id", "uint256", True),
        ("balance_data", "uint256", False),
    ),
    OptionMintedEvent,
)

OPTION_BURNT = EventSpec(
    "OptionBurnt",
    (
        ("recipient", "address", True),
        ("token_id", "uint256", True),
        ("position_size", "uint256", False),
        ("premia_by_leg", "int256[4]", False),
    ),
    OptionBurntEvent,
)

ACCOUNT_LIQUIDATED = EventSpec(
    "AccountLiquidated",
    (
        ("liquidator", "address", True),
        ("liquidatee", "address", True),
        ("bonus_amounts", "int256", False),
    ),
    AccountLiquidatedEvent,
)

FORCED_EXERCISED = EventSpec(
    "ForcedExercised",
    (
        ("exercisor", "address", True),
        ("user", "address", True),
        ("token_id", "uint256", True),
        ("exercise_fee", "int256", False),
    ),
    ForcedExercisedEvent,
)

PREMIUM_SETTLED = EventSpec(
    "PremiumSettled",
    (
        ("user", "address", True),
        ("token_id", "uint256", True),
        ("leg_index", "uint256", False),
        ("settled_amounts", "int256", False),
    ),
    PremiumSettledEvent,
)

DEPOSIT = EventSpec(
    "Deposit",
    (
        ("sender", "address", True),
        ("owner", "address", True),
        ("assets", "uint256", False),
        ("shares", "uint256", False),
    ),
    DepositEvent,
)

WITHDRAW = EventSpec(
    "Withdraw",
    (
        ("sender", "address", True),
        ("receiver", "address", True),
        ("owner", "address", True),
        ("assets", "uint256", False),
        ("shares", "uint256", False),
    ),
    WithdrawEvent,
)

POOL_EVENTS: dict[str, EventSpec] = {
    s.name: s
    for s in (OPTION_MINTED, OPTION_BURNT, ACCOUNT_LIQUIDATED, FORCED_EXERCISED, PREMIUM_SETTLED)
}
COLLATERAL_EVENTS: dict[str, EventSpec] = {s.name: s for s in (DEPOSIT, WITHDRAW)}


def address_topic(address: str) -> str:
    """Left-pad an address into a 32-byte indexed topic."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def uint_topic(value: int) -> str:
    return "0x" + format(value, "064x")


# ── Packed words ──────────────────────────────────────────


def decode_position_balance(balance_data: int) -> PositionBalance:
    """Unpack OptionMinted ``balanceData``.

    Layout (LSB first): size 0-127, utilization0 128-143, utilization1
    144-159, tickAtMint int24 160-183, timestampAtMint 184-215,
    blockAtMint 216-254, swapAtMint 255.
    """
    tick = (balance_data >> 160) & 0xFFFFFF
    if tick & 0x800000:
        tick -= 1 << 24
    return PositionBalance(
        position_size=balance_data & _UINT128_MASK,
        pool_utilization0=(balance_data >> 128) & 0xFFFF,
        pool_utilization1=(balance_data >> 144) & 0xFFFF,
        tick_at_mint=tick,
        timestamp_at_mint=(balance_data >> 184) & 0xFFFFFFFF,
        block_at_mint=(balance_data >> 216) & ((1 << 39) - 1),
        swap_at_mint=bool((balance_data >> 255) & 1),
    )


def _int128(value: int) -> int:
    return value - (1 << 128) if value >= 1 << 127 else value


def decode_left_right_signed(value: int) -> tuple[int, int]:
    """Split a LeftRightSigned int256 into (right, left) int128 halves.

    Right is the token0 amount, left the token1 amount.
    """
    word = value & _UINT256_MASK
    return _int128(word & _UINT128_MASK), _int128(word >> 128)


# ── Calldata ──────────────────────────────────────────────

DISPATCH_SIGNATURE = "dispatch(uint256[],uint256[],uint128[],int24[3][],bool,uint256)"
# Both revisions of dispatchFrom share a layout; only the last word's type changed.
DISPATCH_FROM_SIGNATURES = (
    "dispatchFrom(uint256[],address,uint256[],uint256[],uint256)",
    "dispatchFrom(uint256[],address,uint256[],uint256[],bool)",
)


def _arg_types(signature: str) -> list[str]:
    inner = signature[signature.index("(") + 1:-1]
    # top-level split; the shapes above contain no tuples
    return inner.split(",")


_CALL_SHAPES: dict[bytes, tuple[str, list[str]]] = {
    function_signature_to_4byte_selector(sig): (sig.split("(")[0], _arg_types(sig))
    for sig in (DISPATCH_SIGNATURE, *DISPATCH_FROM_SIGNATURES)
}


@dataclass(frozen=True)
class DispatchCall:
    """Decoded dispatch/dispatchFrom calldata."""

    function: str
    position_ids: tuple[int, ...]  # the account's final position list
    account: str | None = None  # dispatchFrom target; None for dispatch


def decode_dispatch_calldata(data: str) -> DispatchCall | None:
    """Decode transaction input against the dispatch call shapes.

    Anything that is not a clean dispatch/dispatchFrom call returns None.
    """
    try:
        raw = decode_hex(data)
    except (ValueError, TypeError):
        return None
    if len(raw) < 4:
        return None

    shape = _CALL_SHAPES.get(raw[:4])
    if shape is None:
        return None
    function, types = shape

    try:
        args = decode(types, raw[4:])
    except (DecodingError, ValueError) as exc:
        log.debug("Calldata matched %s selector but did not decode: %s", function, exc)
        return None

    if function == "dispatch":
        return DispatchCall(function=function, position_ids=tuple(args[1]))
    return DispatchCall(
        function=function,
        position_ids=tuple(args[3]),
        account=to_checksum_address(args[1]),
    )
