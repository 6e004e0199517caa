"""Tests 1-6: Event decoding, packed words and dispatch calldata."""

from __future__ import annotations

from dataclasses import replace

from panoptic_sync.chain.abi import (
    DEPOSIT,
    OPTION_BURNT,
    OPTION_MINTED,
    decode_dispatch_calldata,
    decode_left_right_signed,
    decode_position_balance,
)
from panoptic_sync.models.events import DepositEvent, OptionBurntEvent, OptionMintedEvent

from tests.factories import (
    ACCOUNT,
    make_balance_data,
    make_burn_log,
    make_deposit_log,
    make_dispatch_from_input,
    make_dispatch_input,
    make_mint_log,
)


# ── Test 1: Mint and burn logs decode into models ─────────────────


def test_decode_mint_and_burn():
    mint = OPTION_MINTED.decode(make_mint_log(7, 500, block=100, log_index=2))
    assert isinstance(mint, OptionMintedEvent)
    assert mint.token_id == 7
    assert mint.position_size == 500
    assert mint.recipient.lower() == ACCOUNT.lower()
    assert (mint.block_number, mint.log_index) == (100, 2)

    burn = OPTION_BURNT.decode(make_burn_log(7, 500, block=120, premia=(1, -2, 3, -4)))
    assert isinstance(burn, OptionBurntEvent)
    assert burn.position_size == 500
    assert burn.premia_by_leg == (1, -2, 3, -4)


def test_decode_collateral_deposit():
    event = DEPOSIT.decode(make_deposit_log(block=50, assets=123, shares=45))
    assert isinstance(event, DepositEvent)
    assert (event.assets, event.shares) == (123, 45)
    assert event.owner.lower() == ACCOUNT.lower()


# ── Test 2: Wrong or malformed logs are rejected, not raised ──────


def test_decode_wrong_topic_returns_none():
    assert OPTION_BURNT.decode(make_mint_log(1, block=1)) is None


def test_decode_truncated_data_returns_none():
    raw = make_mint_log(1, block=1)
    assert OPTION_MINTED.decode(replace(raw, data="0x1234")) is None


# ── Test 3: balanceData layout ────────────────────────────────────


def test_position_balance_fields():
    word = make_balance_data(
        10**20, utilization0=1234, utilization1=4321, tick=-887272,
        timestamp=1_700_000_123, block=19_000_000, swap=True,
    )
    b = decode_position_balance(word)
    assert b.position_size == 10**20
    assert b.pool_utilization0 == 1234
    assert b.pool_utilization1 == 4321
    assert b.tick_at_mint == -887272
    assert b.timestamp_at_mint == 1_700_000_123
    assert b.block_at_mint == 19_000_000
    assert b.swap_at_mint is True


def test_position_balance_positive_tick_no_swap():
    b = decode_position_balance(make_balance_data(1, tick=200))
    assert b.tick_at_mint == 200
    assert b.swap_at_mint is False


# ── Test 4: LeftRightSigned halves ────────────────────────────────


def test_left_right_signed():
    packed = ((-5 & ((1 << 128) - 1)) << 128) | 7
    assert decode_left_right_signed(packed) == (7, -5)
    assert decode_left_right_signed(-1) == (-1, -1)


# ── Test 5: dispatch / dispatchFrom calldata ─────────────────────


def test_dispatch_calldata():
    call = decode_dispatch_calldata(make_dispatch_input([3, 1, 2]))
    assert call is not None
    assert call.function == "dispatch"
    assert call.position_ids == (3, 1, 2)
    assert call.account is None


def test_dispatch_from_calldata():
    call = decode_dispatch_calldata(make_dispatch_from_input(ACCOUNT, [9]))
    assert call is not None
    assert call.function == "dispatchFrom"
    assert call.position_ids == (9,)
    assert call.account.lower() == ACCOUNT.lower()


# ── Test 6: Foreign calldata ──────────────────────────────────────


def test_foreign_calldata_returns_none():
    assert decode_dispatch_calldata("0x") is None
    assert decode_dispatch_calldata("0xa9059cbb" + "00" * 64) is None
    assert decode_dispatch_calldata("not hex") is None
    # right selector, garbage body
    selector = make_dispatch_input([1])[:10]
    assert decode_dispatch_calldata(selector + "ff" * 7) is None
