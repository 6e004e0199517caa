"""Synthetic log, transaction and event factories for testing."""

from __future__ import annotations

from eth_abi import encode
from eth_utils import encode_hex, function_signature_to_4byte_selector, to_checksum_address

from panoptic_sync.chain.abi import (
    DEPOSIT,
    DISPATCH_FROM_SIGNATURES,
    DISPATCH_SIGNATURE,
    OPTION_BURNT,
    OPTION_MINTED,
    address_topic,
    uint_topic,
)
from panoptic_sync.models.chain import RawLog, TransactionInfo

POOL = to_checksum_address("0x" + "11" * 20)
ACCOUNT = to_checksum_address("0x" + "aa" * 20)
OTHER_ACCOUNT = to_checksum_address("0x" + "bb" * 20)
TRACKER0 = to_checksum_address("0x" + "c0" * 20)
TRACKER1 = to_checksum_address("0x" + "c1" * 20)
CHAIN_ID = 1


def block_hash(number: int, fork: int = 0) -> str:
    """Deterministic block hash; ``fork`` distinguishes reorged variants."""
    return "0x" + format(fork, "08x") + format(number, "056x")


def tx_hash(block: int, log_index: int = 0, salt: int = 0) -> str:
    return "0x" + format(salt, "016x") + format(block, "032x") + format(log_index, "016x")


def make_balance_data(
    size: int,
    *,
    utilization0: int = 0,
    utilization1: int = 0,
    tick: int = 0,
    timestamp: int = 0,
    block: int = 0,
    swap: bool = False,
) -> int:
    return (
        size
        | (utilization0 << 128)
        | (utilization1 << 144)
        | ((tick & 0xFFFFFF) << 160)
        | (timestamp << 184)
        | (block << 216)
        | (int(swap) << 255)
    )


def _data(types: list[str], values: list) -> str:
    return encode_hex(encode(types, values))


def make_mint_log(
    token_id: int,
    size: int = 1_000,
    *,
    block: int,
    log_index: int = 0,
    account: str = ACCOUNT,
    pool: str = POOL,
    tx: str | None = None,
    tick: int = 0,
    fork: int = 0,
) -> RawLog:
    balance = make_balance_data(size, tick=tick, timestamp=1_700_000_000 + block, block=block)
    return RawLog(
        address=pool,
        topics=(OPTION_MINTED.topic0, address_topic(account), uint_topic(token_id)),
        data=_data(["uint256"], [balance]),
        block_number=block,
        block_hash=block_hash(block, fork),
        transaction_hash=tx or tx_hash(block, log_index),
        log_index=log_index,
    )


def make_burn_log(
    token_id: int,
    size: int = 1_000,
    *,
    block: int,
    log_index: int = 0,
    account: str = ACCOUNT,
    pool: str = POOL,
    tx: str | None = None,
    premia: tuple[int, int, int, int] = (0, 0, 0, 0),
    fork: int = 0,
) -> RawLog:
    return RawLog(
        address=pool,
        topics=(OPTION_BURNT.topic0, address_topic(account), uint_topic(token_id)),
        data=_data(["uint256", "int256[4]"], [size, list(premia)]),
        block_number=block,
        block_hash=block_hash(block, fork),
        transaction_hash=tx or tx_hash(block, log_index),
        log_index=log_index,
    )


def make_deposit_log(
    *,
    block: int,
    log_index: int = 0,
    tracker: str = TRACKER0,
    sender: str = ACCOUNT,
    owner: str = ACCOUNT,
    assets: int = 10**18,
    shares: int = 10**18,
) -> RawLog:
    return RawLog(
        address=tracker,
        topics=(DEPOSIT.topic0, address_topic(sender), address_topic(owner)),
        data=_data(["uint256", "uint256"], [assets, shares]),
        block_number=block,
        block_hash=block_hash(block),
        transaction_hash=tx_hash(block, log_index, salt=7),
        log_index=log_index,
    )


def make_dispatch_input(final_position_ids: list[int]) -> str:
    """``dispatch`` calldata whose final position list is ``final_position_ids``."""
    selector = function_signature_to_4byte_selector(DISPATCH_SIGNATURE)
    args = encode(
        ["uint256[]", "uint256[]", "uint128[]", "int24[3][]", "bool", "uint256"],
        [[], list(final_position_ids), [], [], False, 0],
    )
    return encode_hex(selector + args)


def make_dispatch_from_input(account: str, final_position_ids: list[int]) -> str:
    selector = function_signature_to_4byte_selector(DISPATCH_FROM_SIGNATURES[0])
    args = encode(
        ["uint256[]", "address", "uint256[]", "uint256[]", "uint256"],
        [[], account, [], list(final_position_ids), 0],
    )
    return encode_hex(selector + args)


def make_transaction(
    hash: str,
    *,
    input: str,
    block: int | None,
    sender: str = ACCOUNT,
    to: str | None = POOL,
) -> TransactionInfo:
    return TransactionInfo(hash=hash, sender=sender, to=to, input=input, block_number=block)


def make_pool_traffic(start: int, end: int, step: int = 100) -> list[RawLog]:
    """Steady pool activity from another account, first log at ``start``."""
    return [
        make_mint_log(n, block=n, account=OTHER_ACCOUNT) for n in range(start, end + 1, step)
    ]
