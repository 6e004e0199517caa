"""Raw chain records as returned by the JSON-RPC node."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RawLog:
    """One ``eth_getLogs`` / ``eth_subscription`` log entry, hex fields decoded."""

    address: str
    topics: tuple[str, ...]  # 0x-prefixed 32-byte hex
    data: str  # 0x-prefixed hex
    block_number: int
    block_hash: str
    transaction_hash: str
    log_index: int
    removed: bool = False

    @classmethod
    def from_rpc(cls, raw: dict) -> RawLog:
        return cls(
            address=raw["address"],
            topics=tuple(raw.get("topics") or ()),
            data=raw.get("data") or "0x",
            block_number=int(raw["blockNumber"], 16),
            block_hash=raw["blockHash"],
            transaction_hash=raw["transactionHash"],
            log_index=int(raw["logIndex"], 16),
            removed=bool(raw.get("removed", False)),
        )


@dataclass(frozen=True)
class BlockInfo:
    number: int
    hash: str
    timestamp: int  # unix seconds

    @classmethod
    def from_rpc(cls, raw: dict) -> BlockInfo:
        return cls(
            number=int(raw["number"], 16),
            hash=raw["hash"],
            timestamp=int(raw["timestamp"], 16),
        )


@dataclass(frozen=True)
class TransactionInfo:
    hash: str
    sender: str
    to: str | None  # None for contract creation
    input: str  # 0x-prefixed calldata
    block_number: int | None  # None while pending

    @classmethod
    def from_rpc(cls, raw: dict) -> TransactionInfo:
        block = raw.get("blockNumber")
        return cls(
            hash=raw["hash"],
            sender=raw["from"],
            to=raw.get("to"),
            input=raw.get("input") or "0x",
            block_number=int(block, 16) if block else None,
        )
