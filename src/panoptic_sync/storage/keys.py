"""Storage key layout.

Every key is scoped by schema version, chain and pool so one store can
hold many pools. Account-scoped entities put the lowercased account
before the entity name, so one account's state shares a key prefix:

    panoptic-sync:v1:chain1:pool0xabc...:0xdef...:sync
    panoptic-sync:v1:chain1:pool0xabc...:positionMeta:42
"""

from __future__ import annotations

SCHEMA_VERSION = 1
KEY_NAMESPACE = "panoptic-sync"


def pool_prefix(chain_id: int, pool_address: str) -> str:
    return f"{KEY_NAMESPACE}:v{SCHEMA_VERSION}:chain{chain_id}:pool{pool_address.lower()}"


def account_prefix(chain_id: int, pool_address: str, account: str) -> str:
    return f"{pool_prefix(chain_id, pool_address)}:{account.lower()}"


def _account_key(chain_id: int, pool_address: str, account: str, entity: str) -> str:
    return f"{account_prefix(chain_id, pool_address, account)}:{entity}"


def checkpoint_key(chain_id: int, pool_address: str, account: str) -> str:
    return _account_key(chain_id, pool_address, account, "sync")


def partial_scan_key(chain_id: int, pool_address: str, account: str) -> str:
    return _account_key(chain_id, pool_address, account, "partialSync")


def pending_key(chain_id: int, pool_address: str, account: str) -> str:
    return _account_key(chain_id, pool_address, account, "pending")


def position_meta_key(chain_id: int, pool_address: str, token_id: int) -> str:
    return f"{pool_prefix(chain_id, pool_address)}:positionMeta:{token_id}"


def pool_meta_key(chain_id: int, pool_address: str) -> str:
    return f"{pool_prefix(chain_id, pool_address)}:poolMeta"
