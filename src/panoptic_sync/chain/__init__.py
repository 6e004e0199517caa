"""EVM chain access: JSON-RPC clients and Panoptic ABI decoding."""

from panoptic_sync.chain.rpc import HttpxChainClient
from panoptic_sync.chain.ws import WebSocketChainClient

__all__ = ["HttpxChainClient", "WebSocketChainClient"]
