"""Market data API clients."""

from .solana_rpc import SolanaRpcClient
from .vybe_api import (
    KnownAccount,
    MarketDataUnavailable,
    TokenPrice,
    Transfer,
    VybeApiClient,
    parse_transfer,
)
from .websocket import VybeWebSocketClient, build_transfer_filters

__all__ = [
    "VybeApiClient",
    "SolanaRpcClient",
    "VybeWebSocketClient",
    "build_transfer_filters",
    "parse_transfer",
    "MarketDataUnavailable",
    "TokenPrice",
    "Transfer",
    "KnownAccount",
]
