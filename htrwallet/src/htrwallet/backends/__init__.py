"""
Network backends.

Available backends:
- FullNodeBackend: full node wallet API over HTTP (httpx)
"""

from htrwallet.backends.base import BroadcastResult, WalletBackend, WatchList
from htrwallet.backends.fullnode import FullNodeBackend

__all__ = [
    "BroadcastResult",
    "FullNodeBackend",
    "WalletBackend",
    "WatchList",
]
