"""
Base network backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from htrwallet.wallet.models import Transaction


@dataclass
class BroadcastResult:
    success: bool
    tx: dict[str, Any] | None = None
    message: str = ""

    @property
    def tx_hash(self) -> str | None:
        return self.tx.get("hash") if self.tx else None

    @property
    def tokens(self) -> list[str]:
        if not self.tx:
            return []
        return list(self.tx.get("tokens") or [])


class WalletBackend(ABC):
    """
    Abstract network backend used by the wallet.

    Request/response calls are async. Address subscriptions go through the
    push channel and are fire-and-forget.
    """

    @abstractmethod
    async def fetch_address_history(self, addresses: list[str]) -> list[Transaction]:
        """Get every transaction touching any of the addresses"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> BroadcastResult:
        """Push a signed transaction to the network"""

    @abstractmethod
    def subscribe_address(self, address: str) -> None:
        """Receive pushed updates for address"""

    @abstractmethod
    def unsubscribe_address(self, address: str) -> None:
        """Stop receiving pushed updates for address"""

    async def close(self) -> None:
        """Close backend connection"""
        pass


@dataclass
class WatchList:
    """Addresses currently subscribed on the push channel."""

    addresses: set[str] = field(default_factory=set)

    def add(self, address: str) -> bool:
        if address in self.addresses:
            return False
        self.addresses.add(address)
        return True

    def discard(self, address: str) -> bool:
        if address not in self.addresses:
            return False
        self.addresses.discard(address)
        return True
