"""
HTTP backend talking to a full node's wallet API.

History is fetched with GET thin_wallet/address_history and transactions are
pushed with POST thin_wallet/send_tokens. Subscriptions are kept in a local
watch list; the owner of the push connection reads it to (re)subscribe and
feeds pushed transactions to HistoryReconciler.on_push_message.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from htrwallet.backends.base import BroadcastResult, WalletBackend, WatchList
from htrwallet.errors import NetworkError
from htrwallet.wallet.models import Transaction

DEFAULT_TIMEOUT = 30.0

# Full node limits the number of addresses per history request
MAX_ADDRESSES_PER_REQUEST = 20


class FullNodeBackend(WalletBackend):
    def __init__(self, server: str, timeout: float = DEFAULT_TIMEOUT):
        self.server = server.rstrip("/") + "/"
        self.client = httpx.AsyncClient(base_url=self.server, timeout=timeout)
        self.watch_list = WatchList()

    async def _api_call(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """Make an API call to the full node."""
        try:
            if method == "GET":
                response = await self.client.get(endpoint, params=params)
            elif method == "POST":
                response = await self.client.post(endpoint, json=data)
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            response.raise_for_status()
            return response.json()

        except httpx.HTTPError as e:
            logger.error(f"Wallet API call failed: {endpoint} - {e}")
            raise NetworkError(f"Request to {endpoint} failed: {e}") from e

    async def fetch_address_history(self, addresses: list[str]) -> list[Transaction]:
        history: list[Transaction] = []
        seen: set[str] = set()

        for start in range(0, len(addresses), MAX_ADDRESSES_PER_REQUEST):
            chunk = addresses[start : start + MAX_ADDRESSES_PER_REQUEST]
            result = await self._api_call(
                "GET", "thin_wallet/address_history", params={"addresses[]": chunk}
            )
            if not result.get("success", True):
                raise NetworkError(result.get("message", "Failed to fetch address history"))

            for raw_tx in result.get("history", []):
                tx = Transaction.model_validate(raw_tx)
                # The same tx shows up once per address it touches
                if tx.tx_id not in seen:
                    seen.add(tx.tx_id)
                    history.append(tx)

        logger.debug(f"Fetched {len(history)} transactions for {len(addresses)} addresses")
        return history

    async def broadcast_transaction(self, tx_hex: str) -> BroadcastResult:
        result = await self._api_call("POST", "thin_wallet/send_tokens", data={"tx_hex": tx_hex})
        return BroadcastResult(
            success=bool(result.get("success")),
            tx=result.get("tx"),
            message=result.get("message", ""),
        )

    def subscribe_address(self, address: str) -> None:
        if self.watch_list.add(address):
            logger.debug(f"Subscribed address: {address}")

    def unsubscribe_address(self, address: str) -> None:
        if self.watch_list.discard(address):
            logger.debug(f"Unsubscribed address: {address}")

    async def close(self) -> None:
        await self.client.aclose()
