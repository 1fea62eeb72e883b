"""
History reconciliation.

Merges transaction batches coming from the network into the ledger, moves the
used and shared address pointers, and keeps watching addresses up to
GAP_LIMIT past the highest used one. Every scan of new addresses may reveal
more used addresses, so refills repeat until a scan finds nothing past the gap.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from loguru import logger

from htrwallet.backends.base import WalletBackend
from htrwallet.constants import GAP_LIMIT
from htrwallet.storage import KeyValueStore
from htrwallet.wallet.addresses import AddressGapManager
from htrwallet.wallet.ledger import UTXOLedger
from htrwallet.wallet.models import Transaction
from htrwallet.wallet.state import WalletLedgerState

PUSH_HISTORY_MESSAGE = "wallet:address_history"


class HistoryReconciler:
    """
    Applies fetched history to the wallet state.

    Runs on a single event loop: a batch is applied without awaiting, so it is
    atomic with respect to other tasks. Two refills can still interleave at
    their fetches; that is safe because recording a tx is idempotent and all
    pointers only move forward. cancel_pending() makes in-flight fetches
    discard their results instead of merging them.
    """

    def __init__(
        self,
        state: WalletLedgerState,
        store: KeyValueStore,
        ledger: UTXOLedger,
        addresses: AddressGapManager,
        backend: WalletBackend,
        gap_limit: int = GAP_LIMIT,
    ):
        self.state = state
        self.store = store
        self.ledger = ledger
        self.addresses = addresses
        self.backend = backend
        self.gap_limit = gap_limit
        self._generation = 0

    def cancel_pending(self) -> None:
        """Invalidate every fetch started before this call"""
        self._generation += 1

    def apply_history(self, batch: Iterable[Transaction]) -> int:
        """
        Merge a batch into the ledger and move the address pointers.

        Returns the highest wallet address index touched by the batch, -1 if none.
        """
        max_index = -1
        last_used_address: str | None = None

        for tx in batch:
            self.ledger.record_transaction(tx)

            touched = [(txin.address, txin.token) for txin in tx.inputs]
            touched += [(txout.address, txout.token) for txout in tx.outputs]
            for address, token in touched:
                index = self.state.index_of(address)
                if index is None:
                    continue
                self.state.add_token(token)
                if index > max_index:
                    max_index = index
                    last_used_address = address

        if max_index > self.state.last_used_index and last_used_address is not None:
            self.addresses.record_used(last_used_address)

            candidate_index = max_index + 1
            if candidate_index > self.state.last_shared_index:
                # Next receive address, generated now so it is watched already
                self.addresses.ensure_generated(candidate_index)
                address = self.state.address_at(candidate_index)
                self.addresses.update_shared(address, candidate_index)
                logger.debug(f"Shared address moved to {candidate_index}: {address}")

        self.state.save(self.store)
        return max_index

    def _refill_end(self, max_index: int) -> int | None:
        # Keep exactly gap_limit addresses watched after the highest used one
        need = max_index + self.gap_limit
        if need > self.state.last_generated_index:
            return need
        return None

    async def process_history(self, batch: list[Transaction]) -> None:
        """
        Apply a batch, then scan new addresses until the gap limit is satisfied.

        Returns once the last triggered scan was applied.
        """
        generation = self._generation
        max_index = self.apply_history(batch)

        while (need := self._refill_end(max_index)) is not None:
            start = self.state.last_generated_index + 1
            self.addresses.ensure_generated(need)
            addresses = [self.state.address_at(index) for index in range(start, need + 1)]

            logger.debug(f"Refilling addresses {start}..{need}")
            history = await self.backend.fetch_address_history(addresses)

            if generation != self._generation:
                logger.warning(f"Discarding superseded history for addresses {start}..{need}")
                return

            max_index = max(max_index, self.apply_history(history))

    async def load_address_history(self, start_index: int, count: int) -> None:
        """
        Generate count addresses from start_index, fetch their history and
        reconcile it, including any refills it triggers.
        """
        generation = self._generation
        stop_index = start_index + count - 1
        self.addresses.ensure_generated(stop_index)
        addresses = [self.state.address_at(index) for index in range(start_index, stop_index + 1)]

        history = await self.backend.fetch_address_history(addresses)
        if generation != self._generation:
            logger.warning(f"Discarding superseded history for addresses {start_index}..{stop_index}")
            return

        await self.process_history(history)
        logger.info(
            f"History loaded: {len(self.state.history)} transactions, "
            f"last used index {self.state.last_used_index}, "
            f"last generated index {self.state.last_generated_index}"
        )

    async def on_push_message(self, message: dict[str, Any]) -> bool:
        """
        Handle a message from the push channel.

        Returns True if it carried a transaction for this wallet.
        """
        if message.get("type") != PUSH_HISTORY_MESSAGE:
            return False
        tx = Transaction.model_validate(message["history"])
        await self.process_history([tx])
        return True
