"""
Address pointers under the gap limit policy.

- last_generated_index: highest derived and watched address
- last_shared_index: address currently shown to receive funds
- last_used_index: highest address seen in any transaction

Target steady state is used <= shared <= generated. Right after a
reconciliation used can be ahead of shared until the shared pointer moves.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from loguru import logger

from htrwallet.backends.base import WalletBackend
from htrwallet.constants import GAP_LIMIT, LIMIT_ADDRESS_GENERATION
from htrwallet.errors import InvariantViolation, ValidationError
from htrwallet.storage import KeyValueStore
from htrwallet.wallet.address import derive_address
from htrwallet.wallet.state import WalletLedgerState


@dataclass(frozen=True)
class PointerSnapshot:
    last_generated_index: int
    last_shared_index: int
    last_shared_address: str | None


class AddressGapManager:
    def __init__(
        self,
        state: WalletLedgerState,
        store: KeyValueStore,
        backend: WalletBackend,
        network: str = "mainnet",
        gap_limit: int = GAP_LIMIT,
        limit_address_generation: bool = LIMIT_ADDRESS_GENERATION,
    ):
        self.state = state
        self.store = store
        self.backend = backend
        self.network = network
        self.gap_limit = gap_limit
        self.limit_address_generation = limit_address_generation

    def derive(self, index: int) -> str:
        return derive_address(self.state.xpubkey, index, self.network).value

    def _register(self, index: int) -> str:
        address = self.derive(index)
        self.state.register_address(address, index)
        self.backend.subscribe_address(address)
        return address

    def ensure_generated(self, through_index: int) -> list[str]:
        """
        Derive, watch and persist every address up to through_index.

        Returns the newly generated addresses.
        """
        start = self.state.last_generated_index + 1
        new_addresses = [self._register(index) for index in range(start, through_index + 1)]

        if not new_addresses:
            return []

        self.state.last_generated_index = through_index
        if self.state.last_shared_address is None:
            # Nothing shown on screen yet
            self.update_shared(new_addresses[0], start)

        self.state.save(self.store)
        logger.debug(f"Generated addresses {start}..{through_index}")
        return new_addresses

    def update_shared(self, address: str, index: int) -> None:
        self.state.last_shared_address = address
        self.state.last_shared_index = index

    def current_shared_address(self) -> str:
        if self.state.last_shared_address is None:
            raise InvariantViolation("Wallet has no generated address")
        return self.state.last_shared_address

    def has_new_address(self) -> bool:
        """Check there are generated addresses after the shared one"""
        return self.state.last_generated_index > self.state.last_shared_index

    def next_address(self) -> str:
        """Move the shared pointer to the next already generated address"""
        index = self.state.last_shared_index + 1
        address = self.state.address_at(index)
        if address is None:
            raise InvariantViolation(f"Address {index} was not generated")
        self.update_shared(address, index)
        self.state.save(self.store)
        return address

    def generate_new_address(self) -> str:
        """Derive the address after the shared one and share it"""
        index = self.state.last_shared_index + 1
        address = self.state.address_at(index) or self._register(index)

        self.update_shared(address, index)
        if index > self.state.last_generated_index:
            self.state.last_generated_index = index

        self.state.save(self.store)
        logger.debug(f"Generated new address {index}: {address}")
        return address

    def can_generate_more(self) -> bool:
        """
        With the gap limit policy on, refuse to have more than gap_limit
        unused addresses after the last used one.
        """
        if not self.limit_address_generation:
            return True
        return self.state.last_used_index + self.gap_limit > self.state.last_generated_index

    def get_address_to_use(self) -> str:
        """
        Return the shared address and move sharing forward, since the
        returned one is about to receive funds.
        """
        address = self.current_shared_address()
        if self.has_new_address():
            self.next_address()
        else:
            self.generate_new_address()
        return address

    def new_shared_address(self) -> str:
        """
        Share a fresh address on user request.

        Raises:
            ValidationError: If the gap limit does not allow a new address
        """
        if self.has_new_address():
            return self.next_address()
        if not self.can_generate_more():
            raise ValidationError(
                f"You have reached the limit of {self.gap_limit} unused addresses"
            )
        return self.generate_new_address()

    def snapshot(self) -> PointerSnapshot:
        return PointerSnapshot(
            self.state.last_generated_index,
            self.state.last_shared_index,
            self.state.last_shared_address,
        )

    def restore(self, snapshot: PointerSnapshot) -> None:
        """
        Undo shared pointer moves and address generation made after snapshot.

        Addresses a reconciliation needs to keep the gap after the last used
        one are kept, as is a shared pointer it moved past a used address.
        """
        keep_through = max(
            snapshot.last_generated_index, self.state.last_used_index + self.gap_limit
        )
        for index in range(self.state.last_generated_index, keep_through, -1):
            address = self.state.unregister_address(index)
            if address is not None:
                self.backend.unsubscribe_address(address)
        self.state.last_generated_index = min(self.state.last_generated_index, keep_through)

        if (
            snapshot.last_shared_index > self.state.last_used_index
            or self.state.last_shared_index > self.state.last_generated_index
        ):
            self.update_shared(snapshot.last_shared_address, snapshot.last_shared_index)

        self.state.save(self.store)
        logger.debug(
            f"Address pointers restored: shared {self.state.last_shared_index}, "
            f"generated {self.state.last_generated_index}"
        )

    @contextmanager
    def reservation(self, commit: bool = True) -> Iterator[None]:
        """
        Addresses handed out in the block stay taken only if it completes.

        With commit=False they are always given back, for drafts that are
        only previewed.
        """
        snapshot = self.snapshot()
        try:
            yield
        except Exception:
            self.restore(snapshot)
            raise
        if not commit:
            self.restore(snapshot)

    def record_used(self, address: str) -> None:
        """Mark address as used. last_used_index never goes back."""
        index = self.state.index_of(address)
        if index is None:
            raise InvariantViolation(f"Address {address} is not from this wallet")
        if index > self.state.last_used_index:
            self.state.last_used_index = index
            self.state.last_used_address = address

    def subscribe_all(self) -> None:
        for address in self.state.keys:
            self.backend.subscribe_address(address)

    def unsubscribe_all(self) -> None:
        for address in self.state.keys:
            self.backend.unsubscribe_address(address)
