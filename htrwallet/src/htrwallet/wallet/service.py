"""
Wallet service: the operations exposed to a user interface.

Wires the ledger state, credential vault, address manager, reconciler and
transaction builders over one store and one network backend.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from typing import Any

from loguru import logger

from htrwallet.backends.base import BroadcastResult, WalletBackend
from htrwallet.config import WalletConfig
from htrwallet.errors import CredentialMismatch, InvariantViolation, ValidationError
from htrwallet.storage import KeyValueStore
from htrwallet.wallet.addresses import AddressGapManager
from htrwallet.wallet.ledger import UTXOLedger
from htrwallet.wallet.models import (
    NATIVE_TOKEN,
    Balance,
    InputRef,
    OutputDraft,
    TokenCapability,
    TokenConfig,
    TokenDetail,
    TokenTransfer,
    Transaction,
    TxDraft,
)
from htrwallet.wallet.reconciler import HistoryReconciler
from htrwallet.wallet.signing import TransactionCodec
from htrwallet.wallet.state import WalletLedgerState
from htrwallet.wallet.tokens import TOKENS_KEY, TokenAuthorityManager, TokenRegistry
from htrwallet.wallet.tx_builder import TransactionBuilder
from htrwallet.wallet.vault import ACCESS_DATA_KEY, CredentialVault, generate_words

STARTED_KEY = "wallet:started"
BACKUP_KEY = "wallet:backup"
LOCKED_KEY = "wallet:locked"
CLOSED_KEY = "wallet:closed"
SERVER_KEY = "wallet:server"


class WalletService:
    """
    Hathor wallet service.

    Account key path: m/44'/280'/0'/0, address i is its child i.
    Components are rebuilt whenever the ledger state is replaced (generate,
    reload, clean), so they never see a stale state.
    """

    def __init__(
        self,
        store: KeyValueStore,
        backend: WalletBackend,
        codec: TransactionCodec | None = None,
        config: WalletConfig | None = None,
        now: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.backend = backend
        self.codec = codec
        self.config = config or WalletConfig()
        self.now = now
        self.rng = rng

        self.vault = CredentialVault(store)
        self.registry = TokenRegistry(store)

        self.state: WalletLedgerState | None = None
        self._ledger: UTXOLedger | None = None
        self._addresses: AddressGapManager | None = None
        self._reconciler: HistoryReconciler | None = None
        self._builder: TransactionBuilder | None = None
        self._tokens: TokenAuthorityManager | None = None

        state = WalletLedgerState.load(store)
        if state is not None:
            self._attach(state)
            logger.info(f"Loaded wallet with {len(state.keys)} addresses")

    def _attach(self, state: WalletLedgerState) -> None:
        self.state = state
        self._ledger = UTXOLedger(state, now=self.now)
        self._addresses = AddressGapManager(
            state,
            self.store,
            self.backend,
            network=self.config.network.value,
            gap_limit=self.config.gap_limit,
            limit_address_generation=self.config.limit_address_generation,
        )
        self._reconciler = HistoryReconciler(
            state,
            self.store,
            self._ledger,
            self._addresses,
            self.backend,
            gap_limit=self.config.gap_limit,
        )
        self._builder = TransactionBuilder(
            self._ledger,
            self._addresses,
            self.registry,
            self.vault,
            self.backend,
            codec=self.codec,
            rng=self.rng,
        )
        self._tokens = TokenAuthorityManager(
            self._ledger, self._addresses, self.registry, self._builder
        )

    def _detach(self) -> None:
        if self._reconciler is not None:
            self._reconciler.cancel_pending()
        self.state = None
        self._ledger = None
        self._addresses = None
        self._reconciler = None
        self._builder = None
        self._tokens = None

    def _require(self, component: Any) -> Any:
        if component is None:
            raise InvariantViolation("Wallet is not loaded")
        return component

    @property
    def ledger(self) -> UTXOLedger:
        return self._require(self._ledger)

    @property
    def addresses(self) -> AddressGapManager:
        return self._require(self._addresses)

    @property
    def reconciler(self) -> HistoryReconciler:
        return self._require(self._reconciler)

    @property
    def builder(self) -> TransactionBuilder:
        return self._require(self._builder)

    @property
    def token_manager(self) -> TokenAuthorityManager:
        return self._require(self._tokens)

    # Lifecycle

    async def generate_wallet(
        self,
        words: str | None,
        passphrase: str,
        pin: str,
        password: str,
        load_history: bool = True,
    ) -> str:
        """
        Create (or import, when words are given) a wallet.

        Args:
            words: 24 BIP39 words, new ones are generated if None
            passphrase: Optional BIP39 passphrase
            pin: Encrypts the private key, asked when signing
            password: Encrypts the words, asked for backups
            load_history: Scan the first gap_limit addresses right away

        Returns:
            The wallet words

        Raises:
            InvalidMnemonic: If words are not valid
        """
        if words is None:
            words = generate_words()

        handle = self.vault.generate(words, passphrase, pin, password)
        state = WalletLedgerState(xpubkey=handle.xpubkey)
        state.save(self.store)
        self._attach(state)
        logger.info(f"Wallet generated, account fingerprint {handle.fingerprint}")

        if load_history:
            await self.reconciler.load_address_history(0, self.config.gap_limit)
        return self.vault.unlock_words(password)

    async def add_passphrase(self, passphrase: str, pin: str, password: str) -> str:
        """Recreate the wallet from the same words under a new passphrase."""
        words = self.vault.unlock_words(password)
        self.clean_wallet()
        return await self.generate_wallet(words, passphrase, pin, password)

    async def reload_data(self) -> None:
        """
        Drop the ledger and scan history again, keeping credentials and tokens.

        Used after switching servers.
        """
        state = self._require(self.state)
        access = self.store.get(ACCESS_DATA_KEY)
        xpubkey = state.xpubkey

        self.clean_wallet()

        if access is not None:
            self.store.set(ACCESS_DATA_KEY, access)
        new_state = WalletLedgerState(xpubkey=xpubkey)
        new_state.save(self.store)
        self._attach(new_state)

        await self.reconciler.load_address_history(0, self.config.gap_limit)

    async def load_history(self) -> None:
        """
        Sync a loaded wallet, rescanning every generated address from the
        first one. Refills then continue past the last generated address.
        """
        state = self._require(self.state)
        count = max(self.config.gap_limit, state.last_generated_index + 1)
        await self.reconciler.load_address_history(0, count)

    def clean_wallet(self) -> None:
        """Remove wallet keys and ledger, keep tokens and settings"""
        if self._addresses is not None:
            self._addresses.unsubscribe_all()
        self._detach()
        self.vault.clear()
        WalletLedgerState.clear(self.store)
        self.store.remove(CLOSED_KEY)
        logger.info("Wallet data cleaned")

    def reset_all_data(self) -> None:
        """Remove everything the wallet ever stored"""
        self.clean_wallet()
        for key in (SERVER_KEY, STARTED_KEY, BACKUP_KEY, LOCKED_KEY, TOKENS_KEY):
            self.store.remove(key)

    def subscribe_all(self) -> None:
        """Subscribe again to every wallet address, e.g. after a reconnect"""
        self.addresses.subscribe_all()

    async def on_push_message(self, message: dict[str, Any]) -> bool:
        return await self.reconciler.on_push_message(message)

    async def aclose(self) -> None:
        """Cancel pending history fetches and close the backend"""
        if self._reconciler is not None:
            self._reconciler.cancel_pending()
        await self.backend.close()

    # Flags

    def loaded(self) -> bool:
        return self.vault.loaded()

    def started(self) -> bool:
        return self.store.has(STARTED_KEY)

    def mark_wallet_as_started(self) -> None:
        self.store.set(STARTED_KEY, "true")

    def lock(self) -> None:
        self.store.set(LOCKED_KEY, "true")

    def unlock(self, pin: str) -> None:
        """
        Raises:
            CredentialMismatch: If pin is wrong
        """
        if not self.vault.verify_pin(pin):
            raise CredentialMismatch("Invalid PIN")
        self.store.remove(LOCKED_KEY)

    def is_locked(self) -> bool:
        return self.store.has(LOCKED_KEY)

    def close(self) -> None:
        self.store.set(CLOSED_KEY, "true")

    def was_closed(self) -> bool:
        return self.store.has(CLOSED_KEY)

    def mark_backup_as_done(self) -> None:
        self.store.set(BACKUP_KEY, "true")

    def mark_backup_as_not_done(self) -> None:
        self.store.remove(BACKUP_KEY)

    def is_backup_done(self) -> bool:
        return self.store.has(BACKUP_KEY)

    def get_server(self) -> str:
        return self.store.get(SERVER_KEY) or self.config.server

    def change_server(self, server: str) -> None:
        """Store the server to use; call reload_data with a backend for it"""
        self.store.set(SERVER_KEY, server)

    # Credentials

    def get_wallet_words(self, password: str) -> str:
        return self.vault.unlock_words(password)

    def change_pin(self, old_pin: str, new_pin: str) -> None:
        self.vault.change_pin(old_pin, new_pin)

    def change_password(self, old_password: str, new_password: str) -> None:
        self.vault.change_password(old_password, new_password)

    # Addresses and projections

    def current_address(self) -> str:
        return self.addresses.current_shared_address()

    def new_address(self) -> str:
        return self.addresses.new_shared_address()

    def balance(self, token: str = NATIVE_TOKEN.uid) -> Balance:
        return self.ledger.balance(token)

    def filter_history(self, token: str = NATIVE_TOKEN.uid) -> list[Transaction]:
        return self.ledger.filter_history(token)

    def token_detail(self, token: str) -> TokenDetail:
        return self.ledger.token_detail(token)

    def tokens(self) -> list[TokenConfig]:
        return self.registry.get_tokens()

    def all_tokens(self) -> list[str]:
        """Uids of every token seen in the wallet history"""
        return list(self._require(self.state).all_tokens)

    # Tokens registry

    def add_token(self, config: str, uid: str | None = None) -> TokenConfig:
        token = self.registry.validate_token_to_add(config, uid)
        return self.registry.add_token(token.uid, token.name, token.symbol)

    def unregister_token(self, uid: str) -> None:
        self.registry.unregister_token(uid)

    def get_configuration_string(self, uid: str) -> str:
        token = self.registry.token_exists(uid)
        if token is None:
            raise ValidationError(f"Token {uid} is not registered")
        return self.registry.get_configuration_string(token.uid, token.name, token.symbol)

    # Transactions

    def prepare_send(
        self,
        outputs: list[OutputDraft],
        token: TokenConfig = NATIVE_TOKEN,
        inputs: list[InputRef] | None = None,
    ) -> TxDraft:
        """Preview a transfer. Addresses given to change outputs stay available."""
        with self.addresses.reservation(commit=False):
            return self.builder.prepare_send(outputs, token, inputs)

    async def send_tokens(
        self,
        outputs: list[OutputDraft],
        pin: str,
        token: TokenConfig = NATIVE_TOKEN,
        inputs: list[InputRef] | None = None,
    ) -> BroadcastResult:
        return await self.builder.send_tokens(outputs, token, pin, inputs)

    async def send_multi_tokens(self, transfers: list[TokenTransfer], pin: str) -> BroadcastResult:
        """Send several tokens in one transaction."""
        return await self.builder.send_multi_tokens(transfers, pin)

    async def create_token(
        self, address: str, name: str, symbol: str, mint_amount: int, pin: str
    ) -> BroadcastResult:
        return await self.token_manager.create_token(address, name, symbol, mint_amount, pin)

    async def mint_tokens(
        self,
        tx_id: str,
        index: int,
        token: str,
        address: str,
        amount: int,
        pin: str,
        create_another: bool = True,
        create_melt: bool = True,
    ) -> BroadcastResult:
        return await self.token_manager.mint_tokens(
            tx_id, index, token, address, amount, pin, create_another, create_melt
        )

    async def melt_tokens(
        self,
        tx_id: str,
        index: int,
        token: str,
        amount: int,
        pin: str,
        create_another: bool = True,
    ) -> BroadcastResult:
        return await self.token_manager.melt_tokens(tx_id, index, token, amount, pin, create_another)

    async def delegate_authority(
        self,
        tx_id: str,
        index: int,
        token: str,
        destination: str,
        create_another: bool,
        capability: TokenCapability,
        pin: str,
    ) -> BroadcastResult:
        return await self.token_manager.delegate_authority(
            tx_id, index, token, destination, create_another, capability, pin
        )

    async def destroy_authority(
        self, token: str, capability: TokenCapability, count: int, pin: str
    ) -> BroadcastResult:
        """Destroy count of the wallet's authority outputs with capability."""
        outputs = self.ledger.authority_outputs(token, capability)
        return await self.token_manager.destroy_authority(outputs, count, pin, capability)
