"""
Pytest configuration and fixtures for wallet tests.
"""

from __future__ import annotations

import json
import random
from collections.abc import Awaitable, Callable

import pytest
import pytest_asyncio
from coincurve import PrivateKey

from htrwallet.backends.base import BroadcastResult, WalletBackend
from htrwallet.config import WalletConfig
from htrwallet.storage import MemoryStore
from htrwallet.wallet.address import derive_address, pubkey_to_address
from htrwallet.wallet.bip32 import account_key_from_mnemonic
from htrwallet.wallet.models import NATIVE_TOKEN, Transaction, TxDraft
from htrwallet.wallet.service import WalletService
from htrwallet.wallet.signing import TransactionCodec

# BIP39 test vector: all-zero entropy, 24 words
TEST_WORDS = " ".join(["abandon"] * 23 + ["art"])
TEST_PIN = "123456"
TEST_PASSWORD = "s3cret-password"

# Fixed clock for timelock checks
NOW = 1_700_000_000

OUTPUT_DEFAULTS = (None, None, NATIVE_TOKEN.uid, 0, None)
INPUT_DEFAULTS = (None, None, None, NATIVE_TOKEN.uid)


def tx_id(n: int) -> str:
    return f"{n:064x}"


class FakeBackend(WalletBackend):
    """In-memory network: serves history touching the requested addresses."""

    def __init__(self, history: list[Transaction] | None = None):
        self.history: list[Transaction] = list(history or [])
        self.subscribed: set[str] = set()
        self.fetch_calls: list[list[str]] = []
        self.broadcasts: list[str] = []
        self.broadcast_result: BroadcastResult | None = None
        self.closed = False

    async def fetch_address_history(self, addresses: list[str]) -> list[Transaction]:
        self.fetch_calls.append(list(addresses))
        wanted = set(addresses)
        result = []
        for tx in self.history:
            touched = {txin.address for txin in tx.inputs} | {txout.address for txout in tx.outputs}
            if touched & wanted:
                result.append(tx)
        return result

    async def broadcast_transaction(self, tx_hex: str) -> BroadcastResult:
        self.broadcasts.append(tx_hex)
        if self.broadcast_result is not None:
            return self.broadcast_result
        return BroadcastResult(success=True, tx={"hash": tx_id(0xB00 + len(self.broadcasts))})

    def subscribe_address(self, address: str) -> None:
        self.subscribed.add(address)

    def unsubscribe_address(self, address: str) -> None:
        self.subscribed.discard(address)

    async def close(self) -> None:
        self.closed = True


class FakeCodec(TransactionCodec):
    """JSON stand-in for the ledger wire format. Keeps every serialized draft."""

    def __init__(self) -> None:
        self.serialized: list[TxDraft] = []

    def _payload(self, draft: TxDraft, with_data: bool) -> dict:
        return {
            "inputs": [
                {
                    "tx_id": txin.tx_id,
                    "index": txin.index,
                    **({"data": txin.data.hex()} if with_data else {}),
                }
                for txin in draft.inputs
            ],
            "outputs": [
                {"address": out.address, "value": out.value, "token_data": out.token_data}
                for out in draft.outputs
            ],
            "tokens": draft.tokens,
        }

    def data_to_sign(self, draft: TxDraft) -> bytes:
        return json.dumps(self._payload(draft, False), sort_keys=True).encode()

    def serialize(self, draft: TxDraft) -> bytes:
        self.serialized.append(draft)
        return json.dumps(self._payload(draft, True), sort_keys=True).encode()

    @property
    def last(self) -> TxDraft:
        return self.serialized[-1]


@pytest.fixture(scope="session")
def account_xpub() -> str:
    return account_key_from_mnemonic(TEST_WORDS).xpub


@pytest.fixture(scope="session")
def wallet_address(account_xpub: str) -> Callable[[int], str]:
    """Address of the test wallet at an index."""

    def _address(index: int) -> str:
        return derive_address(account_xpub, index).value

    return _address


@pytest.fixture(scope="session")
def external_address() -> str:
    """An address that is not from the test wallet."""
    return pubkey_to_address(PrivateKey(b"\x01" * 32).public_key.format(compressed=True))


@pytest.fixture
def make_tx() -> Callable[..., Transaction]:
    """
    Build a history transaction.

    outputs: (address, value) or (address, value, token, token_data, timelock)
    inputs: (tx_id, index, address) or (tx_id, index, address, token)
    spent_by: output index -> id of the spending tx
    """

    def _make_tx(
        n: int,
        outputs: list[tuple] = (),
        inputs: list[tuple] = (),
        timestamp: int = NOW - 1000,
        is_voided: bool = False,
        spent_by: dict[int, str] | None = None,
    ) -> Transaction:
        spent_by = spent_by or {}
        raw_outputs = []
        for position, out in enumerate(outputs):
            address, value, token, token_data, timelock = tuple(out) + OUTPUT_DEFAULTS[len(out) :]
            raw_outputs.append(
                {
                    "value": value,
                    "token_data": token_data,
                    "token": token,
                    "decoded": {"address": address, "timelock": timelock},
                    "spent_by": spent_by.get(position),
                }
            )
        raw_inputs = []
        for txin in inputs:
            spent_tx, index, address, token = tuple(txin) + INPUT_DEFAULTS[len(txin) :]
            raw_inputs.append(
                {
                    "tx_id": spent_tx,
                    "index": index,
                    "token": token,
                    "decoded": {"address": address},
                }
            )
        return Transaction.model_validate(
            {
                "tx_id": tx_id(n),
                "timestamp": timestamp,
                "is_voided": is_voided,
                "inputs": raw_inputs,
                "outputs": raw_outputs,
            }
        )

    return _make_tx


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def make_service(
    store: MemoryStore, backend: FakeBackend, codec: FakeCodec
) -> Callable[..., Awaitable[WalletService]]:
    """Generate a wallet from TEST_WORDS over the shared store and backend."""

    async def _make_service(config: WalletConfig | None = None, **kwargs) -> WalletService:
        wallet = WalletService(
            store,
            backend,
            codec=codec,
            config=config or WalletConfig(),
            now=lambda: NOW,
            rng=random.Random(0),
        )
        await wallet.generate_wallet(TEST_WORDS, "", TEST_PIN, TEST_PASSWORD, **kwargs)
        return wallet

    return _make_service


@pytest_asyncio.fixture
async def service(make_service: Callable[..., Awaitable[WalletService]]) -> WalletService:
    """Wallet generated from TEST_WORDS, first gap of addresses scanned."""
    return await make_service()


@pytest.fixture
def test_words() -> str:
    return TEST_WORDS


@pytest.fixture
def pin() -> str:
    return TEST_PIN


@pytest.fixture
def password() -> str:
    return TEST_PASSWORD


@pytest.fixture
def now() -> int:
    return NOW
