"""
Persisted wallet ledger state.

Storage layout (keys prefixed by wallet:):
- data: {keys: {address: {index}}, xpubkey, historyTransactions, allTokens}
- address: last shared address
- lastSharedIndex, lastGeneratedIndex, lastUsedIndex, lastUsedAddress
"""

from __future__ import annotations

from dataclasses import dataclass, field

from htrwallet.storage import KeyValueStore
from htrwallet.wallet.models import Transaction

DATA_KEY = "wallet:data"
ADDRESS_KEY = "wallet:address"
LAST_SHARED_INDEX_KEY = "wallet:lastSharedIndex"
LAST_GENERATED_INDEX_KEY = "wallet:lastGeneratedIndex"
LAST_USED_INDEX_KEY = "wallet:lastUsedIndex"
LAST_USED_ADDRESS_KEY = "wallet:lastUsedAddress"

STATE_KEYS = (
    DATA_KEY,
    ADDRESS_KEY,
    LAST_SHARED_INDEX_KEY,
    LAST_GENERATED_INDEX_KEY,
    LAST_USED_INDEX_KEY,
    LAST_USED_ADDRESS_KEY,
)


@dataclass
class WalletLedgerState:
    """
    Single owned snapshot of the wallet ledger.

    Indexes are -1 while nothing was generated, shared or used yet.
    history keeps insertion order, which is the order transactions were
    discovered in; input selection depends on it.
    """

    xpubkey: str
    keys: dict[str, int] = field(default_factory=dict)
    last_generated_index: int = -1
    last_shared_index: int = -1
    last_shared_address: str | None = None
    last_used_index: int = -1
    last_used_address: str | None = None
    history: dict[str, Transaction] = field(default_factory=dict)
    all_tokens: dict[str, None] = field(default_factory=dict)
    _by_index: dict[int, str] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._by_index = {index: address for address, index in self.keys.items()}

    def register_address(self, address: str, index: int) -> None:
        self.keys[address] = index
        self._by_index[index] = address

    def unregister_address(self, index: int) -> str | None:
        address = self._by_index.pop(index, None)
        if address is not None:
            del self.keys[address]
        return address

    def index_of(self, address: str | None) -> int | None:
        if address is None:
            return None
        return self.keys.get(address)

    def address_at(self, index: int) -> str | None:
        return self._by_index.get(index)

    def add_token(self, uid: str) -> None:
        self.all_tokens.setdefault(uid, None)

    def to_data(self) -> dict:
        return {
            "keys": {address: {"index": index} for address, index in self.keys.items()},
            "xpubkey": self.xpubkey,
            "historyTransactions": {
                tx_id: tx.model_dump(mode="json") for tx_id, tx in self.history.items()
            },
            "allTokens": list(self.all_tokens),
        }

    def save(self, store: KeyValueStore) -> None:
        store.set_json(DATA_KEY, self.to_data())
        store.set(LAST_GENERATED_INDEX_KEY, str(self.last_generated_index))
        store.set(LAST_SHARED_INDEX_KEY, str(self.last_shared_index))
        store.set(LAST_USED_INDEX_KEY, str(self.last_used_index))
        if self.last_shared_address is not None:
            store.set(ADDRESS_KEY, self.last_shared_address)
        if self.last_used_address is not None:
            store.set(LAST_USED_ADDRESS_KEY, self.last_used_address)

    @classmethod
    def load(cls, store: KeyValueStore) -> WalletLedgerState | None:
        data = store.get_json(DATA_KEY)
        if data is None:
            return None

        keys = {address: entry["index"] for address, entry in data.get("keys", {}).items()}
        history = {
            tx_id: Transaction.model_validate(tx)
            for tx_id, tx in (data.get("historyTransactions") or {}).items()
        }
        return cls(
            xpubkey=data["xpubkey"],
            keys=keys,
            last_generated_index=store.get_int(LAST_GENERATED_INDEX_KEY, -1),
            last_shared_index=store.get_int(LAST_SHARED_INDEX_KEY, -1),
            last_shared_address=store.get(ADDRESS_KEY),
            last_used_index=store.get_int(LAST_USED_INDEX_KEY, -1),
            last_used_address=store.get(LAST_USED_ADDRESS_KEY),
            history=history,
            all_tokens=dict.fromkeys(data.get("allTokens") or []),
        )

    @staticmethod
    def clear(store: KeyValueStore) -> None:
        for key in STATE_KEYS:
            store.remove(key)
