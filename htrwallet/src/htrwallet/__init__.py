"""
htrwallet - Deterministic multi-token wallet engine for Hathor

Provides key derivation, encrypted credentials, UTXO tracking, history
reconciliation and transaction building for custom tokens.
"""

__version__ = "0.1.0"

from htrwallet.config import WalletConfig
from htrwallet.errors import (
    CredentialMismatch,
    InsufficientFunds,
    InvalidAddress,
    InvalidKeyMaterial,
    InvalidMnemonic,
    InvariantViolation,
    LockedOutput,
    NetworkError,
    OutputLookupError,
    ValidationError,
    WalletError,
    ZeroAmount,
)
from htrwallet.storage import JsonFileStore, KeyValueStore, MemoryStore
from htrwallet.wallet.service import WalletService

__all__ = [
    "CredentialMismatch",
    "InsufficientFunds",
    "InvalidAddress",
    "InvalidKeyMaterial",
    "InvalidMnemonic",
    "InvariantViolation",
    "JsonFileStore",
    "KeyValueStore",
    "LockedOutput",
    "MemoryStore",
    "NetworkError",
    "OutputLookupError",
    "ValidationError",
    "WalletConfig",
    "WalletError",
    "WalletService",
    "ZeroAmount",
]
