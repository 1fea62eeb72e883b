"""
Wallet error taxonomy.

ValidationError and its subclasses are reported immediately and never retried.
CredentialMismatch asks the user to re-enter a PIN or password.
InsufficientFunds and LockedOutput carry the data needed to explain them.
NetworkError wraps a failed broadcast or fetch with the server message.
InvariantViolation aborts the operation without touching persisted state.
"""

from __future__ import annotations

from datetime import datetime


class WalletError(Exception):
    """Base class for all wallet errors."""

    pass


class ValidationError(WalletError):
    pass


class InvalidMnemonic(ValidationError):
    pass


class ZeroAmount(ValidationError):
    pass


class InvalidAddress(ValidationError):
    pass


class InvalidKeyMaterial(ValidationError):
    pass


class CredentialMismatch(WalletError):
    pass


class OutputLookupError(WalletError):
    """A referenced output can't be used. The message names the failing check."""

    pass


class InsufficientFunds(WalletError):
    def __init__(self, requested: int, available: int, symbol: str = ""):
        self.requested = requested
        self.available = available
        self.symbol = symbol
        prefix = f"Token {symbol}: " if symbol else ""
        super().__init__(
            f"{prefix}Insufficient amount of tokens "
            f"(requested {requested}, available {available}, missing {self.deficit})"
        )

    @property
    def deficit(self) -> int:
        return self.requested - self.available


class LockedOutput(WalletError):
    def __init__(self, tx_id: str, index: int, unlock_time: int):
        self.tx_id = tx_id
        self.index = index
        self.unlock_time = unlock_time
        when = datetime.fromtimestamp(unlock_time).strftime("%Y-%m-%d %H:%M:%S")
        super().__init__(f"Output [{tx_id}, {index}] is locked until {when}")


class NetworkError(WalletError):
    pass


class InvariantViolation(WalletError):
    pass


class TransactionSigningError(InvariantViolation):
    pass
