"""
Wallet data models.

Transactions, inputs and outputs are parsed from the history API with pydantic.
Drafts of new transactions are plain dataclasses filled in by the builders.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntFlag

from pydantic import BaseModel, ConfigDict, Field

from htrwallet.constants import (
    HATHOR_TOKEN_CONFIG,
    TOKEN_AUTHORITY_MASK,
    TOKEN_CREATION_MASK,
    TOKEN_INDEX_MASK,
    TOKEN_MELT_MASK,
    TOKEN_MINT_MASK,
)
from htrwallet.errors import InvariantViolation


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"


class TokenCapability(IntFlag):
    """Capabilities carried by an authority output."""

    NONE = 0
    CREATION = TOKEN_CREATION_MASK
    MINT = TOKEN_MINT_MASK
    MELT = TOKEN_MELT_MASK


class OutputKind(str, Enum):
    REGULAR = "regular"
    AUTHORITY = "authority"


class TokenConfig(BaseModel):
    uid: str
    name: str
    symbol: str


NATIVE_TOKEN = TokenConfig(**HATHOR_TOKEN_CONFIG)


class DecodedScript(BaseModel):
    """Decoded output script as returned by the full node."""

    model_config = ConfigDict(extra="allow")

    address: str | None = None
    timelock: int | None = None


class TxInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    tx_id: str
    index: int
    token: str = NATIVE_TOKEN.uid
    value: int = 0
    token_data: int = 0
    decoded: DecodedScript = Field(default_factory=DecodedScript)

    @property
    def address(self) -> str | None:
        return self.decoded.address


class TxOutput(BaseModel):
    """
    Output of a recorded transaction.

    The value field is overloaded by the protocol: for authority outputs it
    holds a capability bitmask. Use amount or capabilities, which check the
    kind, instead of reading value directly.
    """

    model_config = ConfigDict(extra="allow")

    value: int
    token_data: int = 0
    token: str = NATIVE_TOKEN.uid
    decoded: DecodedScript = Field(default_factory=DecodedScript)
    spent_by: str | None = None

    @property
    def kind(self) -> OutputKind:
        if self.token_data & TOKEN_AUTHORITY_MASK:
            return OutputKind.AUTHORITY
        return OutputKind.REGULAR

    @property
    def is_authority(self) -> bool:
        return self.kind is OutputKind.AUTHORITY

    @property
    def token_index(self) -> int:
        return self.token_data & TOKEN_INDEX_MASK

    @property
    def amount(self) -> int:
        if self.is_authority:
            raise InvariantViolation("Authority output has no amount")
        return self.value

    @property
    def capabilities(self) -> TokenCapability:
        if not self.is_authority:
            raise InvariantViolation("Regular output has no capabilities")
        return TokenCapability(self.value & (TOKEN_CREATION_MASK | TOKEN_MINT_MASK | TOKEN_MELT_MASK))

    @property
    def address(self) -> str | None:
        return self.decoded.address

    @property
    def timelock(self) -> int | None:
        return self.decoded.timelock


class Transaction(BaseModel):
    model_config = ConfigDict(extra="allow")

    tx_id: str
    timestamp: int = 0
    is_voided: bool = False
    inputs: list[TxInput] = Field(default_factory=list)
    outputs: list[TxOutput] = Field(default_factory=list)
    tokens: list[str] = Field(default_factory=list)


@dataclass(frozen=True)
class Address:
    index: int
    value: str
    derived_from: str


@dataclass
class InputRef:
    """Reference to an output being spent by a draft."""

    tx_id: str
    index: int
    token: str
    address: str
    data: bytes = b""


@dataclass
class OutputDraft:
    address: str
    value: int
    token_data: int = 0
    timelock: int | None = None

    @classmethod
    def regular(
        cls, address: str, amount: int, token_index: int = 0, timelock: int | None = None
    ) -> OutputDraft:
        return cls(address, amount, token_index & TOKEN_INDEX_MASK, timelock)

    @classmethod
    def authority(
        cls, address: str, capabilities: TokenCapability, token_index: int = 1
    ) -> OutputDraft:
        return cls(address, int(capabilities), TOKEN_AUTHORITY_MASK | (token_index & TOKEN_INDEX_MASK))

    @property
    def is_authority(self) -> bool:
        return bool(self.token_data & TOKEN_AUTHORITY_MASK)

    @property
    def token_index(self) -> int:
        return self.token_data & TOKEN_INDEX_MASK


@dataclass
class TokenTransfer:
    """Outputs of one token in a transfer, with the inputs to pay them if given."""

    token: TokenConfig
    outputs: list[OutputDraft]
    inputs: list[InputRef] | None = None


@dataclass
class TxDraft:
    """Transaction assembled by the wallet, before and after signing."""

    inputs: list[InputRef] = field(default_factory=list)
    outputs: list[OutputDraft] = field(default_factory=list)
    tokens: list[str] = field(default_factory=list)


@dataclass
class InputSelection:
    inputs: list[InputRef]
    total: int


@dataclass
class Balance:
    available: int = 0
    locked: int = 0

    @property
    def total(self) -> int:
        return self.available + self.locked


@dataclass
class OwnedOutput:
    """An output of the wallet together with its outpoint."""

    tx_id: str
    index: int
    output: TxOutput

    @property
    def address(self) -> str:
        return self.output.address or ""


@dataclass
class TokenDetail:
    mint_outputs: list[OwnedOutput] = field(default_factory=list)
    melt_outputs: list[OwnedOutput] = field(default_factory=list)
    wallet_amount: int = 0
