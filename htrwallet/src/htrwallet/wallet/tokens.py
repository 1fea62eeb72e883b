"""
Custom tokens: the local token registry and authority transactions.

A token is identified by SHA256 of the outpoint spent to create it. Holding an
authority output of a token gives the right to mint or melt it; the
transactions here spend and reissue those outputs with fixed output shapes.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import TYPE_CHECKING

from loguru import logger

from htrwallet.backends.base import BroadcastResult
from htrwallet.errors import (
    CredentialMismatch,
    InsufficientFunds,
    LockedOutput,
    OutputLookupError,
    ValidationError,
    ZeroAmount,
)
from htrwallet.helpers import plural
from htrwallet.storage import KeyValueStore
from htrwallet.wallet.address import validate_address
from htrwallet.wallet.addresses import AddressGapManager
from htrwallet.wallet.ledger import UTXOLedger
from htrwallet.wallet.models import (
    NATIVE_TOKEN,
    InputRef,
    OutputDraft,
    OwnedOutput,
    TokenCapability,
    TokenConfig,
    TxDraft,
    TxOutput,
)

if TYPE_CHECKING:
    from htrwallet.wallet.tx_builder import TransactionBuilder

TOKENS_KEY = "wallet:tokens"

# Authority transactions carry a single custom token
TX_TOKEN_INDEX = 1


def get_token_uid(tx_id: str, index: int) -> str:
    """UID of the token created by spending output index of tx_id"""
    return hashlib.sha256(bytes.fromhex(tx_id) + index.to_bytes(1, "big")).hexdigest()


class TokenRegistry:
    """
    Tokens the user chose to show, persisted under wallet:tokens.

    The native token is always first and can't be removed.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get_tokens(self) -> list[TokenConfig]:
        data = self.store.get_json(TOKENS_KEY)
        if not data:
            return [NATIVE_TOKEN]
        return [TokenConfig.model_validate(item) for item in data]

    def save(self, tokens: list[TokenConfig]) -> None:
        self.store.set_json(TOKENS_KEY, [token.model_dump() for token in tokens])

    def token_exists(self, uid: str) -> TokenConfig | None:
        for token in self.get_tokens():
            if token.uid == uid:
                return token
        return None

    def add_token(self, uid: str, name: str, symbol: str) -> TokenConfig:
        if self.token_exists(uid):
            raise ValidationError(f"Token {uid} is already registered")
        config = TokenConfig(uid=uid, name=name, symbol=symbol)
        tokens = self.get_tokens()
        tokens.append(config)
        self.save(tokens)
        logger.info(f"Registered token {symbol} ({uid})")
        return config

    def unregister_token(self, uid: str) -> None:
        if uid == NATIVE_TOKEN.uid:
            raise ValidationError(f"Can't unregister {NATIVE_TOKEN.symbol}")
        tokens = self.get_tokens()
        remaining = [token for token in tokens if token.uid != uid]
        if len(remaining) == len(tokens):
            raise ValidationError(f"Token {uid} is not registered")
        self.save(remaining)

    def symbol_of(self, uid: str) -> str:
        token = self.token_exists(uid)
        return token.symbol if token else uid

    def get_token_index(self, uid: str, tokens: list[TokenConfig] | None = None) -> int:
        """
        Index of uid to put in an output's token data.

        Native token is always 0, other tokens are 1 + their position in
        tokens without the native token.

        Raises:
            ValidationError: If uid is not in tokens
        """
        if uid == NATIVE_TOKEN.uid:
            return 0
        if tokens is None:
            tokens = self.get_tokens()
        for position, uid_in_list in enumerate(self.tx_token_uids(tokens)):
            if uid_in_list == uid:
                return position + 1
        raise ValidationError(f"Unknown token {uid}")

    @staticmethod
    def tx_token_uids(tokens: list[TokenConfig]) -> list[str]:
        """Token list of a transaction, the native token is implicit"""
        return [token.uid for token in tokens if token.uid != NATIVE_TOKEN.uid]

    @staticmethod
    def get_configuration_string(uid: str, name: str, symbol: str) -> str:
        """Shareable string with the token config: base64 of [uid, name, symbol]"""
        return base64.b64encode(json.dumps([uid, name, symbol]).encode("utf-8")).decode("ascii")

    @staticmethod
    def token_from_configuration_string(config: str) -> TokenConfig:
        """
        Raises:
            ValidationError: If config is not a valid configuration string
        """
        try:
            data = json.loads(base64.b64decode(config, validate=True).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError("Invalid configuration string") from e

        if not isinstance(data, list) or len(data) != 3:
            raise ValidationError("Invalid configuration string")
        if not all(isinstance(item, str) for item in data):
            raise ValidationError("Invalid configuration string")

        uid, name, symbol = data
        return TokenConfig(uid=uid, name=name, symbol=symbol)

    def validate_token_to_add(self, config: str, uid: str | None = None) -> TokenConfig:
        """
        Parse a configuration string and check it can be registered.

        Args:
            config: Configuration string
            uid: If given, the configuration must be for this uid

        Raises:
            ValidationError: Naming why the token can't be added
        """
        token = self.token_from_configuration_string(config)
        if uid and uid != token.uid:
            raise ValidationError(f"Configuration string uid does not match: {uid} != {token.uid}")

        existing = self.token_exists(token.uid)
        if existing:
            raise ValidationError(f"You already have this token: {token.uid} ({existing.name})")
        return token


class TokenAuthorityManager:
    """
    Creation, mint, melt, delegate and destroy transactions.

    Authority outputs reissued to the wallet itself go to the next unused
    address, like change outputs.
    """

    def __init__(
        self,
        ledger: UTXOLedger,
        addresses: AddressGapManager,
        registry: TokenRegistry,
        builder: TransactionBuilder,
    ):
        self.ledger = ledger
        self.addresses = addresses
        self.registry = registry
        self.builder = builder

    def _check_pin(self, pin: str) -> None:
        # Before any output asks for a new address
        if not self.builder.vault.verify_pin(pin):
            raise CredentialMismatch("Invalid PIN")

    @staticmethod
    def _check_amount(amount: int, what: str) -> None:
        if amount == 0:
            raise ZeroAmount(f"Amount to {what} can't be 0")
        if amount < 0:
            raise ValidationError(f"Amount to {what} can't be negative: {amount}")

    @staticmethod
    def _kept_capabilities(
        spent: TxOutput, capability: TokenCapability, create_another: bool
    ) -> TokenCapability:
        """
        Capabilities to reissue to the wallet after spending an authority
        output for capability. Mint and melt bits the operation doesn't use
        are carried over; capability itself only with create_another.
        """
        kept = spent.capabilities & (TokenCapability.MINT | TokenCapability.MELT) & ~capability
        if create_another:
            kept |= capability
        return TokenCapability(kept)

    def _own_authority(self, capability: TokenCapability) -> OutputDraft:
        return OutputDraft.authority(
            self.addresses.get_address_to_use(), capability, TX_TOKEN_INDEX
        )

    async def create_token(
        self,
        address: str,
        name: str,
        symbol: str,
        mint_amount: int,
        pin: str,
        funding: InputRef | None = None,
    ) -> BroadcastResult:
        """
        Create a token and mint its initial supply.

        The creation tx spends one native output, holds an authority output
        with every capability and returns the spent value as change. Once it
        is accepted, the token is registered and mint_amount is minted from
        that authority to address.

        Args:
            address: Address receiving the minted tokens
            name: Token name
            symbol: Token symbol
            mint_amount: Initial supply, in base units
            pin: Wallet PIN
            funding: Native output to spend; the first spendable one if None

        Returns:
            Result of the mint transaction

        Raises:
            InsufficientFunds: If the wallet has no spendable native output
        """
        self._check_amount(mint_amount, "mint")
        validate_address(address, self.addresses.network)
        self._check_pin(pin)

        if funding is None:
            selection = self.ledger.select_inputs(1, NATIVE_TOKEN.uid)
            if not selection.inputs:
                raise InsufficientFunds(1, 0, NATIVE_TOKEN.symbol)
            funding = selection.inputs[0]

        output = self.ledger.find_output(funding.tx_id, funding.index, NATIVE_TOKEN.uid)
        if not self.ledger.can_use(output):
            raise LockedOutput(funding.tx_id, funding.index, output.timelock)

        uid = get_token_uid(funding.tx_id, funding.index)
        with self.addresses.reservation():
            authority = self._own_authority(
                TokenCapability.CREATION | TokenCapability.MINT | TokenCapability.MELT
            )
            change = self.builder.get_output_change(output.amount, 0)
            draft = TxDraft(
                inputs=[InputRef(funding.tx_id, funding.index, NATIVE_TOKEN.uid, output.address)],
                outputs=[authority, change],
                tokens=[uid],
            )
            result = await self.builder.send(draft, pin)

        if result.tokens:
            uid = result.tokens[0]
        self.registry.add_token(uid, name, symbol)
        logger.info(f"Token {symbol} created: {uid}")

        # The new tx is not in the ledger yet, its authority is output 0
        authority_input = InputRef(result.tx_hash, 0, uid, authority.address)
        return await self._mint(authority_input, address, mint_amount, pin, True, True)

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
        """
        Mint amount of token to address by spending a mint authority.

        With create_another and create_melt the tx has exactly three outputs:
        the minted amount, a new mint authority and a new melt authority.
        """
        self._check_amount(amount, "mint")
        validate_address(address, self.addresses.network)
        self._check_pin(pin)

        output = self.ledger.find_authority_output(tx_id, index, token, TokenCapability.MINT)
        authority_input = InputRef(tx_id, index, token, output.address)
        return await self._mint(authority_input, address, amount, pin, create_another, create_melt)

    async def _mint(
        self,
        authority_input: InputRef,
        address: str,
        amount: int,
        pin: str,
        create_another: bool,
        create_melt: bool,
    ) -> BroadcastResult:
        with self.addresses.reservation():
            outputs = [OutputDraft.regular(address, amount, TX_TOKEN_INDEX)]
            if create_another:
                outputs.append(self._own_authority(TokenCapability.MINT))
            if create_melt:
                outputs.append(self._own_authority(TokenCapability.MELT))

            draft = TxDraft(
                inputs=[authority_input], outputs=outputs, tokens=[authority_input.token]
            )
            result = await self.builder.send(draft, pin)
        logger.info(f"Minted {amount} of {authority_input.token}")
        return result

    async def melt_tokens(
        self,
        tx_id: str,
        index: int,
        token: str,
        amount: int,
        pin: str,
        create_another: bool = True,
    ) -> BroadcastResult:
        """
        Destroy amount of token from the wallet's balance using a melt authority.

        Raises:
            InsufficientFunds: If the spendable balance can't cover amount
        """
        self._check_amount(amount, "melt")
        self._check_pin(pin)

        output = self.ledger.find_authority_output(tx_id, index, token, TokenCapability.MELT)
        selection = self.ledger.select_inputs(amount, token)
        if selection.total < amount:
            raise InsufficientFunds(amount, selection.total, self.registry.symbol_of(token))

        with self.addresses.reservation():
            outputs = []
            if selection.total > amount:
                outputs.append(
                    OutputDraft.regular(
                        self.addresses.get_address_to_use(), selection.total - amount, TX_TOKEN_INDEX
                    )
                )
            kept = self._kept_capabilities(output, TokenCapability.MELT, create_another)
            if kept:
                outputs.append(self._own_authority(kept))

            draft = TxDraft(
                inputs=[InputRef(tx_id, index, token, output.address), *selection.inputs],
                outputs=outputs,
                tokens=[token],
            )
            result = await self.builder.send(draft, pin)
        logger.info(f"Melted {amount} of {token}")
        return result

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
        """
        Send a mint or melt authority to destination, optionally keeping a
        new one of the same capability in the wallet.
        """
        if capability not in (TokenCapability.MINT, TokenCapability.MELT):
            raise ValidationError(f"Only mint or melt authorities can be delegated: {capability!r}")
        validate_address(destination, self.addresses.network)
        self._check_pin(pin)

        output = self.ledger.find_authority_output(tx_id, index, token, capability)
        with self.addresses.reservation():
            outputs = [OutputDraft.authority(destination, capability, TX_TOKEN_INDEX)]
            kept = self._kept_capabilities(output, capability, create_another)
            if kept:
                outputs.append(self._own_authority(kept))

            draft = TxDraft(
                inputs=[InputRef(tx_id, index, token, output.address)],
                outputs=outputs,
                tokens=[token],
            )
            result = await self.builder.send(draft, pin)
        logger.info(f"Delegated {capability.name.lower()} authority of {token} to {destination}")
        return result

    async def destroy_authority(
        self,
        outputs: list[OwnedOutput],
        count: int,
        pin: str,
        capability: TokenCapability | None = None,
    ) -> BroadcastResult:
        """
        Spend the first count authority outputs.

        Without capability the outputs are destroyed whole. With it only that
        capability is destroyed: other mint or melt bits of a spent output are
        reissued to the wallet.

        Raises:
            ValidationError: If count is not between 1 and len(outputs)
        """
        if count < 1:
            raise ValidationError("Quantity to destroy must be at least 1")
        if count > len(outputs):
            noun = plural(len(outputs), "output", "outputs")
            raise ValidationError(f"You only have {len(outputs)} {noun} to destroy.")
        self._check_pin(pin)

        inputs = []
        for owned in outputs[:count]:
            if not owned.output.is_authority or owned.output.spent_by is not None:
                raise OutputLookupError(
                    f"Output [{owned.index}] of transaction [{owned.tx_id}] "
                    "is not an unspent authority output"
                )
            inputs.append(InputRef(owned.tx_id, owned.index, owned.output.token, owned.address))

        token = inputs[0].token
        with self.addresses.reservation():
            reissued = []
            if capability is not None:
                for owned in outputs[:count]:
                    kept = self._kept_capabilities(owned.output, capability, False)
                    if kept:
                        reissued.append(self._own_authority(kept))

            draft = TxDraft(inputs=inputs, outputs=reissued, tokens=[token])
            result = await self.builder.send(draft, pin)
        logger.info(f"Destroyed {count} authority outputs of {token}")
        return result
