"""
Transaction builder for token transfers.

Builds a draft from requested outputs, choosing inputs from the ledger when
the caller does not give them and adding a change output for any surplus.
The same sign and broadcast pipeline is used by the token authority
operations.
"""

from __future__ import annotations

import random

from loguru import logger

from htrwallet.backends.base import BroadcastResult, WalletBackend
from htrwallet.errors import (
    CredentialMismatch,
    InsufficientFunds,
    InvariantViolation,
    LockedOutput,
    NetworkError,
    ValidationError,
    ZeroAmount,
)
from htrwallet.wallet.address import validate_address
from htrwallet.wallet.addresses import AddressGapManager
from htrwallet.wallet.ledger import UTXOLedger
from htrwallet.wallet.models import (
    NATIVE_TOKEN,
    InputRef,
    OutputDraft,
    TokenConfig,
    TokenTransfer,
    TxDraft,
)
from htrwallet.wallet.signing import TransactionCodec, sign_draft
from htrwallet.wallet.tokens import TokenRegistry
from htrwallet.wallet.vault import CredentialVault


class TransactionBuilder:
    def __init__(
        self,
        ledger: UTXOLedger,
        addresses: AddressGapManager,
        registry: TokenRegistry,
        vault: CredentialVault,
        backend: WalletBackend,
        codec: TransactionCodec | None = None,
        rng: random.Random | None = None,
    ):
        self.ledger = ledger
        self.addresses = addresses
        self.registry = registry
        self.vault = vault
        self.backend = backend
        self.codec = codec
        self.rng = rng or random.SystemRandom()

    def get_output_change(self, value: int, token_index: int) -> OutputDraft:
        """Change output to a fresh wallet address"""
        return OutputDraft.regular(self.addresses.get_address_to_use(), value, token_index)

    def _validate_outputs(self, outputs: list[OutputDraft]) -> int:
        total = 0
        for output in outputs:
            validate_address(output.address, self.addresses.network)
            if output.value < 0:
                raise ValidationError(f"Output value can't be negative: {output.value}")
            total += output.value
        return total

    def _tx_tokens(self, transfers: list[TokenTransfer]) -> list[TokenConfig]:
        """Tokens of the tx in transfer order; each must be registered and appear once."""
        tokens: list[TokenConfig] = []
        for transfer in transfers:
            uid = transfer.token.uid
            if uid != NATIVE_TOKEN.uid and self.registry.token_exists(uid) is None:
                raise ValidationError(f"Unknown token {uid}")
            if any(token.uid == uid for token in tokens):
                raise ValidationError(f"Token {transfer.token.symbol} is sent more than once")
            tokens.append(transfer.token)
        return tokens

    def _prepare_transfer(
        self, transfer: TokenTransfer, token_index: int, spent: set[tuple[str, int]]
    ) -> tuple[list[InputRef], list[OutputDraft]]:
        token = transfer.token
        requested = self._validate_outputs(transfer.outputs)
        if requested == 0:
            raise ZeroAmount(f"Token: {token.symbol}. Total value can't be 0")

        new_outputs = [
            OutputDraft.regular(output.address, output.value, token_index, output.timelock)
            for output in transfer.outputs
        ]

        if transfer.inputs is None:
            selection = self.ledger.select_inputs(requested, token.uid)
            if selection.total < requested:
                raise InsufficientFunds(requested, selection.total, token.symbol)

            if selection.total > requested:
                new_outputs.append(self.get_output_change(selection.total - requested, token_index))
                # Change must not always sit at the same position
                self.rng.shuffle(new_outputs)
            return selection.inputs, new_outputs

        new_inputs = []
        total = 0
        for tx_input in transfer.inputs:
            outpoint = (tx_input.tx_id, tx_input.index)
            if outpoint in spent:
                raise ValidationError(
                    f"Output [{tx_input.index}] of transaction [{tx_input.tx_id}] "
                    "is used more than once"
                )
            spent.add(outpoint)

            output = self.ledger.find_output(tx_input.tx_id, tx_input.index, token.uid)
            if not self.ledger.can_use(output):
                raise LockedOutput(tx_input.tx_id, tx_input.index, output.timelock)
            total += output.amount
            new_inputs.append(InputRef(tx_input.tx_id, tx_input.index, token.uid, output.address))

        if total < requested:
            raise InsufficientFunds(requested, total, token.symbol)

        if total > requested:
            new_outputs.append(self.get_output_change(total - requested, token_index))
        return new_inputs, new_outputs

    def prepare_send_multi(self, transfers: list[TokenTransfer]) -> TxDraft:
        """
        Prepare one transaction moving several tokens.

        Inputs and outputs of each transfer are laid out one token after the
        other. The tx token list holds the custom tokens of the transfers, so
        a plain native transfer has an empty list.

        Moves the shared address for every change output; callers wrap this
        in AddressGapManager.reservation to give them back on failure.

        Raises:
            ValidationError: If a token is unknown or repeated, or an input is repeated
            ZeroAmount: If outputs of a token sum to zero
            InsufficientFunds: If the inputs don't cover the outputs
            OutputLookupError: If a given input can't be spent
            LockedOutput: If a given input is still timelocked
        """
        if not transfers:
            raise ValidationError("Nothing to send")

        tokens = self._tx_tokens(transfers)
        draft = TxDraft(tokens=TokenRegistry.tx_token_uids(tokens))
        spent: set[tuple[str, int]] = set()

        for transfer in transfers:
            token_index = self.registry.get_token_index(transfer.token.uid, tokens)
            inputs, outputs = self._prepare_transfer(transfer, token_index, spent)
            draft.inputs.extend(inputs)
            draft.outputs.extend(outputs)
        return draft

    def prepare_send(
        self,
        outputs: list[OutputDraft],
        token: TokenConfig,
        inputs: list[InputRef] | None = None,
    ) -> TxDraft:
        """
        Prepare a transfer of token to outputs.

        Args:
            outputs: Requested outputs, their token data is set here
            token: Token being sent
            inputs: Outputs to spend; chosen from the ledger if None
        """
        return self.prepare_send_multi([TokenTransfer(token, outputs, inputs)])

    def sign(self, draft: TxDraft, pin: str) -> TxDraft:
        """
        Raises:
            CredentialMismatch: If pin is wrong
            TransactionSigningError: If an input is not from this wallet
        """
        if self.codec is None:
            raise InvariantViolation("No transaction codec configured")
        account_key = self.vault.unlock_private_key(pin)
        return sign_draft(draft, self.codec, account_key, self.ledger.state.keys)

    async def broadcast(self, draft: TxDraft) -> BroadcastResult:
        """
        Push a signed draft. On failure the draft is dropped, not retried.

        Raises:
            NetworkError: With the server message if the tx was rejected
        """
        tx_hex = self.codec.serialize(draft).hex()
        result = await self.backend.broadcast_transaction(tx_hex)
        if not result.success:
            logger.error(f"Transaction rejected: {result.message}")
            raise NetworkError(result.message or "Transaction rejected")

        logger.info(f"Transaction broadcast: {result.tx_hash}")
        return result

    async def send(self, draft: TxDraft, pin: str) -> BroadcastResult:
        self.sign(draft, pin)
        return await self.broadcast(draft)

    async def send_multi_tokens(self, transfers: list[TokenTransfer], pin: str) -> BroadcastResult:
        """
        Prepare, sign and broadcast a transfer.

        Change addresses are only kept taken if the network accepts the tx.
        """
        if not self.vault.verify_pin(pin):
            # Check before any change output takes an address
            raise CredentialMismatch("Invalid PIN")
        with self.addresses.reservation():
            draft = self.prepare_send_multi(transfers)
            return await self.send(draft, pin)

    async def send_tokens(
        self,
        outputs: list[OutputDraft],
        token: TokenConfig,
        pin: str,
        inputs: list[InputRef] | None = None,
    ) -> BroadcastResult:
        return await self.send_multi_tokens([TokenTransfer(token, outputs, inputs)], pin)
