"""
UTXO ledger over the wallet's transaction history.

Transactions live in WalletLedgerState.history, ordered by discovery. Every
query walks that order, so results (input selection in particular) are
deterministic for a given history.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator

from htrwallet.constants import TOKEN_AUTHORITY_MASK
from htrwallet.errors import OutputLookupError
from htrwallet.wallet.models import (
    Balance,
    InputRef,
    InputSelection,
    OwnedOutput,
    TokenCapability,
    TokenDetail,
    Transaction,
    TxOutput,
)
from htrwallet.wallet.state import WalletLedgerState


class UTXOLedger:
    def __init__(self, state: WalletLedgerState, now: Callable[[], float] = time.time):
        self.state = state
        self.now = now

    def record_transaction(self, tx: Transaction) -> bool:
        """
        Insert or replace a transaction. Returns True if anything changed.

        A known tx keeps its discovery position when it is updated.
        """
        current = self.state.history.get(tx.tx_id)
        if current == tx:
            return False
        self.state.history[tx.tx_id] = tx
        return True

    def is_mine(self, address: str | None) -> bool:
        return address is not None and address in self.state.keys

    @staticmethod
    def is_authority(output: TxOutput) -> bool:
        return (output.token_data & TOKEN_AUTHORITY_MASK) != 0

    @classmethod
    def is_mint_output(cls, output: TxOutput) -> bool:
        return cls.is_authority(output) and TokenCapability.MINT in output.capabilities

    @classmethod
    def is_melt_output(cls, output: TxOutput) -> bool:
        return cls.is_authority(output) and TokenCapability.MELT in output.capabilities

    def can_use(self, output: TxOutput) -> bool:
        """Check the output timelock, if any, already expired"""
        if output.timelock:
            return self.now() > output.timelock
        return True

    def _owned_outputs(self, token: str) -> Iterator[OwnedOutput]:
        """Unspent outputs of token at wallet addresses, in discovery order."""
        for tx in self.state.history.values():
            if tx.is_voided:
                continue
            for index, output in enumerate(tx.outputs):
                if output.spent_by is not None or output.token != token:
                    continue
                if not self.is_mine(output.address):
                    continue
                yield OwnedOutput(tx.tx_id, index, output)

    def select_inputs(self, amount: int, token: str) -> InputSelection:
        """
        First-fit selection of spendable outputs of token.

        Stops as soon as the total covers amount. The caller compares the total
        against amount to detect insufficient funds.
        """
        selection = InputSelection(inputs=[], total=0)
        for owned in self._owned_outputs(token):
            if selection.total >= amount:
                break
            if self.is_authority(owned.output) or not self.can_use(owned.output):
                continue
            selection.total += owned.output.amount
            selection.inputs.append(InputRef(owned.tx_id, owned.index, token, owned.address))
        return selection

    def balance(self, token: str) -> Balance:
        balance = Balance()
        for owned in self._owned_outputs(token):
            if self.is_authority(owned.output):
                continue
            if self.can_use(owned.output):
                balance.available += owned.output.amount
            else:
                balance.locked += owned.output.amount
        return balance

    def _get_output(self, tx_id: str, index: int) -> TxOutput:
        tx = self.state.history.get(tx_id)
        if tx is None:
            raise OutputLookupError(f"Transaction [{tx_id}] does not exist in the wallet")
        if tx.is_voided:
            raise OutputLookupError(f"Transaction [{tx_id}] is voided")
        if index < 0 or index >= len(tx.outputs):
            raise OutputLookupError(
                f"Transaction [{tx_id}] does not have this output [index={index}]"
            )
        return tx.outputs[index]

    def find_output(self, tx_id: str, index: int, token: str) -> TxOutput:
        """
        Get an unspent regular output of the wallet.

        Raises:
            OutputLookupError: Naming the first check that failed
        """
        output = self._get_output(tx_id, index)

        if self.is_authority(output):
            raise OutputLookupError(
                f"Output [{index}] of transaction [{tx_id}] is an authority output"
            )
        if not self.is_mine(output.address):
            raise OutputLookupError(f"Output [{index}] of transaction [{tx_id}] is not yours")
        if output.token != token:
            raise OutputLookupError(
                f"Output [{index}] of transaction [{tx_id}] is not from selected token [{token}]"
            )
        if output.spent_by is not None:
            raise OutputLookupError(f"Output [{index}] of transaction [{tx_id}] is already spent")
        return output

    def find_authority_output(
        self, tx_id: str, index: int, token: str, capability: TokenCapability
    ) -> TxOutput:
        """
        Get an unspent authority output of the wallet holding capability.

        Raises:
            OutputLookupError: Naming the first check that failed
        """
        output = self._get_output(tx_id, index)

        if not self.is_authority(output):
            raise OutputLookupError(
                f"Output [{index}] of transaction [{tx_id}] is not an authority output"
            )
        if not self.is_mine(output.address):
            raise OutputLookupError(f"Output [{index}] of transaction [{tx_id}] is not yours")
        if output.token != token:
            raise OutputLookupError(
                f"Output [{index}] of transaction [{tx_id}] is not from selected token [{token}]"
            )
        if capability not in output.capabilities:
            raise OutputLookupError(
                f"Output [{index}] of transaction [{tx_id}] has no {capability.name.lower()} authority"
            )
        if output.spent_by is not None:
            raise OutputLookupError(f"Output [{index}] of transaction [{tx_id}] is already spent")
        return output

    def authority_outputs(self, token: str, capability: TokenCapability) -> list[OwnedOutput]:
        return [
            owned
            for owned in self._owned_outputs(token)
            if self.is_authority(owned.output) and capability in owned.output.capabilities
        ]

    def has_token_and_address(self, tx: Transaction, token: str) -> bool:
        """Check tx moves token from or to a wallet address"""
        for txin in tx.inputs:
            if txin.token == token and self.is_mine(txin.address):
                return True
        for txout in tx.outputs:
            if txout.token == token and self.is_mine(txout.address):
                return True
        return False

    def filter_history(self, token: str) -> list[Transaction]:
        """Wallet transactions of token, newest first."""
        data = [tx for tx in self.state.history.values() if self.has_token_and_address(tx, token)]
        data.sort(key=lambda tx: tx.timestamp, reverse=True)
        return data

    def token_detail(self, token: str) -> TokenDetail:
        detail = TokenDetail()
        for owned in self._owned_outputs(token):
            if not self.is_authority(owned.output):
                detail.wallet_amount += owned.output.amount
                continue
            if self.is_mint_output(owned.output):
                detail.mint_outputs.append(owned)
            if self.is_melt_output(owned.output):
                detail.melt_outputs.append(owned)
        return detail
