"""
Transaction signing.

The byte layout of transactions belongs to a TransactionCodec supplied by the
caller. This module only computes the sighash over the codec's data-to-sign,
signs it with the key of each input's address and builds the input data.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod

from loguru import logger

from htrwallet.errors import TransactionSigningError
from htrwallet.wallet.bip32 import HDKey
from htrwallet.wallet.models import TxDraft


class TransactionCodec(ABC):
    """Serialization of wallet drafts into the ledger's wire format."""

    @abstractmethod
    def data_to_sign(self, draft: TxDraft) -> bytes:
        """Bytes covered by input signatures (the draft without input data)"""

    @abstractmethod
    def serialize(self, draft: TxDraft) -> bytes:
        """Complete signed transaction, ready to broadcast"""


def sighash(data_to_sign: bytes) -> bytes:
    return hashlib.sha256(data_to_sign).digest()


def push_data(data: bytes) -> bytes:
    if len(data) > 75:
        raise TransactionSigningError(f"Push data too long: {len(data)}")
    return bytes([len(data)]) + data


def create_input_data(signature: bytes, pubkey_bytes: bytes) -> bytes:
    """P2PKH input data: <signature> <pubkey>"""
    return push_data(signature) + push_data(pubkey_bytes)


def sign_draft(
    draft: TxDraft,
    codec: TransactionCodec,
    account_key: HDKey,
    keys: dict[str, int],
) -> TxDraft:
    """
    Sign every input of draft in place.

    Args:
        draft: Transaction to sign
        codec: Codec producing the data to sign
        account_key: Private account key, address i is its child i
        keys: Wallet address -> index map

    Returns:
        The same draft with input data filled in

    Raises:
        TransactionSigningError: If an input address is not from this wallet
    """
    hashed = sighash(codec.data_to_sign(draft))

    for tx_input in draft.inputs:
        index = keys.get(tx_input.address)
        if index is None:
            raise TransactionSigningError(
                f"Input [{tx_input.tx_id}, {tx_input.index}] address {tx_input.address} "
                "is not from this wallet"
            )
        child = account_key.derive_child(index)
        # Already hashed, coincurve must not hash again
        signature = child.private_key.sign(hashed, hasher=None)
        tx_input.data = create_input_data(signature, child.get_public_key_bytes())

    logger.debug(f"Signed {len(draft.inputs)} inputs")
    return draft
