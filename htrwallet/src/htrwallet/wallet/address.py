"""
Address generation utilities.

Addresses are P2PKH: base58check(version byte + HASH160(compressed pubkey)).
"""

from __future__ import annotations

from functools import lru_cache

import base58

from htrwallet.constants import VERSION_BYTES
from htrwallet.errors import InvalidAddress, InvalidKeyMaterial
from htrwallet.wallet.bip32 import HARDENED_OFFSET, HDKey, hash160
from htrwallet.wallet.models import Address


def _version_byte(network: str, kind: str = "p2pkh") -> int:
    try:
        return VERSION_BYTES[network][kind]
    except KeyError:
        raise ValueError(f"Unknown network: {network}") from None


def pubkey_to_address(pubkey_bytes: bytes, network: str = "mainnet") -> str:
    """Convert compressed public key to a P2PKH address."""
    if len(pubkey_bytes) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey_bytes)}")

    payload = bytes([_version_byte(network)]) + hash160(pubkey_bytes)
    return base58.b58encode_check(payload).decode("ascii")


@lru_cache(maxsize=16)
def _parse_xpub(xpub: str) -> HDKey:
    try:
        key = HDKey.from_extended_key(xpub)
    except ValueError as e:
        raise InvalidKeyMaterial(f"Invalid extended public key: {e}") from e
    return key.neuter()


def derive_address(xpub: str, index: int, network: str = "mainnet") -> Address:
    """
    Derive the wallet address at index from the account xpub.

    Pure function: the same (xpub, index, network) always yields the same
    address.

    Raises:
        InvalidKeyMaterial: If xpub is malformed
    """
    if index < 0 or index >= HARDENED_OFFSET:
        raise InvalidKeyMaterial(f"Address index out of range: {index}")

    key = _parse_xpub(xpub)
    try:
        child = key.derive_child(index)
    except ValueError as e:
        raise InvalidKeyMaterial(str(e)) from e

    return Address(index=index, value=child.get_address(network), derived_from=xpub)


def validate_address(address: str, network: str = "mainnet") -> bytes:
    """
    Check an address belongs to the network.

    Returns:
        The 20-byte public key hash

    Raises:
        InvalidAddress: On bad encoding, checksum, length or version byte
    """
    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise InvalidAddress(f"Invalid address {address}: {e}") from e

    if len(decoded) != 21:
        raise InvalidAddress(f"Invalid address {address}: wrong length")

    valid_versions = (_version_byte(network, "p2pkh"), _version_byte(network, "p2sh"))
    if decoded[0] not in valid_versions:
        raise InvalidAddress(f"Invalid address {address}: not a {network} address")

    return decoded[1:]
