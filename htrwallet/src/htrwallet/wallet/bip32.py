"""
BIP32 HD key derivation for the wallet.

The wallet keeps only the account extended public key in clear. Addresses are
derived from it with non-hardened public derivation, so the private key is
needed only while signing.
"""

from __future__ import annotations

import hashlib
import hmac

import base58
from coincurve import PrivateKey, PublicKey
from mnemonic import Mnemonic

from htrwallet.constants import HATHOR_BIP44_CODE, XPRV_VERSION, XPUB_VERSION

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000

ACCOUNT_PATH = f"m/44'/{HATHOR_BIP44_CODE}'/0'/0"


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


class HDKey:
    """
    Hierarchical Deterministic key.
    Holds either a private key or, once neutered, only the public key.
    """

    def __init__(
        self,
        chain_code: bytes,
        private_key: PrivateKey | None = None,
        public_key: PublicKey | None = None,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        if private_key is None and public_key is None:
            raise ValueError("HDKey needs a private or a public key")
        self._private_key = private_key
        self._public_key = public_key if public_key is not None else private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @property
    def private_key(self) -> PrivateKey:
        """Return the coincurve PrivateKey instance."""
        if self._private_key is None:
            raise ValueError("Public-only key has no private key")
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        return cls(chain_code, private_key=PrivateKey(key_bytes))

    @classmethod
    def from_mnemonic(cls, mnemonic: str, passphrase: str = "") -> HDKey:
        return cls.from_seed(mnemonic_to_seed(mnemonic, passphrase))

    @classmethod
    def from_extended_key(cls, extended_key: str) -> HDKey:
        """
        Parse a base58check serialized xpub or xprv.

        Raises:
            ValueError: On bad checksum, length, version or key data
        """
        raw = base58.b58decode_check(extended_key)
        if len(raw) != 78:
            raise ValueError(f"Invalid extended key length: {len(raw)}")

        version = int.from_bytes(raw[0:4], "big")
        depth = raw[4]
        parent_fingerprint = raw[5:9]
        child_number = int.from_bytes(raw[9:13], "big")
        chain_code = raw[13:45]
        key_data = raw[45:78]

        if version == XPUB_VERSION:
            public_key = PublicKey(key_data)
            return cls(
                chain_code,
                public_key=public_key,
                depth=depth,
                parent_fingerprint=parent_fingerprint,
                child_number=child_number,
            )
        if version == XPRV_VERSION:
            if key_data[0] != 0:
                raise ValueError("Invalid private key prefix")
            return cls(
                chain_code,
                private_key=PrivateKey(key_data[1:]),
                depth=depth,
                parent_fingerprint=parent_fingerprint,
                child_number=child_number,
            )
        raise ValueError(f"Unknown extended key version: {version:#010x}")

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/44'/280'/0'/0/3")
        ' indicates hardened derivation. The path is relative to this key.
        """
        if not path.startswith("m"):
            raise ValueError("Path must start with 'm'")

        parts = path.split("/")[1:]
        key = self

        for part in parts:
            if not part:
                continue

            hardened = part.endswith("'") or part.endswith("h")
            index = int(part.rstrip("'h"))

            if hardened:
                index += HARDENED_OFFSET

            key = key.derive_child(index)

        return key

    def derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= HARDENED_OFFSET

        if hardened:
            if not self.is_private:
                raise ValueError("Cannot derive hardened child from a public key")
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        if int.from_bytes(key_offset, "big") >= SECP256K1_N:
            raise ValueError("Invalid child key")

        if self.is_private:
            parent_key_int = int.from_bytes(self._private_key.secret, "big")
            child_key_int = (parent_key_int + int.from_bytes(key_offset, "big")) % SECP256K1_N

            if child_key_int == 0:
                raise ValueError("Invalid child key")

            return HDKey(
                child_chain,
                private_key=PrivateKey(child_key_int.to_bytes(32, "big")),
                depth=self.depth + 1,
                parent_fingerprint=self.fingerprint,
                child_number=index,
            )

        # Public derivation: child = parent + offset * G
        return HDKey(
            child_chain,
            public_key=self._public_key.add(key_offset),
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def neuter(self) -> HDKey:
        """Return the public-only version of this key."""
        return HDKey(
            self.chain_code,
            public_key=self._public_key,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
        )

    def _serialize(self, version: int, key_data: bytes) -> str:
        raw = (
            version.to_bytes(4, "big")
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58.b58encode_check(raw).decode("ascii")

    @property
    def xpub(self) -> str:
        return self._serialize(XPUB_VERSION, self.get_public_key_bytes())

    @property
    def xprv(self) -> str:
        return self._serialize(XPRV_VERSION, b"\x00" + self.private_key.secret)

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        return self.private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def get_address(self, network: str = "mainnet") -> str:
        """Get P2PKH address for this key"""
        from htrwallet.wallet.address import pubkey_to_address

        return pubkey_to_address(self.get_public_key_bytes(), network)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert BIP39 mnemonic to seed."""
    return Mnemonic.to_seed(mnemonic, passphrase)


def account_key_from_mnemonic(mnemonic: str, passphrase: str = "") -> HDKey:
    """Account key whose non-hardened children are the wallet addresses."""
    return HDKey.from_mnemonic(mnemonic, passphrase).derive(ACCOUNT_PATH)
