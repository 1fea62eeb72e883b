"""
Encrypted credential storage.

The account private key is encrypted under the PIN and the mnemonic under the
password, each with NaCl secretbox (XSalsa20-Poly1305) and a key stretched
from the secret with PBKDF2. Next to each ciphertext we keep
SHA256(SHA256(secret)) so a wrong secret is rejected before decrypting.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

import libnacl.secret
from loguru import logger
from mnemonic import Mnemonic

from htrwallet.constants import HD_WALLET_ENTROPY, WORDS_COUNT
from htrwallet.errors import CredentialMismatch, InvalidMnemonic, InvariantViolation
from htrwallet.storage import KeyValueStore
from htrwallet.wallet.bip32 import HDKey, account_key_from_mnemonic

ACCESS_DATA_KEY = "wallet:accessData"

PBKDF2_ITERATIONS = 100_000
SALT_SIZE = 16
KEY_SIZE = 32


@dataclass(frozen=True)
class MasterKeyHandle:
    """Public part of a freshly generated wallet."""

    xpubkey: str
    fingerprint: str


def hash_secret(secret: str) -> str:
    """SHA256(SHA256(secret)) as hex."""
    return hashlib.sha256(hashlib.sha256(secret.encode("utf-8")).digest()).hexdigest()


def _derive_key(secret: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha256", secret.encode("utf-8"), salt, PBKDF2_ITERATIONS, dklen=KEY_SIZE
    )


def encrypt_data(plaintext: str, secret: str) -> str:
    """Encrypt plaintext under secret. Returns hex of salt || secretbox output."""
    salt = secrets.token_bytes(SALT_SIZE)
    box = libnacl.secret.SecretBox(_derive_key(secret, salt))
    return (salt + box.encrypt(plaintext.encode("utf-8"))).hex()


def decrypt_data(ciphertext: str, secret: str) -> str:
    """
    Decrypt data produced by encrypt_data.

    Raises:
        CredentialMismatch: If the secret does not open the box
    """
    raw = bytes.fromhex(ciphertext)
    salt, boxed = raw[:SALT_SIZE], raw[SALT_SIZE:]
    box = libnacl.secret.SecretBox(_derive_key(secret, salt))
    try:
        return box.decrypt(boxed).decode("utf-8")
    except ValueError as e:
        raise CredentialMismatch("Unable to decrypt data with given secret") from e


def words_valid(words: str) -> tuple[bool, str]:
    """Check the words can seed a wallet. Returns (valid, message)."""
    if not isinstance(words, str):
        return False, "Must be a string"
    if len(words.split()) != WORDS_COUNT:
        return False, f"Must have {WORDS_COUNT} words"
    if not Mnemonic("english").check(normalize_words(words)):
        return False, "Invalid sequence of words"
    return True, ""


def normalize_words(words: str) -> str:
    return " ".join(words.lower().split())


def generate_words() -> str:
    """Generate a new 24 words mnemonic from secure entropy."""
    return Mnemonic("english").generate(strength=HD_WALLET_ENTROPY)


class CredentialVault:
    """
    Holds the encrypted wallet secrets in the store.

    Plaintext keys and words are returned to the caller only transiently and
    are never written back.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    def loaded(self) -> bool:
        return self.store.has(ACCESS_DATA_KEY)

    def generate(self, words: str, passphrase: str, pin: str, password: str) -> MasterKeyHandle:
        """
        Derive the account key from words and passphrase and store it encrypted.

        Raises:
            InvalidMnemonic: If words are not 24 valid BIP39 words
        """
        valid, message = words_valid(words)
        if not valid:
            raise InvalidMnemonic(message)

        words = normalize_words(words)
        account_key = account_key_from_mnemonic(words, passphrase)

        access = {
            "mainKey": encrypt_data(account_key.xprv, pin),
            "hash": hash_secret(pin),
            "words": encrypt_data(words, password),
            "hashPasswd": hash_secret(password),
        }
        self.store.set_json(ACCESS_DATA_KEY, access)
        logger.info("Generated wallet credentials")

        return MasterKeyHandle(xpubkey=account_key.xpub, fingerprint=account_key.fingerprint.hex())

    def _access_data(self) -> dict:
        data = self.store.get_json(ACCESS_DATA_KEY)
        if data is None:
            raise InvariantViolation("Wallet has no credentials")
        return data

    def verify_pin(self, pin: str) -> bool:
        return hash_secret(pin) == self._access_data()["hash"]

    def verify_password(self, password: str) -> bool:
        return hash_secret(password) == self._access_data()["hashPasswd"]

    def unlock_private_key(self, pin: str) -> HDKey:
        """
        Decrypt the account private key.

        Raises:
            CredentialMismatch: If pin is wrong
        """
        if not self.verify_pin(pin):
            raise CredentialMismatch("Invalid PIN")
        xprv = decrypt_data(self._access_data()["mainKey"], pin)
        return HDKey.from_extended_key(xprv)

    def unlock_words(self, password: str) -> str:
        """
        Decrypt the wallet words, for backup and export flows.

        Raises:
            CredentialMismatch: If password is wrong
        """
        if not self.verify_password(password):
            raise CredentialMismatch("Invalid password")
        return decrypt_data(self._access_data()["words"], password)

    def change_pin(self, old_pin: str, new_pin: str) -> None:
        xprv = self.unlock_private_key(old_pin).xprv
        access = self._access_data()
        access["mainKey"] = encrypt_data(xprv, new_pin)
        access["hash"] = hash_secret(new_pin)
        self.store.set_json(ACCESS_DATA_KEY, access)
        logger.info("PIN changed")

    def change_password(self, old_password: str, new_password: str) -> None:
        words = self.unlock_words(old_password)
        access = self._access_data()
        access["words"] = encrypt_data(words, new_password)
        access["hashPasswd"] = hash_secret(new_password)
        self.store.set_json(ACCESS_DATA_KEY, access)
        logger.info("Password changed")

    def clear(self) -> None:
        self.store.remove(ACCESS_DATA_KEY)
