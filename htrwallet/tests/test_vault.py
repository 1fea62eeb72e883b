"""
Tests for encrypted credential storage.
"""

from __future__ import annotations

import hashlib

import pytest

from htrwallet.errors import CredentialMismatch, InvalidMnemonic, InvariantViolation
from htrwallet.storage import MemoryStore
from htrwallet.wallet.bip32 import account_key_from_mnemonic
from htrwallet.wallet.vault import (
    ACCESS_DATA_KEY,
    CredentialVault,
    decrypt_data,
    encrypt_data,
    generate_words,
    hash_secret,
    words_valid,
)


@pytest.fixture
def vault(store: MemoryStore, test_words: str, pin: str, password: str) -> CredentialVault:
    vault = CredentialVault(store)
    vault.generate(test_words, "", pin, password)
    return vault


class TestWordsValidation:
    def test_valid(self, test_words: str) -> None:
        assert words_valid(test_words) == (True, "")

    def test_extra_whitespace_and_case(self, test_words: str) -> None:
        valid, _ = words_valid("  " + test_words.upper().replace(" ", "   ") + "\n")
        assert valid

    def test_wrong_count(self) -> None:
        words = " ".join(["abandon"] * 11 + ["about"])
        assert words_valid(words) == (False, "Must have 24 words")

    def test_bad_checksum(self) -> None:
        assert words_valid(" ".join(["abandon"] * 24)) == (False, "Invalid sequence of words")

    def test_not_a_string(self) -> None:
        assert words_valid(None) == (False, "Must be a string")  # type: ignore[arg-type]

    def test_generated_words_are_valid(self) -> None:
        words = generate_words()
        assert len(words.split()) == 24
        assert words_valid(words)[0]


class TestEncryption:
    def test_hash_secret(self) -> None:
        expected = hashlib.sha256(hashlib.sha256(b"1234").digest()).hexdigest()
        assert hash_secret("1234") == expected

    def test_decrypt(self) -> None:
        ciphertext = encrypt_data("payload", "secret")
        assert "payload" not in ciphertext
        assert decrypt_data(ciphertext, "secret") == "payload"

    def test_random_salt(self) -> None:
        assert encrypt_data("payload", "secret") != encrypt_data("payload", "secret")

    def test_wrong_secret_fails_authentication(self) -> None:
        ciphertext = encrypt_data("payload", "secret")
        with pytest.raises(CredentialMismatch):
            decrypt_data(ciphertext, "other")


class TestCredentialVault:
    def test_access_data_layout(
        self, vault: CredentialVault, store: MemoryStore, test_words: str, pin: str
    ) -> None:
        access = store.get_json(ACCESS_DATA_KEY)
        assert set(access) == {"mainKey", "hash", "words", "hashPasswd"}
        assert access["hash"] == hash_secret(pin)
        assert "abandon" not in store.data[ACCESS_DATA_KEY]

    def test_generate_returns_account_xpub(self, store: MemoryStore, test_words: str) -> None:
        handle = CredentialVault(store).generate(test_words, "", "1111", "pw")
        assert handle.xpubkey == account_key_from_mnemonic(test_words).xpub
        assert len(handle.fingerprint) == 8

    def test_invalid_words_rejected(self, store: MemoryStore) -> None:
        with pytest.raises(InvalidMnemonic, match="Must have 24 words"):
            CredentialVault(store).generate("abandon about", "", "1111", "pw")
        assert not store.has(ACCESS_DATA_KEY)

    def test_unlock_private_key(self, vault: CredentialVault, test_words: str, pin: str) -> None:
        key = vault.unlock_private_key(pin)
        original = account_key_from_mnemonic(test_words)
        assert key.is_private
        assert key.get_private_key_bytes() == original.get_private_key_bytes()
        assert key.xpub == original.xpub

    def test_unlock_wrong_pin(self, vault: CredentialVault) -> None:
        with pytest.raises(CredentialMismatch):
            vault.unlock_private_key("000000")

    def test_unlock_words(self, vault: CredentialVault, test_words: str, password: str) -> None:
        assert vault.unlock_words(password) == test_words

    def test_unlock_words_wrong_password(self, vault: CredentialVault) -> None:
        with pytest.raises(CredentialMismatch):
            vault.unlock_words("wrong")

    def test_verify(self, vault: CredentialVault, pin: str, password: str) -> None:
        assert vault.verify_pin(pin)
        assert not vault.verify_pin(pin + "0")
        assert vault.verify_password(password)
        assert not vault.verify_password(pin)

    def test_change_pin(self, vault: CredentialVault, pin: str, test_words: str) -> None:
        vault.change_pin(pin, "999999")
        assert not vault.verify_pin(pin)
        key = vault.unlock_private_key("999999")
        assert key.xpub == account_key_from_mnemonic(test_words).xpub

    def test_change_pin_requires_old_pin(self, vault: CredentialVault, pin: str) -> None:
        with pytest.raises(CredentialMismatch):
            vault.change_pin("000000", "999999")
        assert vault.verify_pin(pin)

    def test_change_password(self, vault: CredentialVault, password: str, test_words: str) -> None:
        vault.change_password(password, "new-password")
        assert vault.unlock_words("new-password") == test_words
        with pytest.raises(CredentialMismatch):
            vault.unlock_words(password)

    def test_clear(self, vault: CredentialVault) -> None:
        assert vault.loaded()
        vault.clear()
        assert not vault.loaded()
        with pytest.raises(InvariantViolation):
            vault.verify_pin("123456")
