"""
Wallet and ledger protocol constants.

Token data layout of an output:
- low 7 bits (TOKEN_INDEX_MASK): position of the token in the transaction's
  token list, 0 being the native token
- high bit (TOKEN_AUTHORITY_MASK): the output is an authority output and its
  value is a capability bitmask instead of an amount
"""

from __future__ import annotations

# Maximum number of consecutive unused addresses watched ahead of the last used one
GAP_LIMIT = 20

# If False, new addresses can be generated past the gap limit
LIMIT_ADDRESS_GENERATION = True

# BIP44 coin type, account key path is m/44'/280'/0'/0
HATHOR_BIP44_CODE = 280

# Amounts are integers in the smallest unit, displayed with 2 decimals
DECIMAL_PLACES = 2

# Mnemonic must have exactly 24 words (256 bits of entropy)
WORDS_COUNT = 24
HD_WALLET_ENTROPY = 256

TOKEN_INDEX_MASK = 0b01111111
TOKEN_AUTHORITY_MASK = 0b10000000

TOKEN_CREATION_MASK = 0b00000001
TOKEN_MINT_MASK = 0b00000010
TOKEN_MELT_MASK = 0b00000100

HATHOR_TOKEN_CONFIG = {"name": "Hathor", "symbol": "HTR", "uid": "00"}

# Address version bytes
# Mainnet: P2PKH will start with H and P2SH will start with h
# Testnet: P2PKH will start with W and P2SH will start with w
VERSION_BYTES = {
    "mainnet": {"p2pkh": 0x28, "p2sh": 0x64},
    "testnet": {"p2pkh": 0x49, "p2sh": 0x87},
}

# Extended key serialization (xpub/xprv used for both networks)
XPUB_VERSION = 0x0488B21E
XPRV_VERSION = 0x0488ADE4

DEFAULT_SERVER = "https://node1.mainnet.hathor.network/v1a/"
