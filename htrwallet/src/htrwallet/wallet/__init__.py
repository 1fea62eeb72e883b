"""
Wallet engine: derivation, credentials, ledger, reconciliation and builders.
"""
