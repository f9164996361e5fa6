"""Wallet-style identity derivation from a login credential, plus its local persistence."""
