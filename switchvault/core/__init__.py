"""Shared primitives: failure codes, retry policy, toggle ledger."""
