"""
StakeVault - a token-staking program engine.

Key features:
- Per-user vaults at program-derived addresses
- Linear, time-based reward accrual in checked integer arithmetic
- Reward tokens minted on claim by a program-held mint authority
- secp256k1-signed instructions with replay protection
- SQLite persistence and an aiohttp REST API
"""

__version__ = "0.1.0"
__all__ = [
    "accrual",
    "addresses",
    "api",
    "clock",
    "config",
    "crypto_utils",
    "errors",
    "instructions",
    "invariants",
    "logging_config",
    "precision",
    "program",
    "receipts",
    "state",
    "storage",
    "token_ledger",
    "wallet",
]
