"""
Automatic call billing: prepaid balances, an append-only ledger and idempotent
billing of finished calls.
"""

__version__ = "0.1.0"
