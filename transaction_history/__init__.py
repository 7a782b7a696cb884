"""
Transaction History

A single-account credit/debit ledger with a running balance, ordered history,
proper financial math using Decimal, and serialized commits.
"""

__version__ = "1.0.0"
