"""
Banking Ledger

The transaction engine of a digital banking platform: account opening,
fee and currency computation, per-account serialized balance mutation and
loyalty reward accrual. All money is handled as Decimal.
"""

__version__ = "1.0.0"
