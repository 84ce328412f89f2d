"""
Nivalus Bank Ledger

Backend for a demo online bank: accounts, PIN-confirmed transfers,
transaction history and an admin console API. Balances use Decimal
fixed-point math and every multi-step mutation runs as one atomic unit.
"""

__version__ = "1.0.0"
