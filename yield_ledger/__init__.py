"""
Yield Ledger

Ledger and yield-allocation engine for loan accounts: an append-only
transaction journal backing each account balance, annual yield payouts
applied idempotently, and LIFO allocation of withdrawals across deposits.
"""

__version__ = "1.0.0"
