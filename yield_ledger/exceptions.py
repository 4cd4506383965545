"""
Error Taxonomy

Every engine operation fails with one of these types. Nothing raised here is
retried internally; the caller decides retry policy and the HTTP layer maps
each type to a status code.
"""


class YieldLedgerError(Exception):
    """Base exception for all ledger engine errors"""


class NotFoundError(YieldLedgerError):
    """A referenced account, deposit, payout or request does not exist"""


class ConflictError(YieldLedgerError):
    """The operation would duplicate an already applied effect"""


class InsufficientFundsError(YieldLedgerError):
    """A debit exceeds the funds available to cover it"""


class ValidationError(YieldLedgerError, ValueError):
    """Input rejected before any write (non-positive amount, bad rate, ...)"""


class InvalidStateError(YieldLedgerError):
    """The entity is in a state that does not allow the operation"""


class StorageError(YieldLedgerError):
    """The atomic unit of work failed to commit and was rolled back"""
