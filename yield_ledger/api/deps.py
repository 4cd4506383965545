"""
Shared API dependencies
"""

from typing import Optional

from fastapi import HTTPException, status

from ..exceptions import (
    YieldLedgerError, NotFoundError, ConflictError, InsufficientFundsError,
    ValidationError, InvalidStateError, StorageError
)
from ..system import LedgerSystem


ERROR_STATUS_CODES = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    InsufficientFundsError: status.HTTP_400_BAD_REQUEST,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidStateError: status.HTTP_409_CONFLICT,
    StorageError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def http_error(error: YieldLedgerError) -> HTTPException:
    """Translate an engine error into the matching HTTP error"""
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# Created on first use so importing the API does not open the database
_ledger_system: Optional[LedgerSystem] = None


def get_ledger_system() -> LedgerSystem:
    global _ledger_system
    if _ledger_system is None:
        _ledger_system = LedgerSystem()
    return _ledger_system


def set_ledger_system(system: Optional[LedgerSystem]) -> None:
    """Install the system the API serves (None resets to lazy creation)"""
    global _ledger_system
    _ledger_system = system
