"""
Loan account endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, status

from .deps import get_ledger_system, http_error
from .schemas import OpenAccountRequest, PostTransactionRequest, parse_enum
from ..accounts import LoanAccount
from ..exceptions import YieldLedgerError
from ..ledger import LedgerFilter, LedgerOrder, Page, Transaction, TransactionType
from ..money import to_decimal
from ..system import LedgerSystem


router = APIRouter()


def account_to_dict(account: LoanAccount) -> dict:
    return {
        "id": account.id,
        "owner_id": account.owner_id,
        "account_number": account.account_number,
        "principal_amount": str(account.principal_amount),
        "current_balance": str(account.current_balance),
        "monthly_rate": str(account.monthly_rate),
        "total_bonuses": str(account.total_bonuses),
        "total_withdrawals": str(account.total_withdrawals),
        "created_at": account.created_at.isoformat()
    }


def transaction_to_dict(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "amount": str(txn.amount),
        "transaction_type": txn.transaction_type.value,
        "description": txn.description,
        "effective_date": txn.effective_date.isoformat(),
        "bonus_percentage": str(txn.bonus_percentage) if txn.bonus_percentage is not None else None,
        "reference_id": txn.reference_id,
        "created_at": txn.created_at.isoformat()
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def open_account(
    request: OpenAccountRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Open the loan account for an owner"""
    try:
        monthly_rate = system.config.default_monthly_rate
        if request.monthly_rate is not None:
            monthly_rate = to_decimal(request.monthly_rate, "monthly_rate")

        account = system.account_manager.open_account(
            owner_id=request.owner_id,
            principal_amount=to_decimal(request.principal_amount, "principal_amount"),
            monthly_rate=monthly_rate,
            account_number=request.account_number
        )
        return {
            "account_id": account.id,
            "account_number": account.account_number,
            "message": "Loan account created successfully"
        }

    except YieldLedgerError as e:
        raise http_error(e)


@router.get("/{account_id}")
async def get_account(
    account_id: int,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get loan account details"""
    try:
        return account_to_dict(system.account_manager.get_account(account_id))
    except YieldLedgerError as e:
        raise http_error(e)


@router.post("/{account_id}/transactions", status_code=status.HTTP_201_CREATED)
async def post_transaction(
    account_id: int,
    request: PostTransactionRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Post a manual ledger entry (bonus, adjustment, ...)"""
    try:
        bonus_percentage = None
        if request.bonus_percentage is not None:
            bonus_percentage = to_decimal(request.bonus_percentage, "bonus_percentage")

        result = system.account_manager.post_transaction(
            account_id=account_id,
            amount=to_decimal(request.amount),
            transaction_type=parse_enum(TransactionType, request.transaction_type, "transaction_type"),
            description=request.description,
            effective_date=request.effective_date,
            bonus_percentage=bonus_percentage,
            reference_id=request.reference_id
        )
        return {
            "transaction_id": result.transaction_id,
            "new_balance": str(result.new_balance),
            "message": "Transaction posted successfully"
        }

    except YieldLedgerError as e:
        raise http_error(e)


@router.get("/{account_id}/transactions")
async def get_account_transactions(
    account_id: int,
    transaction_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    order: str = "creation",
    limit: int = 50,
    offset: int = 0,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get the account's ledger, newest first"""
    try:
        system.account_manager.get_account(account_id)

        types = frozenset()
        if transaction_type:
            types = frozenset({parse_enum(TransactionType, transaction_type, "transaction_type")})

        transactions = system.ledger.query(
            account_id,
            filters=LedgerFilter(transaction_types=types, start_date=start_date, end_date=end_date),
            page=Page(limit=limit, offset=offset),
            order=parse_enum(LedgerOrder, order, "order")
        )
        return {"transactions": [transaction_to_dict(txn) for txn in transactions]}

    except YieldLedgerError as e:
        raise http_error(e)


@router.get("/{account_id}/monthly-summary")
async def get_monthly_summary(
    account_id: int,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Month-by-month balance history"""
    try:
        snapshots = system.account_manager.monthly_summary(account_id)
    except YieldLedgerError as e:
        raise http_error(e)

    return {
        "months": [
            {
                "month_end_date": snapshot.month_end_date.isoformat(),
                "starting_balance": str(snapshot.starting_balance),
                "ending_balance": str(snapshot.ending_balance),
                "monthly_growth": str(snapshot.monthly_growth),
                "deposits": str(snapshot.deposits),
                "withdrawals": str(snapshot.withdrawals),
                "bonuses": str(snapshot.bonuses),
                "payments": str(snapshot.payments),
                "adjustments": str(snapshot.adjustments)
            }
            for snapshot in snapshots
        ]
    }


@router.get("/{account_id}/reconcile")
async def reconcile_account(
    account_id: int,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Compare the cached balance with principal + ledger"""
    try:
        report = system.account_manager.reconcile(account_id)
    except YieldLedgerError as e:
        raise http_error(e)

    return {
        "account_id": report.account_id,
        "principal_amount": str(report.principal_amount),
        "ledger_total": str(report.ledger_total),
        "expected_balance": str(report.expected_balance),
        "current_balance": str(report.current_balance),
        "drift": str(report.drift),
        "consistent": report.is_consistent
    }
