"""
Yield deposit and payout endpoints
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .deps import get_ledger_system, http_error
from .schemas import CreateDepositRequest, UpdateDepositRequest, ProcessPayoutRequest, RunPayoutsRequest, parse_enum
from ..deposits import DepositPatch, DepositStatus, YieldDeposit
from ..exceptions import YieldLedgerError
from ..money import to_decimal
from ..payouts import next_anniversary
from ..system import LedgerSystem


router = APIRouter()


def _plain(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def deposit_to_dict(deposit: YieldDeposit, system: LedgerSystem, as_of: Optional[date] = None) -> dict:
    as_of = as_of or date.today()
    return {
        "id": deposit.id,
        "owner_id": deposit.owner_id,
        "principal_amount": str(deposit.principal_amount),
        "annual_yield_rate": str(deposit.annual_yield_rate),
        "start_date": deposit.start_date.isoformat(),
        "status": deposit.status.value,
        "last_payout_date": deposit.last_payout_date.isoformat() if deposit.last_payout_date else None,
        "total_paid_out": str(deposit.total_paid_out),
        "annual_payout": str(system.deposit_registry.annual_payout(deposit)),
        "next_payout_date": next_anniversary(deposit.start_date, as_of).isoformat(),
        "created_by": deposit.created_by,
        "notes": deposit.notes,
        "created_at": deposit.created_at.isoformat()
    }


@router.get("")
async def list_deposits(
    status_filter: Optional[str] = Query(None, alias="status"),
    owner_id: Optional[int] = None,
    start_date_from: Optional[date] = None,
    start_date_to: Optional[date] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List yield deposits, newest first"""
    try:
        deposit_status = None
        if status_filter:
            deposit_status = parse_enum(DepositStatus, status_filter, "status")
        deposits = system.deposit_registry.list_deposits(
            status=deposit_status,
            owner_id=owner_id,
            start_date_from=start_date_from,
            start_date_to=start_date_to
        )
    except YieldLedgerError as e:
        raise http_error(e)

    return {"deposits": [deposit_to_dict(d, system) for d in deposits]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_deposit(
    request: CreateDepositRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Create a yield deposit and credit it to the owner's loan account"""
    try:
        rate = system.config.default_yield_rate
        if request.annual_yield_rate is not None:
            rate = to_decimal(request.annual_yield_rate, "annual_yield_rate")

        deposit = system.deposit_registry.create_deposit(
            owner_id=request.owner_id,
            principal=to_decimal(request.principal_amount, "principal_amount"),
            rate=rate,
            start_date=request.start_date,
            notes=request.notes,
            created_by=request.created_by
        )
        return {
            "deposit": deposit_to_dict(deposit, system),
            "message": "Yield deposit created successfully"
        }

    except YieldLedgerError as e:
        raise http_error(e)


@router.get("/payout-status")
async def get_payout_status(
    on_date: Optional[date] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Payouts recorded on a date and deposits still waiting for one"""
    on_date = on_date or date.today()
    summary = system.payout_scheduler.payout_status(on_date)
    return {
        "date": on_date.isoformat(),
        "payments_count": summary["payments_count"],
        "payments_amount": str(summary["payments_amount"]),
        "pending_count": len(summary["pending_deposits"]),
        "pending_amount": str(summary["pending_amount"]),
        "pending_deposits": [deposit_to_dict(d, system, on_date) for d in summary["pending_deposits"]]
    }


@router.post("/payouts/run")
async def run_payouts(
    request: RunPayoutsRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Run the due-payout batch"""
    report = system.payout_scheduler.run_due_payouts(
        as_of=request.as_of or date.today(),
        dry_run=request.dry_run,
        processed_by=request.processed_by
    )
    return {
        "as_of": report.as_of.isoformat(),
        "dry_run": report.dry_run,
        "processed": report.processed,
        "skipped": report.skipped,
        "errors": report.errors,
        "details": [
            {key: _plain(value) for key, value in detail.items()}
            for detail in report.details
        ]
    }


@router.get("/{deposit_id}")
async def get_deposit(
    deposit_id: int,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Get deposit details with payout history"""
    try:
        deposit = system.deposit_registry.get_deposit(deposit_id)
        payouts = system.payout_scheduler.payout_history(deposit_id)
    except YieldLedgerError as e:
        raise http_error(e)

    return {
        "deposit": deposit_to_dict(deposit, system),
        "payouts": [
            {
                "id": payout.id,
                "amount": str(payout.amount),
                "payout_date": payout.payout_date.isoformat(),
                "transaction_id": payout.transaction_id,
                "processed_by": payout.processed_by,
                "notes": payout.notes
            }
            for payout in payouts
        ]
    }


@router.patch("/{deposit_id}")
async def update_deposit(
    deposit_id: int,
    request: UpdateDepositRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Update status, notes or principal of a deposit"""
    try:
        patch = DepositPatch(
            status=parse_enum(DepositStatus, request.status, "status") if request.status else None,
            notes=request.notes,
            principal_amount=to_decimal(request.principal_amount, "principal_amount")
            if request.principal_amount is not None else None
        )
        deposit = system.deposit_registry.update_deposit(deposit_id, patch, updated_by=request.updated_by)
        return {
            "deposit": deposit_to_dict(deposit, system),
            "message": "Yield deposit updated successfully"
        }

    except YieldLedgerError as e:
        raise http_error(e)


@router.post("/{deposit_id}/payouts", status_code=status.HTTP_201_CREATED)
async def process_payout(
    deposit_id: int,
    request: ProcessPayoutRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Pay one anniversary of a deposit"""
    try:
        result = system.payout_scheduler.process_payout(
            deposit_id=deposit_id,
            payout_date=request.payout_date,
            processed_by=request.processed_by,
            notes=request.notes
        )
        return {
            "payout_id": result.payout_id,
            "amount": str(result.amount),
            "transaction_id": result.transaction_id,
            "message": "Yield payout processed successfully"
        }

    except YieldLedgerError as e:
        raise http_error(e)
