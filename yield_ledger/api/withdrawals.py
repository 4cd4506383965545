"""
Withdrawal request endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .deps import get_ledger_system, http_error
from .schemas import CreateWithdrawalRequest, ReviewWithdrawalRequest, parse_enum
from ..exceptions import YieldLedgerError
from ..money import to_decimal
from ..system import LedgerSystem
from ..withdrawals import WithdrawalRequest, WithdrawalStatus, WithdrawalUrgency


router = APIRouter()


def request_to_dict(request: WithdrawalRequest) -> dict:
    return {
        "id": request.id,
        "owner_id": request.owner_id,
        "account_id": request.account_id,
        "amount": str(request.amount),
        "reason": request.reason,
        "urgency": request.urgency.value,
        "status": request.status.value,
        "notes": request.notes,
        "reviewed_by": request.reviewed_by,
        "reviewed_at": request.reviewed_at.isoformat() if request.reviewed_at else None,
        "admin_notes": request.admin_notes,
        "created_at": request.created_at.isoformat()
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_withdrawal_request(
    request: CreateWithdrawalRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """File a withdrawal request"""
    try:
        withdrawal = system.request_manager.create_request(
            owner_id=request.owner_id,
            amount=to_decimal(request.amount),
            reason=request.reason,
            urgency=parse_enum(WithdrawalUrgency, request.urgency, "urgency"),
            notes=request.notes
        )
        return {
            "request": request_to_dict(withdrawal),
            "message": "Withdrawal request submitted successfully"
        }

    except YieldLedgerError as e:
        raise http_error(e)


@router.get("")
async def list_withdrawal_requests(
    owner_id: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    system: LedgerSystem = Depends(get_ledger_system)
):
    """List withdrawal requests, newest first"""
    try:
        request_status = None
        if status_filter:
            request_status = parse_enum(WithdrawalStatus, status_filter, "status")
        requests = system.request_manager.list_requests(owner_id=owner_id, status=request_status)
    except YieldLedgerError as e:
        raise http_error(e)

    return {"requests": [request_to_dict(r) for r in requests]}


@router.get("/{request_id}")
async def get_withdrawal_request(
    request_id: int,
    system: LedgerSystem = Depends(get_ledger_system)
):
    try:
        return request_to_dict(system.request_manager.get_request(request_id))
    except YieldLedgerError as e:
        raise http_error(e)


@router.post("/{request_id}/approve")
async def approve_withdrawal_request(
    request_id: int,
    request: ReviewWithdrawalRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    try:
        withdrawal = system.request_manager.approve(request_id, request.actor_id, request.admin_notes)
        return {"request": request_to_dict(withdrawal), "message": "Withdrawal request approved"}
    except YieldLedgerError as e:
        raise http_error(e)


@router.post("/{request_id}/reject")
async def reject_withdrawal_request(
    request_id: int,
    request: ReviewWithdrawalRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    try:
        withdrawal = system.request_manager.reject(request_id, request.actor_id, request.admin_notes)
        return {"request": request_to_dict(withdrawal), "message": "Withdrawal request rejected"}
    except YieldLedgerError as e:
        raise http_error(e)


@router.post("/{request_id}/complete")
async def complete_withdrawal_request(
    request_id: int,
    request: ReviewWithdrawalRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Debit the account and reduce yield deposits newest first"""
    try:
        result = system.withdrawal_allocator.complete_withdrawal(
            request_id, request.actor_id, admin_notes=request.admin_notes
        )
    except YieldLedgerError as e:
        raise http_error(e)

    return {
        "message": "Withdrawal completed successfully",
        "withdrawal_amount": str(result.withdrawal_amount),
        "new_balance": str(result.new_balance),
        "shortfall": str(result.shortfall),
        "deposit_reductions": [
            {
                "deposit_id": allocation.deposit_id,
                "original_amount": str(allocation.original_amount),
                "reduced_by": str(allocation.reduced_by),
                "new_amount": str(allocation.new_amount)
            }
            for allocation in result.allocations
        ]
    }
