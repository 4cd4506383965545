"""
Withdrawal Requests and Allocation

Owners file withdrawal requests; admins approve, reject or complete them.
Completing a request debits the loan account and reduces the owner's active
yield deposits newest first (LIFO) until the amount is covered.

Request lifecycle:
    pending -> approved -> processed
    pending | approved -> rejected
processed, completed and rejected are terminal.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional
from enum import Enum

from .accounts import AccountBalanceManager
from .audit import AuditTrail, AuditEventType
from .deposits import YieldDepositRegistry
from .exceptions import InsufficientFundsError, InvalidStateError, NotFoundError, ValidationError
from .ledger import TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, quantize_amount, format_amount
from .storage import StorageInterface, StorageRecord, parse_datetime


class WithdrawalStatus(Enum):
    """Withdrawal request status"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSED = "processed"
    COMPLETED = "completed"


class WithdrawalUrgency(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


TERMINAL_STATUSES = frozenset({
    WithdrawalStatus.REJECTED,
    WithdrawalStatus.PROCESSED,
    WithdrawalStatus.COMPLETED,
})

# Review transitions; completion is handled by WithdrawalAllocator
TRANSITIONS: Dict[WithdrawalStatus, FrozenSet[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: frozenset({WithdrawalStatus.APPROVED, WithdrawalStatus.REJECTED}),
    WithdrawalStatus.APPROVED: frozenset({WithdrawalStatus.REJECTED}),
}


class ShortfallPolicy(Enum):
    """What to do when active deposits cannot cover a withdrawal"""
    DEBIT_FULL = "debit_full"  # debit the full amount, report the uncovered part
    REJECT = "reject"          # refuse the withdrawal


@dataclass
class WithdrawalRequest(StorageRecord):
    """
    Owner's request to withdraw from the loan account
    """
    owner_id: int
    account_id: int
    amount: Decimal
    reason: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    urgency: WithdrawalUrgency = WithdrawalUrgency.NORMAL
    notes: Optional[str] = None
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    admin_notes: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class Allocation:
    """How much one deposit gave up for a withdrawal"""
    deposit_id: int
    original_amount: Decimal
    reduced_by: Decimal
    new_amount: Decimal


@dataclass
class WithdrawalResult:
    request_id: int
    withdrawal_amount: Decimal
    new_balance: Decimal
    allocations: List[Allocation] = field(default_factory=list)
    shortfall: Decimal = ZERO


class WithdrawalRequestManager:
    """
    Withdrawal request intake and review
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountBalanceManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.audit_trail = audit_trail
        self.table_name = "withdrawal_requests"
        self.logger = get_logger("yield_ledger.withdrawals")

    def create_request(
        self,
        owner_id: int,
        amount: Decimal,
        reason: str,
        urgency: WithdrawalUrgency = WithdrawalUrgency.NORMAL,
        notes: Optional[str] = None
    ) -> WithdrawalRequest:
        """
        File a pending withdrawal request against the owner's loan account

        Raises:
            NotFoundError: If the owner has no loan account
            ValidationError: If the amount is not positive or no reason is given
            InsufficientFundsError: If the amount exceeds the current balance
        """
        amount = quantize_amount(amount)
        if amount <= 0:
            raise ValidationError("Withdrawal amount must be positive")
        if not reason or not reason.strip():
            raise ValidationError("Withdrawal reason is required")

        with self.storage.atomic():
            account = self.account_manager.get_account_for_owner(owner_id)
            if amount > account.current_balance:
                raise InsufficientFundsError(
                    f"Withdrawal of {format_amount(amount)} exceeds balance "
                    f"{format_amount(account.current_balance)}"
                )

            now = datetime.now(timezone.utc)
            request = WithdrawalRequest(
                id=self.storage.next_id(self.table_name),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                account_id=account.id,
                amount=amount,
                reason=reason.strip(),
                urgency=urgency,
                notes=notes
            )
            self.save_request(request)

            self.audit_trail.log_event(
                event_type=AuditEventType.WITHDRAWAL_REQUESTED,
                entity_type="withdrawal_request",
                entity_id=request.id,
                metadata={"account_id": account.id, "amount": amount, "urgency": urgency},
                user_id=owner_id
            )

        log_action(self.logger, "info", f"Withdrawal request {request.id} filed",
                   user_id=owner_id, action="create_withdrawal_request",
                   resource=f"withdrawal_request:{request.id}",
                   extra={"amount": str(amount)})
        return request

    def approve(self, request_id: int, actor_id: int,
                admin_notes: Optional[str] = None) -> WithdrawalRequest:
        return self._review(request_id, WithdrawalStatus.APPROVED, actor_id, admin_notes,
                            AuditEventType.WITHDRAWAL_APPROVED)

    def reject(self, request_id: int, actor_id: int,
               admin_notes: Optional[str] = None) -> WithdrawalRequest:
        return self._review(request_id, WithdrawalStatus.REJECTED, actor_id, admin_notes,
                            AuditEventType.WITHDRAWAL_REJECTED)

    def get_request(self, request_id: int) -> WithdrawalRequest:
        data = self.storage.load(self.table_name, request_id)
        if not data:
            raise NotFoundError(f"Withdrawal request {request_id} not found")
        return self._request_from_dict(data)

    def list_requests(
        self,
        owner_id: Optional[int] = None,
        status: Optional[WithdrawalStatus] = None
    ) -> List[WithdrawalRequest]:
        """Requests newest first"""
        filters: Dict[str, object] = {}
        if owner_id is not None:
            filters['owner_id'] = owner_id
        if status is not None:
            filters['status'] = status.value
        requests = [self._request_from_dict(data)
                    for data in self.storage.find(self.table_name, filters)]
        requests.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return requests

    def lock_request(self, request_id: int) -> WithdrawalRequest:
        """Load a request for update inside the caller's unit of work"""
        data = self.storage.load_for_update(self.table_name, request_id)
        if not data:
            raise NotFoundError(f"Withdrawal request {request_id} not found")
        return self._request_from_dict(data)

    def save_request(self, request: WithdrawalRequest) -> None:
        self.storage.save(self.table_name, request.id, request.to_dict())

    def _review(
        self,
        request_id: int,
        new_status: WithdrawalStatus,
        actor_id: int,
        admin_notes: Optional[str],
        event_type: AuditEventType
    ) -> WithdrawalRequest:
        with self.storage.atomic():
            request = self.lock_request(request_id)
            allowed = TRANSITIONS.get(request.status, frozenset())
            if new_status not in allowed:
                raise InvalidStateError(
                    f"Withdrawal request {request_id} cannot go from "
                    f"{request.status.value} to {new_status.value}"
                )

            previous = request.status
            now = datetime.now(timezone.utc)
            request.status = new_status
            request.reviewed_by = actor_id
            request.reviewed_at = now
            if admin_notes is not None:
                request.admin_notes = admin_notes
            request.updated_at = now
            self.save_request(request)

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="withdrawal_request",
                entity_id=request.id,
                metadata={"previous_status": previous, "new_status": new_status},
                user_id=actor_id
            )

        log_action(self.logger, "info",
                   f"Withdrawal request {request_id} {new_status.value}",
                   user_id=actor_id, action=f"withdrawal_{new_status.value}",
                   resource=f"withdrawal_request:{request_id}")
        return request

    def _request_from_dict(self, data: Dict) -> WithdrawalRequest:
        return WithdrawalRequest(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            account_id=data['account_id'],
            amount=Decimal(data['amount']),
            reason=data['reason'],
            status=WithdrawalStatus(data['status']),
            urgency=WithdrawalUrgency(data.get('urgency', 'normal')),
            notes=data.get('notes'),
            reviewed_by=data.get('reviewed_by'),
            reviewed_at=parse_datetime(data.get('reviewed_at')),
            admin_notes=data.get('admin_notes')
        )


class WithdrawalAllocator:
    """
    Completes withdrawal requests: debits the account and reduces yield
    deposits newest first
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountBalanceManager,
        deposit_registry: YieldDepositRegistry,
        request_manager: WithdrawalRequestManager,
        audit_trail: AuditTrail,
        shortfall_policy: ShortfallPolicy = ShortfallPolicy.DEBIT_FULL,
        allowed_statuses: FrozenSet[WithdrawalStatus] = frozenset({
            WithdrawalStatus.APPROVED, WithdrawalStatus.PENDING
        })
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.deposit_registry = deposit_registry
        self.request_manager = request_manager
        self.audit_trail = audit_trail
        self.shortfall_policy = ShortfallPolicy(shortfall_policy)
        self.allowed_statuses = frozenset(allowed_statuses)
        self.logger = get_logger("yield_ledger.withdrawals")

    def complete_withdrawal(
        self,
        request_id: int,
        actor_id: int,
        admin_notes: Optional[str] = None,
        effective_date: Optional[date] = None
    ) -> WithdrawalResult:
        """
        Complete a withdrawal request in one unit of work

        Args:
            request_id: Request to complete
            actor_id: Admin completing the request
            admin_notes: Notes stored on the request
            effective_date: Effective date of the ledger entry (default today)

        Returns:
            WithdrawalResult with the new balance, the per-deposit
            allocations and any amount the deposits could not cover

        Raises:
            NotFoundError: If the request or its account does not exist
            InvalidStateError: If the request is not in an allowed status
            InsufficientFundsError: If the amount exceeds the balance, or the
                deposits under the reject shortfall policy
        """
        effective_date = effective_date or datetime.now(timezone.utc).date()

        with self.storage.atomic():
            request = self.request_manager.lock_request(request_id)
            if request.status not in self.allowed_statuses:
                raise InvalidStateError(
                    f"Withdrawal request {request_id} is {request.status.value}, cannot complete"
                )

            account = self.account_manager.lock_account(request.account_id)
            amount = request.amount
            if amount > account.current_balance:
                raise InsufficientFundsError(
                    f"Insufficient balance to complete withdrawal: {format_amount(amount)} "
                    f"requested, {format_amount(account.current_balance)} available"
                )

            deposits = [self.deposit_registry.lock_deposit(d.id)
                        for d in self.deposit_registry.list_active_for_owner(request.owner_id)]
            deposits = [d for d in deposits if d.is_active and d.principal_amount > 0]
            covered = sum((d.principal_amount for d in deposits), ZERO)
            if amount > covered and self.shortfall_policy == ShortfallPolicy.REJECT:
                raise InsufficientFundsError(
                    f"Active yield deposits cover {format_amount(covered)} "
                    f"of a {format_amount(amount)} withdrawal"
                )

            allocations = []
            remaining = amount
            for deposit in deposits:
                if remaining <= 0:
                    break
                original = deposit.principal_amount
                reduction = min(remaining, original)
                self.deposit_registry.reduce_principal(deposit, reduction)
                allocations.append(Allocation(
                    deposit_id=deposit.id,
                    original_amount=original,
                    reduced_by=reduction,
                    new_amount=deposit.principal_amount
                ))
                remaining -= reduction

            posting = self.account_manager.post_transaction(
                account_id=account.id,
                amount=-amount,
                transaction_type=TransactionType.WITHDRAWAL,
                description=f"Withdrawal: {request.reason}",
                effective_date=effective_date,
                reference_id=f"withdrawal_request:{request.id}"
            )

            now = datetime.now(timezone.utc)
            request.status = WithdrawalStatus.PROCESSED
            request.reviewed_by = actor_id
            request.reviewed_at = now
            if admin_notes is not None:
                request.admin_notes = admin_notes
            request.updated_at = now
            self.request_manager.save_request(request)

            self.audit_trail.log_event(
                event_type=AuditEventType.WITHDRAWAL_COMPLETED,
                entity_type="withdrawal_request",
                entity_id=request.id,
                metadata={
                    "account_id": account.id,
                    "amount": amount,
                    "transaction_id": posting.transaction_id,
                    "allocations": [
                        {"deposit_id": a.deposit_id, "reduced_by": a.reduced_by}
                        for a in allocations
                    ],
                    "shortfall": remaining
                },
                user_id=actor_id
            )

        if remaining > 0:
            log_action(self.logger, "warning",
                       f"Withdrawal {request_id} exceeds active deposits by {format_amount(remaining)}",
                       user_id=actor_id, action="complete_withdrawal",
                       resource=f"withdrawal_request:{request_id}",
                       extra={"amount": str(amount), "covered": str(amount - remaining)})
        log_action(self.logger, "info",
                   f"Completed withdrawal {request_id}, reduced {len(allocations)} yield deposits",
                   user_id=actor_id, action="complete_withdrawal",
                   resource=f"withdrawal_request:{request_id}",
                   extra={"new_balance": str(posting.new_balance)})

        return WithdrawalResult(
            request_id=request.id,
            withdrawal_amount=amount,
            new_balance=posting.new_balance,
            allocations=allocations,
            shortfall=remaining
        )
