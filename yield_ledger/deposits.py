"""
Yield Deposit Registry

Creates, updates and lists yield-bearing deposits. A deposit's principal only
ever decreases after creation (withdrawal allocation or an admin patch), and a
deposit that is not active is skipped by payouts and allocations.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from enum import Enum

from .accounts import AccountBalanceManager
from .audit import AuditTrail, AuditEventType
from .exceptions import NotFoundError, ValidationError
from .ledger import TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, quantize_amount, quantize_rate, format_amount
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime


class DepositStatus(Enum):
    """Yield deposit status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    COMPLETED = "completed"


@dataclass
class YieldDeposit(StorageRecord):
    """
    Yield-bearing deposit. principal_amount >= 0 and never increases.
    """
    owner_id: int
    principal_amount: Decimal
    annual_yield_rate: Decimal
    start_date: date
    status: DepositStatus = DepositStatus.ACTIVE
    last_payout_date: Optional[date] = None
    total_paid_out: Decimal = ZERO
    created_by: Optional[int] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == DepositStatus.ACTIVE


@dataclass
class DepositPatch:
    """
    Fields an update may change. Anything left as None is untouched.
    """
    status: Optional[DepositStatus] = None
    notes: Optional[str] = None
    principal_amount: Optional[Decimal] = None

    def is_empty(self) -> bool:
        return self.status is None and self.notes is None and self.principal_amount is None


def lifo_order_key(deposit: YieldDeposit) -> Tuple[datetime, int]:
    """
    Sort key for withdrawal allocation. Use with reverse=True: the most
    recently created deposit comes first, the higher id breaking ties.
    """
    return (deposit.created_at, deposit.id)


def annual_payout(deposit: YieldDeposit) -> Decimal:
    """Yield paid on each anniversary: principal x annual rate, to the cent"""
    return quantize_amount(deposit.principal_amount * deposit.annual_yield_rate)


class YieldDepositRegistry:
    """
    Yield deposit lifecycle management
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
        self.table_name = "yield_deposits"
        self.logger = get_logger("yield_ledger.deposits")

    def create_deposit(
        self,
        owner_id: int,
        principal: Decimal,
        rate: Decimal,
        start_date: date,
        notes: Optional[str] = None,
        created_by: Optional[int] = None
    ) -> YieldDeposit:
        """
        Create an active deposit and credit its principal to the owner's
        loan account in the same unit of work

        Args:
            owner_id: Owner of the deposit
            principal: Deposited amount, must be positive
            rate: Annual yield rate in (0, 1]
            start_date: Date the deposit starts earning
            notes: Free-form notes
            created_by: Admin user creating the deposit

        Returns:
            Created YieldDeposit

        Raises:
            NotFoundError: If the owner has no loan account
            ValidationError: If principal or rate is out of range
        """
        principal = quantize_amount(principal, "principal")
        if principal <= 0:
            raise ValidationError("Deposit principal must be positive")
        rate = quantize_rate(rate, "rate")
        if not Decimal("0") < rate <= Decimal("1"):
            raise ValidationError(f"Annual yield rate must be in (0, 1], got {rate}")

        with self.storage.atomic():
            account = self.account_manager.get_account_for_owner(owner_id)

            now = datetime.now(timezone.utc)
            deposit = YieldDeposit(
                id=self.storage.next_id(self.table_name),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                principal_amount=principal,
                annual_yield_rate=rate,
                start_date=start_date,
                created_by=created_by,
                notes=notes
            )
            self._save_deposit(deposit)

            self.account_manager.post_transaction(
                account_id=account.id,
                amount=principal,
                transaction_type=TransactionType.YIELD_DEPOSIT,
                description=f"Yield deposit of {format_amount(principal)} at "
                            f"{rate * 100:.2f}% annual",
                effective_date=start_date,
                reference_id=f"deposit:{deposit.id}"
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.DEPOSIT_CREATED,
                entity_type="yield_deposit",
                entity_id=deposit.id,
                metadata={
                    "owner_id": owner_id,
                    "principal_amount": principal,
                    "annual_yield_rate": rate,
                    "start_date": start_date
                },
                user_id=created_by
            )

        log_action(self.logger, "info", f"Created yield deposit {deposit.id}",
                   user_id=created_by, action="create_deposit",
                   resource=f"deposit:{deposit.id}",
                   extra={"owner_id": owner_id, "principal": str(principal)})
        return deposit

    def update_deposit(
        self,
        deposit_id: int,
        patch: DepositPatch,
        updated_by: Optional[int] = None
    ) -> YieldDeposit:
        """
        Apply an admin patch to a deposit

        Raises:
            NotFoundError: If the deposit does not exist
            ValidationError: If the patch is empty, would raise the principal,
                or would make a zero-principal deposit active

        A deposit whose principal is patched to zero becomes inactive.
        """
        if patch.is_empty():
            raise ValidationError("No fields to update")

        with self.storage.atomic():
            deposit = self.lock_deposit(deposit_id)
            changes: Dict[str, object] = {}

            if patch.principal_amount is not None:
                principal = quantize_amount(patch.principal_amount, "principal_amount")
                if principal < 0:
                    raise ValidationError("Deposit principal must not be negative")
                if principal > deposit.principal_amount:
                    raise ValidationError(
                        f"Deposit principal may only decrease "
                        f"({deposit.principal_amount} -> {principal})"
                    )
                changes["principal_amount"] = principal
                deposit.principal_amount = principal

            if patch.status is not None:
                if patch.status == DepositStatus.ACTIVE and deposit.principal_amount == 0:
                    raise ValidationError(f"Deposit {deposit_id} has no principal and cannot be active")
                changes["status"] = patch.status
                deposit.status = patch.status
            elif deposit.principal_amount == 0 and deposit.is_active:
                changes["status"] = DepositStatus.INACTIVE
                deposit.status = DepositStatus.INACTIVE

            if patch.notes is not None:
                changes["notes"] = patch.notes
                deposit.notes = patch.notes

            deposit.updated_at = datetime.now(timezone.utc)
            self._save_deposit(deposit)

            self.audit_trail.log_event(
                event_type=AuditEventType.DEPOSIT_UPDATED,
                entity_type="yield_deposit",
                entity_id=deposit.id,
                metadata=changes,
                user_id=updated_by
            )

        log_action(self.logger, "info", f"Updated yield deposit {deposit.id}",
                   user_id=updated_by, action="update_deposit",
                   resource=f"deposit:{deposit.id}",
                   extra={k: str(getattr(v, "value", v)) for k, v in changes.items()})
        return deposit

    def get_deposit(self, deposit_id: int) -> YieldDeposit:
        data = self.storage.load(self.table_name, deposit_id)
        if not data:
            raise NotFoundError(f"Yield deposit {deposit_id} not found")
        return self._deposit_from_dict(data)

    def list_active_for_owner(self, owner_id: int) -> List[YieldDeposit]:
        """Owner's active deposits in allocation (LIFO) order"""
        deposits = [
            self._deposit_from_dict(data)
            for data in self.storage.find(self.table_name, {
                'owner_id': owner_id,
                'status': DepositStatus.ACTIVE.value
            })
        ]
        deposits.sort(key=lifo_order_key, reverse=True)
        return deposits

    def list_deposits(
        self,
        status: Optional[DepositStatus] = None,
        owner_id: Optional[int] = None,
        start_date_from: Optional[date] = None,
        start_date_to: Optional[date] = None
    ) -> List[YieldDeposit]:
        """
        Admin listing, newest first. Start date bounds are inclusive.
        """
        filters: Dict[str, object] = {}
        if status is not None:
            filters['status'] = status.value
        if owner_id is not None:
            filters['owner_id'] = owner_id

        deposits = [self._deposit_from_dict(data)
                    for data in self.storage.find(self.table_name, filters)]
        if start_date_from:
            deposits = [d for d in deposits if d.start_date >= start_date_from]
        if start_date_to:
            deposits = [d for d in deposits if d.start_date <= start_date_to]

        deposits.sort(key=lambda d: (d.created_at, d.id), reverse=True)
        return deposits

    def annual_payout(self, deposit: YieldDeposit) -> Decimal:
        return annual_payout(deposit)

    def reduce_principal(self, deposit: YieldDeposit, amount: Decimal) -> YieldDeposit:
        """
        Take amount off a deposit's principal inside the caller's unit of work.
        A deposit reduced to zero becomes inactive.
        """
        amount = quantize_amount(amount)
        if amount <= 0 or amount > deposit.principal_amount:
            raise ValidationError(
                f"Cannot reduce deposit {deposit.id} by {amount}, principal is {deposit.principal_amount}"
            )
        deposit.principal_amount -= amount
        if deposit.principal_amount == 0:
            deposit.status = DepositStatus.INACTIVE
        deposit.updated_at = datetime.now(timezone.utc)
        self._save_deposit(deposit)
        return deposit

    def record_payout(self, deposit: YieldDeposit, payout_date: date, amount: Decimal) -> YieldDeposit:
        """Advance last_payout_date and total_paid_out inside the caller's unit of work"""
        deposit.last_payout_date = payout_date
        deposit.total_paid_out += quantize_amount(amount)
        deposit.updated_at = datetime.now(timezone.utc)
        self._save_deposit(deposit)
        return deposit

    def lock_deposit(self, deposit_id: int) -> YieldDeposit:
        """Load a deposit for update inside the caller's unit of work"""
        data = self.storage.load_for_update(self.table_name, deposit_id)
        if not data:
            raise NotFoundError(f"Yield deposit {deposit_id} not found")
        return self._deposit_from_dict(data)

    def _save_deposit(self, deposit: YieldDeposit) -> None:
        self.storage.save(self.table_name, deposit.id, deposit.to_dict())

    def _deposit_from_dict(self, data: Dict) -> YieldDeposit:
        return YieldDeposit(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            principal_amount=Decimal(data['principal_amount']),
            annual_yield_rate=Decimal(data['annual_yield_rate']),
            start_date=parse_date(data['start_date']),
            status=DepositStatus(data['status']),
            last_payout_date=parse_date(data.get('last_payout_date')),
            total_paid_out=Decimal(data.get('total_paid_out', '0.00')),
            created_by=data.get('created_by'),
            notes=data.get('notes')
        )
