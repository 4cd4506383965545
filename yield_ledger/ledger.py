"""
Transaction Ledger

Append-only journal of monetary events per loan account. The ledger is a pure
journal: appending never touches a balance, and no entry is ever edited or
deleted. Corrections are new entries (adjustment_increase/adjustment_decrease).
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, FrozenSet
from enum import Enum

from .exceptions import NotFoundError, ValidationError
from .money import quantize_amount, quantize_rate
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime, parse_decimal


class TransactionType(Enum):
    """Types of ledger entries"""
    LOAN = "loan"
    MONTHLY_PAYMENT = "monthly_payment"
    BONUS = "bonus"
    WITHDRAWAL = "withdrawal"
    YIELD_DEPOSIT = "yield_deposit"
    YIELD_PAYMENT = "yield_payment"
    ADJUSTMENT_INCREASE = "adjustment_increase"
    ADJUSTMENT_DECREASE = "adjustment_decrease"


class LedgerOrder(Enum):
    """Sort orders for ledger reads, newest first"""
    CREATION = "creation"              # creation order, effective date as tie-break
    EFFECTIVE_DATE = "effective_date"  # effective date, creation order as tie-break


@dataclass
class Transaction(StorageRecord):
    """
    Ledger entry. The amount is signed: credits are positive, debits negative.
    Immutable once written.
    """
    account_id: int
    amount: Decimal
    transaction_type: TransactionType
    description: str
    effective_date: date
    bonus_percentage: Optional[Decimal] = None
    reference_id: Optional[str] = None


@dataclass
class LedgerFilter:
    """Optional filters for ledger queries"""
    transaction_types: FrozenSet[TransactionType] = frozenset()
    start_date: Optional[date] = None  # inclusive, on effective date
    end_date: Optional[date] = None    # inclusive, on effective date

    def matches(self, entry: Transaction) -> bool:
        if self.transaction_types and entry.transaction_type not in self.transaction_types:
            return False
        if self.start_date and entry.effective_date < self.start_date:
            return False
        if self.end_date and entry.effective_date > self.end_date:
            return False
        return True


@dataclass
class Page:
    limit: Optional[int] = 50
    offset: int = 0

    def __post_init__(self):
        if self.limit is not None and self.limit < 1:
            raise ValidationError("Page limit must be positive")
        if self.offset < 0:
            raise ValidationError("Page offset must not be negative")


class TransactionLedger:
    """
    Journal of ledger entries. Reads and writes go through the injected store
    handle; callers own the atomic unit.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "ledger_transactions"

    def append(
        self,
        account_id: int,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        effective_date: date,
        bonus_percentage: Optional[Decimal] = None,
        reference_id: Optional[str] = None
    ) -> Transaction:
        """
        Write a new entry to the journal

        Args:
            account_id: Loan account the entry belongs to
            amount: Signed amount, positive for credits
            transaction_type: Kind of monetary event
            description: Human-readable description
            effective_date: Date the event takes effect
            bonus_percentage: Bonus rate for bonus entries
            reference_id: External reference (payout id, request id, ...)

        Returns:
            The stored Transaction
        """
        now = datetime.now(timezone.utc)
        entry = Transaction(
            id=self.storage.next_id(self.table_name),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            amount=quantize_amount(amount),
            transaction_type=transaction_type,
            description=description,
            effective_date=effective_date,
            bonus_percentage=quantize_rate(bonus_percentage, "bonus_percentage")
            if bonus_percentage is not None else None,
            reference_id=reference_id
        )
        self.storage.save(self.table_name, entry.id, entry.to_dict())
        return entry

    def get_entry(self, transaction_id: int) -> Transaction:
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return self._entry_from_dict(data)

    def entries_for_account(self, account_id: int) -> List[Transaction]:
        """All entries for an account in creation order (oldest first)"""
        entries = [self._entry_from_dict(data)
                   for data in self.storage.find(self.table_name, {'account_id': account_id})]
        entries.sort(key=lambda e: (e.created_at, e.id))
        return entries

    def query(
        self,
        account_id: int,
        filters: Optional[LedgerFilter] = None,
        page: Optional[Page] = None,
        order: LedgerOrder = LedgerOrder.CREATION
    ) -> List[Transaction]:
        """
        Read an account's entries, newest first

        The default order is creation order with effective date as the
        secondary key, so a back-dated entry shows where it was recorded.
        Use LedgerOrder.EFFECTIVE_DATE for a chronological statement.
        """
        filters = filters or LedgerFilter()
        page = page or Page()

        entries = [e for e in self.entries_for_account(account_id) if filters.matches(e)]
        if order == LedgerOrder.EFFECTIVE_DATE:
            entries.sort(key=lambda e: (e.effective_date, e.created_at, e.id), reverse=True)
        else:
            entries.sort(key=lambda e: (e.created_at, e.effective_date, e.id), reverse=True)

        end = page.offset + page.limit if page.limit is not None else None
        return entries[page.offset:end]

    def total_for_account(self, account_id: int) -> Decimal:
        """Sum of all signed amounts for an account"""
        return sum((e.amount for e in self.entries_for_account(account_id)), Decimal("0.00"))

    def _entry_from_dict(self, data: Dict) -> Transaction:
        return Transaction(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            account_id=data['account_id'],
            amount=Decimal(data['amount']),
            transaction_type=TransactionType(data['transaction_type']),
            description=data['description'],
            effective_date=parse_date(data['effective_date']),
            bonus_percentage=parse_decimal(data.get('bonus_percentage')),
            reference_id=data.get('reference_id')
        )
