"""
Account Balance Management Module

Maintains each loan account's running balance and aggregates. Every change to
a balance goes through post_transaction, which appends the matching ledger
entry in the same atomic unit, so that for every account

    current_balance == principal_amount + sum(ledger amounts)
"""

import calendar
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .exceptions import ConflictError, NotFoundError, ValidationError
from .ledger import TransactionLedger, TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, quantize_amount, quantize_rate
from .storage import StorageInterface, StorageRecord, parse_datetime


# Entry types that reduce the balance and must carry a negative amount
DEBIT_TYPES = frozenset({TransactionType.WITHDRAWAL, TransactionType.ADJUSTMENT_DECREASE})


@dataclass
class LoanAccount(StorageRecord):
    """
    Loan account with cached balance and aggregates
    """
    owner_id: int
    account_number: str
    principal_amount: Decimal
    current_balance: Decimal
    monthly_rate: Decimal
    total_bonuses: Decimal = ZERO
    total_withdrawals: Decimal = ZERO


@dataclass
class PostingResult:
    transaction_id: int
    new_balance: Decimal


@dataclass
class ReconciliationReport:
    """Comparison of the cached balance with principal + ledger"""
    account_id: int
    principal_amount: Decimal
    ledger_total: Decimal
    expected_balance: Decimal
    current_balance: Decimal

    @property
    def drift(self) -> Decimal:
        return self.current_balance - self.expected_balance

    @property
    def is_consistent(self) -> bool:
        return self.drift == 0


@dataclass
class MonthlySnapshot:
    """Balance movement within one calendar month"""
    month_end_date: date
    starting_balance: Decimal
    ending_balance: Decimal
    deposits: Decimal = ZERO
    withdrawals: Decimal = ZERO
    bonuses: Decimal = ZERO
    payments: Decimal = ZERO
    adjustments: Decimal = ZERO

    @property
    def monthly_growth(self) -> Decimal:
        return self.ending_balance - self.starting_balance


class AccountBalanceManager:
    """
    Opens loan accounts and posts every balance change through the ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: TransactionLedger,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.accounts_table = "loan_accounts"
        self.owners_table = "loan_account_owners"
        self.logger = get_logger("yield_ledger.accounts")

    def open_account(
        self,
        owner_id: int,
        principal_amount: Decimal,
        monthly_rate: Decimal = Decimal("0.01"),
        account_number: Optional[str] = None
    ) -> LoanAccount:
        """
        Open the loan account for an owner

        Args:
            owner_id: User who owns the account
            principal_amount: Opening principal, also the opening balance
            monthly_rate: Monthly rate shown to the owner
            account_number: Specific account number (generated if not provided)

        Returns:
            Created LoanAccount

        Raises:
            ConflictError: If the owner already has an account
            ValidationError: If the principal is negative or the rate out of range
        """
        principal = quantize_amount(principal_amount, "principal_amount")
        if principal < 0:
            raise ValidationError("Principal amount must not be negative")
        rate = quantize_rate(monthly_rate, "monthly_rate")
        if not Decimal("0") <= rate <= Decimal("1"):
            raise ValidationError(f"Monthly rate must be between 0 and 1, got {rate}")

        with self.storage.atomic():
            if self.storage.find(self.accounts_table, {'owner_id': owner_id}):
                raise ConflictError(f"Owner {owner_id} already has a loan account")

            now = datetime.now(timezone.utc)
            account_id = self.storage.next_id(self.accounts_table)
            # Keyed owner row: the unique guard when two opens race
            try:
                self.storage.insert(self.owners_table, owner_id,
                                    {'owner_id': owner_id, 'account_id': account_id})
            except ConflictError as e:
                raise ConflictError(f"Owner {owner_id} already has a loan account") from e
            account = LoanAccount(
                id=account_id,
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                account_number=account_number or f"LN{account_id:08d}",
                principal_amount=principal,
                current_balance=principal,
                monthly_rate=rate
            )
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="loan_account",
                entity_id=account.id,
                metadata={
                    "owner_id": owner_id,
                    "account_number": account.account_number,
                    "principal_amount": principal
                }
            )

        log_action(self.logger, "info", f"Opened loan account {account.account_number}",
                   user_id=owner_id, action="open_account", resource=f"loan_account:{account.id}")
        return account

    def post_transaction(
        self,
        account_id: int,
        amount: Decimal,
        transaction_type: TransactionType,
        description: str,
        effective_date: date,
        bonus_percentage: Optional[Decimal] = None,
        reference_id: Optional[str] = None
    ) -> PostingResult:
        """
        Append a ledger entry and apply it to the account, as one atomic unit

        A negative resulting balance is not refused here; callers that debit
        must check funds first.

        Args:
            account_id: Account to post to
            amount: Signed amount; withdrawals and decreases are negative
            transaction_type: Kind of monetary event
            description: Human-readable description
            effective_date: Date the event takes effect
            bonus_percentage: Bonus rate in [0, 1] for bonus entries
            reference_id: External reference

        Returns:
            PostingResult with the new transaction id and balance

        Raises:
            NotFoundError: If the account does not exist
            ValidationError: If the amount is zero or its sign does not match the type
        """
        amount = quantize_amount(amount)
        if amount == 0:
            raise ValidationError("Transaction amount must not be zero")
        if transaction_type in DEBIT_TYPES and amount > 0:
            raise ValidationError(f"{transaction_type.value} amount must be negative")
        if transaction_type not in DEBIT_TYPES and amount < 0:
            raise ValidationError(f"{transaction_type.value} amount must be positive")
        if bonus_percentage is not None:
            bonus_percentage = quantize_rate(bonus_percentage, "bonus_percentage")
            if not Decimal("0") <= bonus_percentage <= Decimal("1"):
                raise ValidationError("Bonus percentage must be between 0 and 1")

        with self.storage.atomic():
            account = self.lock_account(account_id)

            entry = self.ledger.append(
                account_id=account.id,
                amount=amount,
                transaction_type=transaction_type,
                description=description,
                effective_date=effective_date,
                bonus_percentage=bonus_percentage,
                reference_id=reference_id
            )

            account.current_balance += amount
            if transaction_type == TransactionType.BONUS:
                account.total_bonuses += amount
            elif transaction_type == TransactionType.WITHDRAWAL:
                account.total_withdrawals += abs(amount)
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_POSTED,
                entity_type="transaction",
                entity_id=entry.id,
                metadata={
                    "account_id": account.id,
                    "transaction_type": transaction_type,
                    "amount": amount,
                    "new_balance": account.current_balance
                }
            )

        self.logger.debug(
            "Posted %s %s to account %s, balance %s",
            transaction_type.value, amount, account.id, account.current_balance
        )
        return PostingResult(transaction_id=entry.id, new_balance=account.current_balance)

    def get_account(self, account_id: int) -> LoanAccount:
        """
        Raises:
            NotFoundError: If the account does not exist
        """
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise NotFoundError(f"Loan account {account_id} not found")
        return self._account_from_dict(data)

    def get_account_for_owner(self, owner_id: int) -> LoanAccount:
        results = self.storage.find(self.accounts_table, {'owner_id': owner_id})
        if not results:
            raise NotFoundError(f"Owner {owner_id} has no loan account")
        return self._account_from_dict(results[0])

    def get_balance(self, account_id: int) -> Decimal:
        return self.get_account(account_id).current_balance

    def reconcile(self, account_id: int) -> ReconciliationReport:
        """Recompute the balance from the ledger and compare with the cached one"""
        account = self.get_account(account_id)
        ledger_total = self.ledger.total_for_account(account_id)
        report = ReconciliationReport(
            account_id=account_id,
            principal_amount=account.principal_amount,
            ledger_total=ledger_total,
            expected_balance=account.principal_amount + ledger_total,
            current_balance=account.current_balance
        )
        if not report.is_consistent:
            log_action(self.logger, "warning", f"Balance drift on account {account_id}",
                       action="reconcile", resource=f"loan_account:{account_id}",
                       extra={"drift": str(report.drift)})
        return report

    def monthly_summary(self, account_id: int) -> List[MonthlySnapshot]:
        """
        Month-by-month balance history, by effective date, starting from the
        opening principal
        """
        account = self.get_account(account_id)
        entries = sorted(self.ledger.entries_for_account(account_id),
                         key=lambda e: (e.effective_date, e.id))

        running_balance = account.principal_amount
        months: Dict[tuple, MonthlySnapshot] = {}

        for entry in entries:
            key = (entry.effective_date.year, entry.effective_date.month)
            snapshot = months.get(key)
            if snapshot is None:
                last_day = calendar.monthrange(*key)[1]
                snapshot = MonthlySnapshot(
                    month_end_date=date(key[0], key[1], last_day),
                    starting_balance=running_balance,
                    ending_balance=running_balance
                )
                months[key] = snapshot

            kind = entry.transaction_type
            if kind in (TransactionType.LOAN, TransactionType.YIELD_DEPOSIT):
                snapshot.deposits += entry.amount
            elif kind == TransactionType.WITHDRAWAL:
                snapshot.withdrawals += abs(entry.amount)
            elif kind == TransactionType.BONUS:
                snapshot.bonuses += entry.amount
            elif kind in (TransactionType.MONTHLY_PAYMENT, TransactionType.YIELD_PAYMENT):
                snapshot.payments += entry.amount
            else:
                snapshot.adjustments += entry.amount

            running_balance += entry.amount
            snapshot.ending_balance = running_balance

        return [months[key] for key in sorted(months)]

    def lock_account(self, account_id: int) -> LoanAccount:
        data = self.storage.load_for_update(self.accounts_table, account_id)
        if not data:
            raise NotFoundError(f"Loan account {account_id} not found")
        return self._account_from_dict(data)

    def _save_account(self, account: LoanAccount) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())

    def _account_from_dict(self, data: Dict) -> LoanAccount:
        return LoanAccount(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            account_number=data['account_number'],
            principal_amount=Decimal(data['principal_amount']),
            current_balance=Decimal(data['current_balance']),
            monthly_rate=Decimal(data['monthly_rate']),
            total_bonuses=Decimal(data.get('total_bonuses', '0.00')),
            total_withdrawals=Decimal(data.get('total_withdrawals', '0.00'))
        )
