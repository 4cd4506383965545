"""
Payout Scheduler

Computes anniversary dates and pays annual yield on active deposits. A payout
is idempotent per (deposit, payout date): the same anniversary is never paid
twice, whether it is triggered manually or by the batch runner.
"""

import calendar
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .accounts import AccountBalanceManager
from .audit import AuditTrail, AuditEventType
from .deposits import YieldDeposit, YieldDepositRegistry, DepositStatus, annual_payout
from .exceptions import ConflictError, NotFoundError, ValidationError
from .ledger import TransactionType
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime


def add_years(start: date, years: int) -> date:
    """Same month and day, years later; 29 February becomes 28 February in non-leap years"""
    year = start.year + years
    if start.month == 2 and start.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return start.replace(year=year)


def next_anniversary(start_date: date, as_of: date) -> date:
    """
    First anniversary of start_date strictly after as_of. Display only: it is
    always in the future and never tells whether a payout is owed.
    """
    years = max(as_of.year - start_date.year, 1)
    candidate = add_years(start_date, years)
    while candidate <= as_of:
        years += 1
        candidate = add_years(start_date, years)
    return candidate


def due_date(start_date: date, last_payout_date: Optional[date], as_of: date) -> Optional[date]:
    """
    Most recent anniversary on or before as_of that has not been paid yet,
    or None when nothing is owed
    """
    years = as_of.year - start_date.year
    if years < 1:
        return None
    latest = add_years(start_date, years)
    if latest > as_of:
        years -= 1
        if years < 1:
            return None
        latest = add_years(start_date, years)

    paid_through = last_payout_date or start_date
    if latest <= paid_through:
        return None
    return latest


@dataclass
class YieldPayout(StorageRecord):
    """
    One anniversary payment. Immutable.
    """
    deposit_id: int
    amount: Decimal
    payout_date: date
    transaction_id: int
    processed_by: Optional[int] = None
    notes: Optional[str] = None


@dataclass
class PayoutResult:
    payout_id: int
    amount: Decimal
    transaction_id: int


@dataclass
class BatchReport:
    """Outcome of one batch run"""
    as_of: date
    dry_run: bool
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.processed + self.skipped + self.errors


class PayoutScheduler:
    """
    Pays annual yield on active deposits
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountBalanceManager,
        deposit_registry: YieldDepositRegistry,
        audit_trail: AuditTrail,
        system_user_id: int = 1
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.deposit_registry = deposit_registry
        self.audit_trail = audit_trail
        self.system_user_id = system_user_id
        self.payouts_table = "yield_payouts"
        self.logger = get_logger("yield_ledger.payouts")

    def next_anniversary(self, start_date: date, as_of: date) -> date:
        return next_anniversary(start_date, as_of)

    def due_date(self, start_date: date, last_payout_date: Optional[date], as_of: date) -> Optional[date]:
        return due_date(start_date, last_payout_date, as_of)

    def process_payout(
        self,
        deposit_id: int,
        payout_date: date,
        processed_by: Optional[int] = None,
        notes: Optional[str] = None
    ) -> PayoutResult:
        """
        Pay one anniversary of a deposit

        Posts a yield_payment to the owner's loan account, records the payout
        and advances the deposit, all in one unit of work.

        Args:
            deposit_id: Deposit to pay
            payout_date: Anniversary being paid, also the entry's effective date
            processed_by: Admin user, or the system user for batch runs
            notes: Free-form notes stored on the payout

        Returns:
            PayoutResult with the payout id, amount and ledger transaction id

        Raises:
            NotFoundError: If the deposit does not exist or is not active
            ConflictError: If this deposit was already paid for payout_date
            ValidationError: If the deposit's yield rounds to zero
        """
        with self.storage.atomic():
            deposit, account = self._lock_deposit_and_account(deposit_id)
            if not deposit.is_active:
                raise NotFoundError(f"Yield deposit {deposit_id} is not active")

            if self.storage.find(self.payouts_table, {
                'deposit_id': deposit_id,
                'payout_date': payout_date.isoformat()
            }):
                raise ConflictError(
                    f"Payout for deposit {deposit_id} on {payout_date.isoformat()} already exists"
                )

            amount = annual_payout(deposit)
            if amount == 0:
                raise ValidationError(f"Yield deposit {deposit_id} earns no yield")

            posting = self.account_manager.post_transaction(
                account_id=account.id,
                amount=amount,
                transaction_type=TransactionType.YIELD_PAYMENT,
                description=f"{(deposit.annual_yield_rate * 100).normalize():f}% yield payment for deposit #{deposit_id}",
                effective_date=payout_date,
                reference_id=f"deposit:{deposit_id}"
            )

            now = datetime.now(timezone.utc)
            payout = YieldPayout(
                id=self.storage.next_id(self.payouts_table),
                created_at=now,
                updated_at=now,
                deposit_id=deposit_id,
                amount=amount,
                payout_date=payout_date,
                transaction_id=posting.transaction_id,
                processed_by=processed_by,
                notes=notes
            )
            self.storage.save(self.payouts_table, payout.id, payout.to_dict())

            self.deposit_registry.record_payout(deposit, payout_date, amount)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYOUT_PROCESSED,
                entity_type="yield_payout",
                entity_id=payout.id,
                metadata={
                    "deposit_id": deposit_id,
                    "amount": amount,
                    "payout_date": payout_date,
                    "transaction_id": posting.transaction_id
                },
                user_id=processed_by
            )

        log_action(self.logger, "info",
                   f"Paid {format_amount(amount)} yield on deposit {deposit_id} for {payout_date.isoformat()}",
                   user_id=processed_by, action="process_payout",
                   resource=f"deposit:{deposit_id}")
        return PayoutResult(payout_id=payout.id, amount=amount, transaction_id=posting.transaction_id)

    def run_due_payouts(
        self,
        as_of: date,
        dry_run: bool = False,
        processed_by: Optional[int] = None
    ) -> BatchReport:
        """
        Pay every active deposit with an unpaid anniversary on or before as_of

        Deposits are visited by start date, each in its own unit of work. A
        deposit that fails is counted as an error and the run continues.
        In a dry run nothing is written; due deposits count as processed.
        """
        processed_by = processed_by if processed_by is not None else self.system_user_id
        report = BatchReport(as_of=as_of, dry_run=dry_run)

        deposits = self.deposit_registry.list_deposits(status=DepositStatus.ACTIVE)
        deposits.sort(key=lambda d: (d.start_date, d.id))
        self.logger.info("Found %d active yield deposits for %s", len(deposits), as_of.isoformat())

        for deposit in deposits:
            payout_date = due_date(deposit.start_date, deposit.last_payout_date, as_of)
            if payout_date is None:
                report.skipped += 1
                report.details.append({
                    "deposit_id": deposit.id,
                    "status": "skipped",
                    "reason": "not due"
                })
                self.logger.debug("Deposit %s not due as of %s", deposit.id, as_of.isoformat())
                continue

            amount = annual_payout(deposit)
            if amount == 0:
                # Nothing to post; the anniversary is still consumed
                if not dry_run:
                    try:
                        self._advance_without_payout(deposit.id, payout_date)
                    except Exception as e:
                        report.errors += 1
                        report.details.append({
                            "deposit_id": deposit.id,
                            "status": "error",
                            "payout_date": payout_date,
                            "error": str(e)
                        })
                        self.logger.error("Failed to advance deposit %s: %s", deposit.id, e, exc_info=True)
                        continue
                report.skipped += 1
                report.details.append({
                    "deposit_id": deposit.id,
                    "status": "skipped",
                    "payout_date": payout_date,
                    "reason": "no yield due"
                })
                self.logger.warning("Deposit %s earns no yield, skipping %s",
                                    deposit.id, payout_date.isoformat())
                continue

            if dry_run:
                report.processed += 1
                report.details.append({
                    "deposit_id": deposit.id,
                    "status": "would_process",
                    "payout_date": payout_date,
                    "amount": amount
                })
                continue

            try:
                result = self.process_payout(deposit.id, payout_date, processed_by=processed_by)
            except Exception as e:
                report.errors += 1
                report.details.append({
                    "deposit_id": deposit.id,
                    "status": "error",
                    "payout_date": payout_date,
                    "error": str(e)
                })
                self.logger.error("Payout failed for deposit %s: %s", deposit.id, e, exc_info=True)
                continue

            report.processed += 1
            report.details.append({
                "deposit_id": deposit.id,
                "status": "processed",
                "payout_date": payout_date,
                "amount": result.amount,
                "payout_id": result.payout_id
            })

        log_action(self.logger, "info", "Yield payout run finished",
                   user_id=processed_by, action="run_due_payouts",
                   extra={"as_of": as_of.isoformat(), "dry_run": dry_run,
                          "processed": report.processed, "skipped": report.skipped,
                          "errors": report.errors})
        return report

    def payout_history(self, deposit_id: int) -> List[YieldPayout]:
        """Payouts of a deposit, most recent payout date first"""
        self.deposit_registry.get_deposit(deposit_id)
        payouts = [self._payout_from_dict(data)
                   for data in self.storage.find(self.payouts_table, {'deposit_id': deposit_id})]
        payouts.sort(key=lambda p: (p.payout_date, p.id), reverse=True)
        return payouts

    def payout_status(self, on_date: date) -> Dict[str, Any]:
        """
        Daily view: payouts recorded for on_date and active deposits that
        still have an unpaid anniversary as of that date
        """
        payouts = [self._payout_from_dict(data)
                   for data in self.storage.find(self.payouts_table, {'payout_date': on_date.isoformat()})]

        pending: List[YieldDeposit] = []
        for deposit in self.deposit_registry.list_deposits(status=DepositStatus.ACTIVE):
            if annual_payout(deposit) == 0:
                continue
            if due_date(deposit.start_date, deposit.last_payout_date, on_date) is not None:
                pending.append(deposit)
        pending.sort(key=lambda d: (d.start_date, d.id))

        return {
            "date": on_date,
            "payments_count": len(payouts),
            "payments_amount": sum((p.amount for p in payouts), ZERO),
            "pending_deposits": pending,
            "pending_amount": sum((annual_payout(d) for d in pending), ZERO)
        }

    def _lock_deposit_and_account(self, deposit_id: int):
        """Lock the owner's loan account, then the deposit"""
        deposit = self.deposit_registry.get_deposit(deposit_id)
        account = self.account_manager.get_account_for_owner(deposit.owner_id)
        account = self.account_manager.lock_account(account.id)
        return self.deposit_registry.lock_deposit(deposit_id), account

    def _advance_without_payout(self, deposit_id: int, payout_date: date) -> None:
        with self.storage.atomic():
            deposit, _ = self._lock_deposit_and_account(deposit_id)
            if not deposit.is_active or annual_payout(deposit) != 0:
                return
            self.deposit_registry.record_payout(deposit, payout_date, ZERO)

    def _payout_from_dict(self, data: Dict) -> YieldPayout:
        return YieldPayout(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            deposit_id=data['deposit_id'],
            amount=Decimal(data['amount']),
            payout_date=parse_date(data['payout_date']),
            transaction_id=data['transaction_id'],
            processed_by=data.get('processed_by'),
            notes=data.get('notes')
        )
