"""
Test suite for the transaction ledger

Tests append-only journal writes, ordering and filtering of ledger reads.
"""

import time
import pytest
from decimal import Decimal
from datetime import date

from yield_ledger.exceptions import NotFoundError, ValidationError
from yield_ledger.ledger import (
    TransactionLedger, TransactionType, LedgerFilter, LedgerOrder, Page
)
from yield_ledger.storage import InMemoryStorage


class TestTransactionLedger:
    """Test TransactionLedger functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.ledger = TransactionLedger(self.storage)

    def _append(self, amount, effective_date, transaction_type=TransactionType.BONUS, account_id=1):
        # Keep creation timestamps distinct
        time.sleep(0.002)
        return self.ledger.append(
            account_id=account_id,
            amount=Decimal(amount),
            transaction_type=transaction_type,
            description=f"{transaction_type.value} {amount}",
            effective_date=effective_date
        )

    def test_append_and_get_entry(self):
        """Appended entries are stored with quantized amounts"""
        entry = self.ledger.append(
            account_id=1,
            amount=Decimal("100.005"),
            transaction_type=TransactionType.BONUS,
            description="Quarterly bonus",
            effective_date=date(2025, 3, 31),
            bonus_percentage=Decimal("0.05"),
            reference_id="bonus:q1"
        )

        assert entry.amount == Decimal("100.01")
        stored = self.ledger.get_entry(entry.id)
        assert stored.account_id == 1
        assert stored.amount == Decimal("100.01")
        assert stored.transaction_type == TransactionType.BONUS
        assert stored.effective_date == date(2025, 3, 31)
        assert stored.bonus_percentage == Decimal("0.0500")
        assert stored.reference_id == "bonus:q1"

    def test_get_missing_entry(self):
        with pytest.raises(NotFoundError):
            self.ledger.get_entry(404)

    def test_ledger_has_no_mutating_operations(self):
        """The journal exposes no delete or update"""
        assert not hasattr(self.ledger, "delete")
        assert not hasattr(self.ledger, "update")

    def test_default_order_is_creation_newest_first(self):
        """A back-dated entry is listed where it was recorded"""
        first = self._append("10.00", date(2025, 5, 1))
        back_dated = self._append("20.00", date(2024, 1, 1))
        last = self._append("30.00", date(2025, 6, 1))

        ids = [e.id for e in self.ledger.query(1)]
        assert ids == [last.id, back_dated.id, first.id]

    def test_effective_date_order(self):
        """EFFECTIVE_DATE order gives a chronological statement, newest first"""
        first = self._append("10.00", date(2025, 5, 1))
        back_dated = self._append("20.00", date(2024, 1, 1))
        last = self._append("30.00", date(2025, 6, 1))

        ids = [e.id for e in self.ledger.query(1, order=LedgerOrder.EFFECTIVE_DATE)]
        assert ids == [last.id, first.id, back_dated.id]

    def test_filters(self):
        """Filter by type and inclusive effective-date range"""
        self._append("10.00", date(2025, 1, 1), TransactionType.BONUS)
        payment = self._append("20.00", date(2025, 2, 1), TransactionType.YIELD_PAYMENT)
        self._append("-5.00", date(2025, 3, 1), TransactionType.WITHDRAWAL)

        by_type = self.ledger.query(
            1, filters=LedgerFilter(transaction_types=frozenset({TransactionType.YIELD_PAYMENT}))
        )
        assert [e.id for e in by_type] == [payment.id]

        by_range = self.ledger.query(
            1, filters=LedgerFilter(start_date=date(2025, 2, 1), end_date=date(2025, 3, 1))
        )
        assert len(by_range) == 2

    def test_pagination(self):
        entries = [self._append(f"{i}.00", date(2025, 1, i)) for i in range(1, 6)]

        page = self.ledger.query(1, page=Page(limit=2, offset=1))
        assert [e.id for e in page] == [entries[3].id, entries[2].id]

    def test_invalid_page(self):
        with pytest.raises(ValidationError):
            Page(limit=0)
        with pytest.raises(ValidationError):
            Page(offset=-1)

    def test_entries_are_per_account(self):
        self._append("10.00", date(2025, 1, 1), account_id=1)
        self._append("99.00", date(2025, 1, 1), account_id=2)

        assert len(self.ledger.query(1)) == 1
        assert self.ledger.total_for_account(2) == Decimal("99.00")

    def test_total_for_account(self):
        self._append("100.00", date(2025, 1, 1), TransactionType.LOAN)
        self._append("-40.00", date(2025, 2, 1), TransactionType.WITHDRAWAL)
        self._append("0.50", date(2025, 3, 1), TransactionType.ADJUSTMENT_INCREASE)

        assert self.ledger.total_for_account(1) == Decimal("60.50")
        assert self.ledger.total_for_account(3) == Decimal("0.00")
