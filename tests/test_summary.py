"""
Test suite for loan summaries and upcoming-due listing
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.events import EventDispatcher
from loan_engine.exceptions import LoanNotFoundError
from loan_engine.ledger import EventLedger
from loan_engine.loans import LoanMutationEngine, LoanStatus
from loan_engine.schedule import ScheduleStore
from loan_engine.storage import InMemoryStorage
from loan_engine.summary import SummaryAggregator


class TestLoanSummary:
    """Test SummaryAggregator.summarize"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.schedule = ScheduleStore(self.storage)
        self.ledger = EventLedger(self.storage)
        self.engine = LoanMutationEngine(
            self.storage, self.schedule, self.ledger, dispatcher=EventDispatcher()
        )
        self.aggregator = SummaryAggregator(self.storage, self.schedule, self.ledger, self.engine)

        self.loan = self.engine.create_loan(
            Decimal('100000'), Decimal('12'), 12, date(2025, 1, 1)
        )

    def _generate_and_pay(self, count):
        self.engine.generate_schedule(
            self.loan.id, Decimal('100000'), Decimal('12'), 12, date(2025, 1, 1)
        )
        for installment in self.schedule.pending(self.loan.id)[:count]:
            self.engine.mark_installment_paid(installment.id, installment.due_date, "upi")

    def test_no_schedule(self):
        """A loan without a schedule has zero progress"""
        summary = self.aggregator.summarize(self.loan.id)
        assert summary.paid_count == 0
        assert summary.pending_count == 0
        assert summary.progress_percent == Decimal('0.00')
        assert summary.remaining_principal == Decimal('0.00')
        assert summary.next_due is None
        assert summary.current_installment is None

    def test_after_three_payments(self):
        self._generate_and_pay(3)
        summary = self.aggregator.summarize(self.loan.id)

        assert summary.status == LoanStatus.ACTIVE
        assert summary.original_principal == Decimal('100000.00')
        assert summary.current_installment == Decimal('8884.88')
        assert summary.paid_count == 3
        assert summary.pending_count == 9
        assert summary.cancelled_count == 0
        assert summary.progress_percent == Decimal('25.00')
        assert summary.total_paid == Decimal('26654.64')
        assert summary.total_principal_paid == Decimal('23891.98')
        assert summary.total_interest_paid == Decimal('2762.66')
        assert summary.remaining_principal == Decimal('76108.02')
        assert summary.next_due.sequence == 4
        assert summary.next_due.due_date == date(2025, 4, 1)
        assert summary.total_interest_saved == Decimal('0.00')

    def test_remaining_totals(self):
        self._generate_and_pay(3)
        summary = self.aggregator.summarize(self.loan.id)
        pending = self.schedule.pending(self.loan.id)

        assert summary.total_remaining == sum((r.installment_amount for r in pending), Decimal('0'))
        assert summary.remaining_interest == sum((r.interest_component for r in pending), Decimal('0'))
        assert summary.total_remaining - summary.remaining_interest == summary.remaining_principal

    def test_interest_saved_accumulates(self):
        self._generate_and_pay(3)
        first = self.engine.apply_part_payment(self.loan.id, Decimal('20000'), date(2025, 3, 15), "tenure")
        second = self.engine.foreclose(self.loan.id, date(2025, 4, 1))

        summary = self.aggregator.summarize(self.loan.id)
        assert summary.total_interest_saved == first.interest_saved + second.interest_saved
        assert len(summary.events) == 6

    def test_after_foreclosure(self):
        self._generate_and_pay(3)
        self.engine.foreclose(self.loan.id, date(2025, 4, 1))
        summary = self.aggregator.summarize(self.loan.id)

        assert summary.status == LoanStatus.CLOSED
        assert summary.pending_count == 0
        assert summary.cancelled_count == 9
        assert summary.progress_percent == Decimal('100.00')
        assert summary.remaining_principal == Decimal('0.00')
        assert summary.next_due is None

    def test_wire_format(self):
        self._generate_and_pay(1)
        data = self.aggregator.summarize(self.loan.id).to_dict()

        assert data["current_emi"] == "8884.88"
        assert data["progress_percent"] == "8.33"
        assert data["next_emi_date"] == "2025-02-01"
        assert data["next_emi_amount"] == "8884.88"
        assert data["status"] == "active"
        assert [event["kind"] for event in data["events"]] == ["schedule_generated", "payment"]

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.aggregator.summarize("missing")


class TestUpcomingInstallments:
    """Test reminder-window selection"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.schedule = ScheduleStore(self.storage)
        self.ledger = EventLedger(self.storage)
        self.engine = LoanMutationEngine(
            self.storage, self.schedule, self.ledger, dispatcher=EventDispatcher()
        )
        self.aggregator = SummaryAggregator(self.storage, self.schedule, self.ledger, self.engine)

        self.loan = self.engine.create_loan(
            Decimal('100000'), Decimal('12'), 12, date(2025, 1, 1), lender="SBI"
        )
        self.engine.generate_schedule(
            self.loan.id, Decimal('100000'), Decimal('12'), 12, date(2025, 1, 1)
        )

    def test_seven_day_window(self):
        upcoming = self.aggregator.upcoming_installments(date(2025, 1, 25))
        assert len(upcoming) == 1
        assert upcoming[0].installment.sequence == 2
        assert upcoming[0].days_until == 7
        assert upcoming[0].to_dict()["lender"] == "SBI"

    def test_one_day_window(self):
        upcoming = self.aggregator.upcoming_installments(date(2025, 1, 31))
        assert [(u.installment.sequence, u.days_until) for u in upcoming] == [(2, 1)]

    def test_outside_windows(self):
        assert self.aggregator.upcoming_installments(date(2025, 1, 27)) == []

    def test_custom_windows(self):
        upcoming = self.aggregator.upcoming_installments(date(2025, 1, 27), windows=[5])
        assert [u.installment.sequence for u in upcoming] == [2]

    def test_paid_installments_excluded(self):
        first, second = self.schedule.pending(self.loan.id)[:2]
        self.engine.mark_installment_paid(first.id, date(2025, 1, 1), "upi")
        self.engine.mark_installment_paid(second.id, date(2025, 1, 20), "upi")
        assert self.aggregator.upcoming_installments(date(2025, 1, 25)) == []

    def test_closed_loans_excluded(self):
        self.engine.foreclose(self.loan.id, date(2025, 1, 1))
        assert self.aggregator.upcoming_installments(date(2025, 1, 25)) == []
