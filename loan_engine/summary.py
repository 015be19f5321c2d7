"""
Loan Summary Module

Read-only projections over the installment schedule and the event
ledger: per-loan progress summaries and the upcoming-dues listing used
for payment reminders.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .currency import ZERO, format_amount, round2
from .exceptions import LoanNotFoundError
from .ledger import EventLedger, LoanEvent, interest_saved_of
from .loans import Loan, LoanMutationEngine, LoanStatus
from .logging_config import get_logger
from .schedule import Installment, InstallmentStatus, ScheduleStore
from .storage import StorageInterface


DEFAULT_REMINDER_WINDOWS = (7, 3, 1)


@dataclass
class LoanSummary:
    """Point-in-time view of a loan's repayment progress"""
    loan_id: str
    status: LoanStatus
    original_principal: Decimal
    current_installment: Optional[Decimal]
    remaining_principal: Decimal
    total_paid: Decimal
    total_principal_paid: Decimal
    total_interest_paid: Decimal
    total_remaining: Decimal
    remaining_interest: Decimal
    paid_count: int
    pending_count: int
    cancelled_count: int
    progress_percent: Decimal
    next_due: Optional[Installment]
    total_interest_saved: Decimal
    events: List[LoanEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Wire form: money as two-decimal strings, dates as ISO strings"""
        return {
            "loan_id": self.loan_id,
            "status": self.status.value,
            "original_principal": format_amount(self.original_principal),
            "current_emi": (
                format_amount(self.current_installment)
                if self.current_installment is not None else None
            ),
            "remaining_principal": format_amount(self.remaining_principal),
            "total_paid": format_amount(self.total_paid),
            "total_principal_paid": format_amount(self.total_principal_paid),
            "total_interest_paid": format_amount(self.total_interest_paid),
            "total_remaining": format_amount(self.total_remaining),
            "remaining_interest": format_amount(self.remaining_interest),
            "paid_count": self.paid_count,
            "pending_count": self.pending_count,
            "cancelled_count": self.cancelled_count,
            "progress_percent": format_amount(self.progress_percent),
            "next_emi_date": self.next_due.due_date.isoformat() if self.next_due else None,
            "next_emi_amount": (
                format_amount(self.next_due.installment_amount) if self.next_due else None
            ),
            "total_interest_saved": format_amount(self.total_interest_saved),
            "events": [event.to_dict() for event in self.events],
        }


@dataclass
class UpcomingInstallment:
    """A pending installment falling inside a reminder window"""
    installment: Installment
    loan: Loan
    days_until: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan.id,
            "installment_id": self.installment.id,
            "sequence": self.installment.sequence,
            "due_date": self.installment.due_date.isoformat(),
            "amount": format_amount(self.installment.installment_amount),
            "currency": self.loan.currency,
            "lender": self.loan.lender,
            "loan_type": self.loan.loan_type,
            "days_until": self.days_until,
        }


class SummaryAggregator:
    """
    Builds loan summaries from committed state

    Every read runs inside ``storage.snapshot()`` so a summary never mixes
    rows from before and after a concurrent mutation.
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_store: ScheduleStore,
        ledger: EventLedger,
        loans: LoanMutationEngine
    ):
        self.storage = storage
        self.schedule = schedule_store
        self.ledger = ledger
        self.loans = loans
        self.logger = get_logger("summary")

    def summarize(self, loan_id: str) -> LoanSummary:
        """
        Aggregate a loan's schedule and event history

        Args:
            loan_id: Loan ID

        Returns:
            LoanSummary

        Raises:
            LoanNotFoundError: Unknown loan
        """
        with self.storage.snapshot():
            loan = self.loans.get_loan(loan_id)
            if loan is None:
                raise LoanNotFoundError(loan_id)
            installments = self.schedule.list_by_loan(loan_id)
            events = self.ledger.list_by_loan(loan_id)

        paid = [i for i in installments if i.status == InstallmentStatus.PAID]
        pending = [i for i in installments if i.status == InstallmentStatus.PENDING]
        cancelled = [i for i in installments if i.status == InstallmentStatus.CANCELLED]

        remaining_principal = round2(pending[0].opening_principal) if pending else ZERO

        denominator = len(paid) + len(pending)
        if denominator:
            progress = round2(Decimal(len(paid)) / Decimal(denominator) * Decimal('100'))
        else:
            progress = ZERO

        total_saved = ZERO
        for event in events:
            saved = interest_saved_of(event)
            if saved is not None:
                total_saved += saved

        summary = LoanSummary(
            loan_id=loan.id,
            status=loan.status,
            original_principal=loan.principal_amount,
            current_installment=loan.installment_amount,
            remaining_principal=remaining_principal,
            total_paid=_total(i.installment_amount for i in paid),
            total_principal_paid=_total(i.principal_component for i in paid),
            total_interest_paid=_total(i.interest_component for i in paid),
            total_remaining=_total(i.installment_amount for i in pending),
            remaining_interest=_total(i.interest_component for i in pending),
            paid_count=len(paid),
            pending_count=len(pending),
            cancelled_count=len(cancelled),
            progress_percent=progress,
            next_due=pending[0] if pending else None,
            total_interest_saved=round2(total_saved),
            events=events
        )

        self.logger.debug(
            f"Summarized loan {loan_id}: {len(paid)} paid, {len(pending)} pending, "
            f"{len(cancelled)} cancelled"
        )
        return summary

    def upcoming_installments(
        self,
        as_of: date,
        windows: Optional[Iterable[int]] = None
    ) -> List[UpcomingInstallment]:
        """
        Pending installments of active loans due exactly ``window`` days
        after ``as_of``, for each window

        Args:
            as_of: Reference date
            windows: Day offsets to look ahead (default 7, 3 and 1)

        Returns:
            List of UpcomingInstallment, nearest window first
        """
        offsets = sorted(set(windows if windows is not None else DEFAULT_REMINDER_WINDOWS))
        upcoming: List[UpcomingInstallment] = []
        loans: Dict[str, Optional[Loan]] = {}

        with self.storage.snapshot():
            for days in offsets:
                for installment in self.schedule.due_on(as_of + timedelta(days=days)):
                    if installment.loan_id not in loans:
                        loans[installment.loan_id] = self.loans.get_loan(installment.loan_id)
                    loan = loans[installment.loan_id]
                    if loan is None or loan.status != LoanStatus.ACTIVE:
                        continue
                    upcoming.append(UpcomingInstallment(
                        installment=installment,
                        loan=loan,
                        days_until=days
                    ))

        self.logger.info(f"Found {len(upcoming)} upcoming installments as of {as_of.isoformat()}")
        return upcoming


def _total(values: Iterable[Decimal]) -> Decimal:
    return round2(sum(values, ZERO))
