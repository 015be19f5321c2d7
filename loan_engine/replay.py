"""
Schedule Replay Module

Rebuilds a loan's installment set purely from its event history and
checks it against the stored schedule. Drift between the two means the
projection was written outside the engine or the ledger was altered.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .amortization import ScheduleEntry, build_schedule
from .currency import format_amount
from .exceptions import InvalidStateError, LoanNotFoundError
from .ledger import (
    EventLedger, ForeclosureEvent, LoanEvent, PartPaymentEvent,
    PaymentEvent, ScheduleGeneratedEvent
)
from .logging_config import get_logger, log_action
from .schedule import Installment, InstallmentStatus, ScheduleStore
from .storage import StorageInterface


@dataclass(frozen=True)
class ReplayedInstallment:
    """An installment row as reconstructed from events"""
    entry: ScheduleEntry
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    payment_method: Optional[str] = None

    @property
    def sequence(self) -> int:
        return self.entry.sequence


@dataclass
class ReconciliationReport:
    """Outcome of comparing replayed rows with stored rows"""
    loan_id: str
    consistent: bool
    replayed_count: int
    stored_count: int
    chain_valid: bool
    mismatches: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "consistent": self.consistent,
            "replayed_count": self.replayed_count,
            "stored_count": self.stored_count,
            "chain_valid": self.chain_valid,
            "mismatches": self.mismatches,
        }


_COMPARED_FIELDS = (
    "due_date",
    "installment_amount",
    "principal_component",
    "interest_component",
    "remaining_principal",
)


class ScheduleReplayer:
    """Folds a loan's events into the installment set they imply"""

    def __init__(self, storage: StorageInterface, schedule_store: ScheduleStore, ledger: EventLedger):
        self.storage = storage
        self.schedule = schedule_store
        self.ledger = ledger
        self.logger = get_logger("replay")

    def replay(self, loan_id: str) -> List[ReplayedInstallment]:
        """
        Reconstruct the installment set from the loan's event history

        Returns:
            Rows ordered by sequence, including paid and cancelled ones
        """
        with self.storage.snapshot():
            events = self.ledger.list_by_loan(loan_id)
        return self._fold(events)

    def reconcile(self, loan_id: str) -> ReconciliationReport:
        """
        Compare the replayed schedule with the stored one

        Raises:
            LoanNotFoundError: Unknown loan
        """
        with self.storage.snapshot():
            if not self.storage.exists("loans", loan_id):
                raise LoanNotFoundError(loan_id)
            events = self.ledger.list_by_loan(loan_id)
            stored = self.schedule.list_by_loan(loan_id)
            integrity = self.ledger.verify_integrity(loan_id)

        replayed = self._fold(events)
        mismatches = _compare(replayed, stored)

        report = ReconciliationReport(
            loan_id=loan_id,
            consistent=not mismatches and integrity['valid'],
            replayed_count=len(replayed),
            stored_count=len(stored),
            chain_valid=integrity['valid'],
            mismatches=mismatches
        )

        if report.consistent:
            log_action(self.logger, "info", "Schedule reconciled with event history",
                       loan_id=loan_id, action="reconcile",
                       extra={"events": len(events), "rows": len(replayed)})
        else:
            log_action(self.logger, "warning", "Schedule drifted from event history",
                       loan_id=loan_id, action="reconcile",
                       extra={"mismatches": len(mismatches), "chain_valid": integrity['valid']})
        return report

    def _fold(self, events: List[LoanEvent]) -> List[ReplayedInstallment]:
        rows: List[ReplayedInstallment] = []
        annual_rate: Optional[Decimal] = None

        for event in events:
            if isinstance(event, ScheduleGeneratedEvent):
                annual_rate = event.annual_rate
                entries = build_schedule(
                    event.amount, event.annual_rate, event.tenure_months, event.start_date,
                    installment_override=event.installment_amount
                )
                rows = [ReplayedInstallment(entry) for entry in entries]

            elif isinstance(event, PaymentEvent):
                index = next(
                    (i for i, row in enumerate(rows)
                     if row.sequence == event.installment_sequence
                     and row.status == InstallmentStatus.PENDING),
                    None
                )
                if index is None:
                    raise InvalidStateError(
                        f"Payment event {event.id} refers to installment "
                        f"#{event.installment_sequence} which is not pending"
                    )
                rows[index] = replace(
                    rows[index],
                    status=InstallmentStatus.PAID,
                    paid_date=event.effective_date,
                    payment_method=event.payment_method
                )

            elif isinstance(event, PartPaymentEvent):
                if annual_rate is None:
                    raise InvalidStateError(f"Part-payment event {event.id} precedes any schedule")
                entries = build_schedule(
                    event.new_principal, annual_rate, event.new_tenure_months,
                    event.first_due_date,
                    installment_override=event.new_installment_amount if event.new_tenure_months else None,
                    first_sequence=event.first_sequence
                )
                # Settled rows are kept even if the rebuild reuses their sequence
                rows = [row for row in rows if row.status != InstallmentStatus.PENDING]
                rows.extend(ReplayedInstallment(entry) for entry in entries)

            elif isinstance(event, ForeclosureEvent):
                rows = [
                    replace(row, status=InstallmentStatus.CANCELLED)
                    if row.status == InstallmentStatus.PENDING else row
                    for row in rows
                ]

            else:
                raise InvalidStateError(f"Unknown event kind for event {event.id}")

        return sorted(rows, key=lambda row: row.sequence)


def _compare(replayed: List[ReplayedInstallment], stored: List[Installment]) -> List[Dict[str, Any]]:
    mismatches: List[Dict[str, Any]] = []
    replayed_by_seq = _by_sequence(replayed)
    stored_by_seq = _by_sequence(stored)

    for sequence in sorted(set(replayed_by_seq) | set(stored_by_seq)):
        expected_rows = replayed_by_seq.get(sequence, [])
        actual_rows = stored_by_seq.get(sequence, [])

        if len(expected_rows) > 1:
            mismatches.append({"sequence": sequence, "field": "replayed_row_count",
                               "expected": 1, "actual": len(expected_rows)})
        if len(actual_rows) > 1:
            mismatches.append({"sequence": sequence, "field": "row_count",
                               "expected": 1, "actual": len(actual_rows)})
        if not actual_rows:
            mismatches.append({"sequence": sequence, "field": "row", "expected": "present", "actual": None})
            continue
        if not expected_rows:
            mismatches.append({"sequence": sequence, "field": "row", "expected": None, "actual": "present"})
            continue

        for row, actual in zip(expected_rows, actual_rows):
            for name in _COMPARED_FIELDS:
                expected_value = getattr(row.entry, name)
                actual_value = getattr(actual, name)
                if expected_value != actual_value:
                    mismatches.append({
                        "sequence": sequence,
                        "field": name,
                        "expected": _render(expected_value),
                        "actual": _render(actual_value),
                    })
            if row.status != actual.status:
                mismatches.append({
                    "sequence": sequence,
                    "field": "status",
                    "expected": row.status.value,
                    "actual": actual.status.value,
                })

    return mismatches


def _by_sequence(rows) -> Dict[int, List[Any]]:
    grouped: Dict[int, List[Any]] = {}
    for row in rows:
        grouped.setdefault(row.sequence, []).append(row)
    return grouped


def _render(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format_amount(value)
    if isinstance(value, date):
        return value.isoformat()
    return value
