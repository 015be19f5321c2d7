"""
Schedule Store Module

Owns the per-loan installment rows. The schedule is a cached projection
of the loan's event history: it is regenerated wholesale or has its
pending tail replaced, never edited row by row except to record a
payment.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .amortization import ScheduleEntry
from .exceptions import (
    AlreadyPaidError, InstallmentNotFoundError, InstallmentNotPendingError,
    LoanNotFoundError
)
from .storage import StorageInterface, StorageRecord


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


@dataclass
class Installment(StorageRecord):
    """One scheduled installment (EMI) of a loan"""
    loan_id: str
    sequence: int
    due_date: date
    installment_amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    remaining_principal: Decimal
    status: InstallmentStatus = InstallmentStatus.PENDING
    adjusted: bool = False
    adjustment_event_id: Optional[str] = None
    paid_date: Optional[date] = None
    payment_method: Optional[str] = None

    @property
    def opening_principal(self) -> Decimal:
        """Outstanding principal before this installment's principal is applied"""
        return self.remaining_principal + self.principal_component

    @property
    def is_pending(self) -> bool:
        return self.status == InstallmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            installment_amount=Decimal(data['installment_amount']),
            principal_component=Decimal(data['principal_component']),
            interest_component=Decimal(data['interest_component']),
            remaining_principal=Decimal(data['remaining_principal']),
            status=InstallmentStatus(data['status']),
            adjusted=data.get('adjusted', False),
            adjustment_event_id=data.get('adjustment_event_id'),
            paid_date=date.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
            payment_method=data.get('payment_method')
        )

    @classmethod
    def from_entry(
        cls,
        loan_id: str,
        entry: ScheduleEntry,
        adjustment_event_id: Optional[str] = None
    ) -> 'Installment':
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            sequence=entry.sequence,
            due_date=entry.due_date,
            installment_amount=entry.installment_amount,
            principal_component=entry.principal_component,
            interest_component=entry.interest_component,
            remaining_principal=entry.remaining_principal,
            adjusted=adjustment_event_id is not None,
            adjustment_event_id=adjustment_event_id
        )


class ScheduleStore:
    """
    Persists installment rows for loans

    Multi-row writes run inside ``storage.atomic()``; when called from an
    engine mutation they join the engine's transaction.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table = "installments"
        self.loans_table = "loans"

    def generate(self, loan_id: str, entries: List[ScheduleEntry]) -> List[Installment]:
        """
        Replace the entire installment set for a loan

        Args:
            loan_id: Loan ID
            entries: Computed schedule

        Returns:
            The persisted installments in sequence order
        """
        if not self.storage.exists(self.loans_table, loan_id):
            raise LoanNotFoundError(loan_id)

        installments = [Installment.from_entry(loan_id, entry) for entry in entries]
        with self.storage.atomic():
            for existing in self.storage.find(self.table, {"loan_id": loan_id}):
                self.storage.delete(self.table, existing['id'])
            for installment in installments:
                self._save(installment)
        return installments

    def replace_pending(
        self,
        loan_id: str,
        entries: List[ScheduleEntry],
        adjustment_event_id: Optional[str] = None
    ) -> List[Installment]:
        """
        Swap the pending tail of a schedule for a rebuilt one

        Paid and cancelled rows are untouched.
        """
        installments = [
            Installment.from_entry(loan_id, entry, adjustment_event_id) for entry in entries
        ]
        with self.storage.atomic():
            for pending in self._find(loan_id, InstallmentStatus.PENDING):
                self.storage.delete(self.table, pending['id'])
            for installment in installments:
                self._save(installment)
        return installments

    def mark_adjusted(self, loan_id: str, event_id: str) -> List[Installment]:
        """Flag every pending row as superseded by the given event"""
        marked = []
        with self.storage.atomic():
            for installment in self.pending(loan_id):
                installment.adjusted = True
                installment.adjustment_event_id = event_id
                installment.updated_at = datetime.now(timezone.utc)
                self._save(installment)
                marked.append(installment)
        return marked

    def cancel_pending(self, loan_id: str) -> List[Installment]:
        """Cancel every pending row of a loan"""
        cancelled = []
        with self.storage.atomic():
            for installment in self.pending(loan_id):
                installment.status = InstallmentStatus.CANCELLED
                installment.updated_at = datetime.now(timezone.utc)
                self._save(installment)
                cancelled.append(installment)
        return cancelled

    def mark_paid(self, installment_id: str, paid_date: date, method: Optional[str]) -> Installment:
        """
        Transition one installment from pending to paid

        Raises:
            InstallmentNotFoundError: Unknown installment
            AlreadyPaidError: Installment already paid
            InstallmentNotPendingError: Installment cancelled
        """
        installment = self.get(installment_id)
        if installment is None:
            raise InstallmentNotFoundError(installment_id)
        if installment.status == InstallmentStatus.PAID:
            raise AlreadyPaidError(installment_id)
        if installment.status != InstallmentStatus.PENDING:
            raise InstallmentNotPendingError(installment_id, installment.status.value)

        installment.status = InstallmentStatus.PAID
        installment.paid_date = paid_date
        installment.payment_method = method
        installment.updated_at = datetime.now(timezone.utc)
        self._save(installment)
        return installment

    def get(self, installment_id: str) -> Optional[Installment]:
        """Get installment by ID"""
        data = self.storage.load(self.table, installment_id)
        if data:
            return Installment.from_dict(data)
        return None

    def list_by_loan(
        self,
        loan_id: str,
        status: Optional[InstallmentStatus] = None
    ) -> List[Installment]:
        """List a loan's installments ordered by sequence"""
        installments = [Installment.from_dict(data) for data in self._find(loan_id, status)]
        installments.sort(key=lambda x: x.sequence)
        return installments

    def pending(self, loan_id: str) -> List[Installment]:
        """Pending installments ordered by sequence"""
        return self.list_by_loan(loan_id, InstallmentStatus.PENDING)

    def due_on(self, due_date: date) -> List[Installment]:
        """Pending installments across all loans due on a date"""
        rows = self.storage.find(self.table, {
            "status": InstallmentStatus.PENDING.value,
            "due_date": due_date.isoformat()
        })
        installments = [Installment.from_dict(data) for data in rows]
        installments.sort(key=lambda x: (x.loan_id, x.sequence))
        return installments

    def _find(self, loan_id: str, status: Optional[InstallmentStatus]) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {"loan_id": loan_id}
        if status is not None:
            filters["status"] = status.value
        return self.storage.find(self.table, filters)

    def _save(self, installment: Installment) -> None:
        self.storage.save(self.table, installment.id, installment.to_dict())
