"""
Event Ledger Module

Append-only, per-loan log of loan-affecting events. Each loan's events
form a SHA-256 hash chain so that any edit or removal after the fact is
detectable. The ledger is the authoritative history; the installment
schedule is a projection of it.
"""

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union, get_args, get_origin, get_type_hints

from .currency import ZERO, round2
from .storage import StorageInterface, StorageRecord


class EventKind(Enum):
    """Kinds of ledger events"""
    SCHEDULE_GENERATED = "schedule_generated"
    PAYMENT = "payment"
    PART_PAYMENT = "part_payment"
    FORECLOSURE = "foreclosure"


class ReductionMode(Enum):
    """What a part-payment shortens"""
    TENURE = "tenure"  # Keep the installment, finish sooner
    EMI = "emi"        # Keep the tenure, pay less each period


@dataclass
class LoanEvent(StorageRecord):
    """
    Immutable ledger entry

    ``sequence``, ``previous_hash`` and ``current_hash`` are assigned by
    EventLedger.append; construct events through the subclasses'
    ``create`` classmethods.
    """
    loan_id: str
    effective_date: date
    amount: Decimal
    sequence: int
    previous_hash: str
    current_hash: str

    kind: ClassVar[EventKind]

    @classmethod
    def create(cls, loan_id: str, effective_date: date, amount: Decimal,
               event_id: Optional[str] = None, **kwargs) -> 'LoanEvent':
        now = datetime.now(timezone.utc)
        return cls(
            id=event_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            effective_date=effective_date,
            amount=amount,
            sequence=0,
            previous_hash="",
            current_hash="",
            **kwargs
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        for key, value in result.items():
            if isinstance(value, Enum):
                result[key] = value.value
        result['kind'] = self.kind.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanEvent':
        """Decode a stored event into its concrete variant"""
        event_cls = EVENT_TYPES[EventKind(data['kind'])]
        hints = get_type_hints(event_cls)
        values = {
            f.name: _decode(hints[f.name], data.get(f.name))
            for f in fields(event_cls)
        }
        return event_cls(**values)

    def calculate_hash(self) -> str:
        """SHA-256 over the canonical JSON form, excluding the hash itself"""
        hash_data = self.to_dict()
        hash_data.pop('current_hash', None)
        hash_data.pop('updated_at', None)
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()


@dataclass
class ScheduleGeneratedEvent(LoanEvent):
    """A full schedule was (re)generated; ``amount`` is the principal"""
    annual_rate: Decimal
    tenure_months: int
    start_date: date
    installment_amount: Decimal
    total_interest: Decimal
    row_count: int
    installment_override: Optional[Decimal] = None

    kind: ClassVar[EventKind] = EventKind.SCHEDULE_GENERATED


@dataclass
class PaymentEvent(LoanEvent):
    """A scheduled installment was paid; ``amount`` is the installment amount"""
    installment_id: str
    installment_sequence: int
    payment_method: Optional[str] = None

    kind: ClassVar[EventKind] = EventKind.PAYMENT


@dataclass
class PartPaymentEvent(LoanEvent):
    """A lump sum reduced principal; ``amount`` is the lump sum"""
    reduction_mode: ReductionMode
    previous_outstanding: Decimal
    new_principal: Decimal
    new_tenure_months: int
    new_installment_amount: Decimal
    interest_saved: Decimal
    first_sequence: int
    first_due_date: date
    superseded_installment_ids: List[str] = field(default_factory=list)
    payment_method: Optional[str] = None

    kind: ClassVar[EventKind] = EventKind.PART_PAYMENT


@dataclass
class ForeclosureEvent(LoanEvent):
    """The loan was settled early; ``amount`` is the foreclosure amount"""
    principal_component: Decimal
    interest_component: Decimal
    interest_saved: Decimal
    days_accrued: int
    cancelled_installment_ids: List[str] = field(default_factory=list)
    payment_method: Optional[str] = None

    kind: ClassVar[EventKind] = EventKind.FORECLOSURE


EVENT_TYPES = {
    EventKind.SCHEDULE_GENERATED: ScheduleGeneratedEvent,
    EventKind.PAYMENT: PaymentEvent,
    EventKind.PART_PAYMENT: PartPaymentEvent,
    EventKind.FORECLOSURE: ForeclosureEvent,
}


def interest_saved_of(event: LoanEvent) -> Optional[Decimal]:
    """Interest saved by an event, or None for kinds that save none"""
    return getattr(event, 'interest_saved', None)


def _decode(hint: Any, value: Any) -> Any:
    if value is None:
        return None
    if get_origin(hint) is Union:
        hint = next(arg for arg in get_args(hint) if arg is not type(None))
    if hint is Decimal:
        return Decimal(value)
    if hint is datetime:
        return datetime.fromisoformat(value)
    if hint is date:
        return date.fromisoformat(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


class EventLedger:
    """
    Hash-chained, append-only event log keyed by loan
    """

    def __init__(self, storage: StorageInterface, table_name: str = "loan_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def append(self, event: LoanEvent) -> str:
        """
        Append an event to its loan's chain

        Args:
            event: New event (sequence and hashes are assigned here)

        Returns:
            The event ID
        """
        with self._lock:
            previous = self._last_event(event.loan_id)
            event.sequence = previous.sequence + 1 if previous else 1
            event.previous_hash = previous.current_hash if previous else ""
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
        return event.id

    def list_by_loan(self, loan_id: str) -> List[LoanEvent]:
        """All events for a loan in the order they were appended"""
        events = [
            LoanEvent.from_dict(data)
            for data in self.storage.find(self.table_name, {"loan_id": loan_id})
        ]
        events.sort(key=lambda x: x.sequence)
        return events

    def get(self, event_id: str) -> Optional[LoanEvent]:
        """Get a specific event by ID"""
        data = self.storage.load(self.table_name, event_id)
        if data:
            return LoanEvent.from_dict(data)
        return None

    def total_interest_saved(self, loan_id: str) -> Decimal:
        """Sum of interest saved across a loan's events"""
        total = ZERO
        for event in self.list_by_loan(loan_id):
            saved = interest_saved_of(event)
            if saved is not None:
                total += saved
        return round2(total)

    def verify_integrity(self, loan_id: str) -> Dict[str, Any]:
        """
        Verify a loan's hash chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = self.list_by_loan(loan_id)
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash or event.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def _last_event(self, loan_id: str) -> Optional[LoanEvent]:
        events = self.list_by_loan(loan_id)
        return events[-1] if events else None
