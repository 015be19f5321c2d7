"""
Event System Module

Publish/subscribe dispatcher for domain notifications. The engine
publishes after a mutation commits; collaborators outside the core (the
expense ledger in particular) subscribe here instead of being called
from inside the transaction.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from threading import RLock

from .currency import format_amount


EXPENSE_CATEGORY = "Loan EMI"


class DomainEvent(Enum):
    """Domain events that can occur in the loan engine"""
    SCHEDULE_GENERATED = "loan.schedule_generated"
    INSTALLMENT_PAID = "installment.paid"
    PART_PAYMENT_APPLIED = "loan.part_payment_applied"
    LOAN_FORECLOSED = "loan.foreclosed"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        timestamp = data['timestamp']
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=timestamp,
            event_id=data['event_id']
        )


class EventDispatcher:
    """Central event dispatcher - publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self.logger = logging.getLogger("loan_engine.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_name(handler)} was not subscribed to {event_type.value}")

    def publish(self, event: EventPayload) -> None:
        """
        Publish event to all subscribers

        The mutation that produced the event has already committed, so a
        failing handler is logged and the remaining handlers still run.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing {event.event_type.value} for {event.entity_type}:{event.entity_id}")
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    f"Error in event handler {_name(handler)} for {event.event_type.value}"
                )

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


def _name(handler: Callable) -> str:
    return getattr(handler, '__name__', repr(handler))


# Global event dispatcher instance
_global_dispatcher: Optional[EventDispatcher] = None


def get_global_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher instance"""
    global _global_dispatcher
    if _global_dispatcher is None:
        _global_dispatcher = EventDispatcher()
    return _global_dispatcher


def set_global_dispatcher(dispatcher: EventDispatcher) -> None:
    """Set a custom global event dispatcher"""
    global _global_dispatcher
    _global_dispatcher = dispatcher


def create_installment_paid_event(loan, installment) -> EventPayload:
    """
    Build the notification consumed by the expense-ledger collaborator

    Carries everything needed to record the EMI as an expense; the core
    never writes that ledger itself.
    """
    note = f"EMI #{installment.sequence} - {loan.lender or 'Loan'} ({loan.loan_type or 'EMI'})"
    return EventPayload(
        event_type=DomainEvent.INSTALLMENT_PAID,
        entity_type="installment",
        entity_id=installment.id,
        data={
            "loan_id": loan.id,
            "installment_id": installment.id,
            "sequence": installment.sequence,
            "amount": format_amount(installment.installment_amount),
            "currency": loan.currency,
            "paid_date": installment.paid_date.isoformat(),
            "payment_method": installment.payment_method,
            "category": EXPENSE_CATEGORY,
            "sub_category": loan.loan_type or "EMI",
            "note": note
        }
    )


def create_loan_event(event_type: DomainEvent, loan, data: Dict[str, Any]) -> EventPayload:
    """Create a loan-level notification"""
    payload = {
        "loan_id": loan.id,
        "status": loan.status.value,
        "currency": loan.currency,
    }
    payload.update(data)
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        data=payload
    )
