"""
Test suite for the hash-chained event ledger

Tests append-only semantics, per-loan sequencing, tagged event decoding
and tamper detection.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.ledger import (
    EventKind, EventLedger, ForeclosureEvent, LoanEvent, PartPaymentEvent,
    PaymentEvent, ReductionMode, ScheduleGeneratedEvent, interest_saved_of
)
from loan_engine.storage import InMemoryStorage, SQLiteStorage


def _schedule_event(loan_id="loan-1"):
    return ScheduleGeneratedEvent.create(
        loan_id=loan_id,
        effective_date=date(2025, 1, 1),
        amount=Decimal('100000.00'),
        annual_rate=Decimal('12'),
        tenure_months=12,
        start_date=date(2025, 1, 1),
        installment_amount=Decimal('8884.88'),
        total_interest=Decimal('6618.55'),
        row_count=12
    )


def _part_payment_event(loan_id="loan-1"):
    return PartPaymentEvent.create(
        loan_id=loan_id,
        effective_date=date(2025, 3, 15),
        amount=Decimal('20000.00'),
        reduction_mode=ReductionMode.TENURE,
        previous_outstanding=Decimal('76108.02'),
        new_principal=Decimal('56108.02'),
        new_tenure_months=7,
        new_installment_amount=Decimal('8884.88'),
        interest_saved=Decimal('1234.56'),
        first_sequence=4,
        first_due_date=date(2025, 4, 1),
        superseded_installment_ids=["a", "b"]
    )


class TestLoanEvents:
    """Test event variants"""

    def test_kind_is_fixed_per_variant(self):
        assert _schedule_event().kind == EventKind.SCHEDULE_GENERATED
        assert _part_payment_event().kind == EventKind.PART_PAYMENT

    def test_to_dict_encodes_enums_and_kind(self):
        data = _part_payment_event().to_dict()
        assert data["kind"] == "part_payment"
        assert data["reduction_mode"] == "tenure"
        assert data["amount"] == "20000.00"
        assert data["first_due_date"] == "2025-04-01"

    def test_from_dict_restores_variant(self):
        event = _part_payment_event()
        restored = LoanEvent.from_dict(event.to_dict())

        assert isinstance(restored, PartPaymentEvent)
        assert restored == event
        assert restored.reduction_mode == ReductionMode.TENURE
        assert restored.superseded_installment_ids == ["a", "b"]

    def test_interest_saved_only_where_applicable(self):
        assert interest_saved_of(_schedule_event()) is None
        assert interest_saved_of(_part_payment_event()) == Decimal('1234.56')

    def test_hash_changes_with_content(self):
        event = _schedule_event()
        original = event.calculate_hash()
        event.amount = Decimal('100000.01')
        assert event.calculate_hash() != original


class TestEventLedger:
    """Test ledger append and integrity"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = EventLedger(self.storage)

    def test_append_assigns_sequence_and_chain(self):
        first_id = self.ledger.append(_schedule_event())
        second_id = self.ledger.append(_part_payment_event())

        first = self.ledger.get(first_id)
        second = self.ledger.get(second_id)
        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert first.verify_hash() and second.verify_hash()

    def test_sequences_are_per_loan(self):
        self.ledger.append(_schedule_event("loan-1"))
        other_id = self.ledger.append(_schedule_event("loan-2"))
        assert self.ledger.get(other_id).sequence == 1

    def test_list_by_loan_in_append_order(self):
        self.ledger.append(_schedule_event())
        self.ledger.append(_part_payment_event())
        self.ledger.append(PaymentEvent.create(
            loan_id="loan-1",
            effective_date=date(2025, 4, 1),
            amount=Decimal('8884.88'),
            installment_id="inst-4",
            installment_sequence=4,
            payment_method="upi"
        ))

        events = self.ledger.list_by_loan("loan-1")
        assert [type(e) for e in events] == [ScheduleGeneratedEvent, PartPaymentEvent, PaymentEvent]
        assert [e.sequence for e in events] == [1, 2, 3]

    def test_total_interest_saved(self):
        self.ledger.append(_schedule_event())
        self.ledger.append(_part_payment_event())
        self.ledger.append(ForeclosureEvent.create(
            loan_id="loan-1",
            effective_date=date(2025, 5, 1),
            amount=Decimal('48000.00'),
            principal_component=Decimal('48000.00'),
            interest_component=Decimal('0.00'),
            interest_saved=Decimal('100.44'),
            days_accrued=0
        ))
        assert self.ledger.total_interest_saved("loan-1") == Decimal('1335.00')

    def test_verify_integrity_clean(self):
        self.ledger.append(_schedule_event())
        self.ledger.append(_part_payment_event())

        result = self.ledger.verify_integrity("loan-1")
        assert result["valid"]
        assert result["total_events"] == 2
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_verify_integrity_detects_tampering(self):
        """Editing a stored event breaks its hash"""
        self.ledger.append(_schedule_event())
        event_id = self.ledger.append(_part_payment_event())

        data = self.storage.load("loan_events", event_id)
        data["amount"] = "1.00"
        self.storage.save("loan_events", event_id, data)

        result = self.ledger.verify_integrity("loan-1")
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event_id

    def test_verify_integrity_detects_removal(self):
        """Deleting an event breaks the chain"""
        first_id = self.ledger.append(_schedule_event())
        self.ledger.append(_part_payment_event())
        self.storage.delete("loan_events", first_id)

        result = self.ledger.verify_integrity("loan-1")
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_hash_survives_sqlite_round_trip(self):
        storage = SQLiteStorage(":memory:")
        ledger = EventLedger(storage)
        ledger.append(_schedule_event())
        ledger.append(_part_payment_event())

        assert ledger.verify_integrity("loan-1")["valid"]
        storage.close()
