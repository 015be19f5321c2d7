"""
Loan Module

Loan records and the mutation engine: schedule generation, part-payment
recompute, foreclosure settlement and installment payment. Each mutation
runs under the loan's lock inside a single storage transaction, so the
schedule, the ledger and the loan record change together or not at all.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import threading
import uuid

from .amortization import (
    build_schedule, compute_installment, monthly_rate,
    solve_tenure_for_installment, total_interest
)
from .currency import Currency, Numeric, ZERO, format_amount, format_money, round2, to_decimal
from .events import (
    DomainEvent, EventDispatcher, create_installment_paid_event,
    create_loan_event, get_global_dispatcher
)
from .exceptions import (
    AlreadyPaidError, ExceedsOutstandingError,
    InstallmentNotFoundError, InvalidInputError, LoanClosedError,
    LoanEngineError, LoanNotFoundError, NoPendingInstallmentsError,
    OutOfOrderPaymentError
)
from .ledger import (
    EventLedger, ForeclosureEvent, PartPaymentEvent, PaymentEvent,
    ReductionMode, ScheduleGeneratedEvent
)
from .logging_config import get_logger, log_action
from .schedule import InstallmentStatus, ScheduleStore
from .storage import StorageInterface, StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class Loan(StorageRecord):
    """Loan terms and current status"""
    principal_amount: Decimal
    annual_interest_rate: Decimal       # Percent, e.g. 12 for 12% p.a.
    tenure_months: int
    start_date: date
    installment_amount: Optional[Decimal] = None
    status: LoanStatus = LoanStatus.ACTIVE
    currency: str = Currency.INR.code
    lender: Optional[str] = None
    loan_type: Optional[str] = None
    closed_date: Optional[date] = None
    version: int = 0                    # Bumped by every committed mutation

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def monthly_rate(self) -> Decimal:
        return monthly_rate(self.annual_interest_rate)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        def get_date(field_name: str) -> Optional[date]:
            if data.get(field_name):
                return date.fromisoformat(data[field_name])
            return None

        installment = data.get('installment_amount')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            principal_amount=Decimal(data['principal_amount']),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            tenure_months=data['tenure_months'],
            start_date=date.fromisoformat(data['start_date']),
            installment_amount=Decimal(installment) if installment is not None else None,
            status=LoanStatus(data['status']),
            currency=data.get('currency', Currency.INR.code),
            lender=data.get('lender'),
            loan_type=data.get('loan_type'),
            closed_date=get_date('closed_date'),
            version=data.get('version', 0)
        )


@dataclass(frozen=True)
class ScheduleResult:
    installment_amount: Decimal
    row_count: int
    total_interest: Decimal
    event_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "installment_amount": format_amount(self.installment_amount),
            "row_count": self.row_count,
            "total_interest": format_amount(self.total_interest),
            "event_id": self.event_id,
        }


@dataclass(frozen=True)
class PartPaymentResult:
    new_remaining_principal: Decimal
    new_tenure_months: int
    new_installment_amount: Decimal
    interest_saved: Decimal
    event_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new_remaining_principal": format_amount(self.new_remaining_principal),
            "new_tenure_months": self.new_tenure_months,
            "new_installment_amount": format_amount(self.new_installment_amount),
            "interest_saved": format_amount(self.interest_saved),
            "event_id": self.event_id,
        }


@dataclass(frozen=True)
class ForeclosureResult:
    amount_paid: Decimal
    principal_component: Decimal
    interest_component: Decimal
    interest_saved: Decimal
    event_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_paid": format_amount(self.amount_paid),
            "principal_component": format_amount(self.principal_component),
            "interest_component": format_amount(self.interest_component),
            "interest_saved": format_amount(self.interest_saved),
            "event_id": self.event_id,
        }


@dataclass(frozen=True)
class InstallmentPaymentResult:
    status: str
    installment_seq: int
    amount: Decimal
    loan_id: str
    installment_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "installment_seq": self.installment_seq,
            "amount": format_amount(self.amount),
            "loan_id": self.loan_id,
            "installment_id": self.installment_id,
        }


class LoanLockManager:
    """
    One re-entrant lock per loan; different loans never contend

    A loan's lock lives only while some thread holds or waits on it.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._holders: Dict[str, int] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _acquire_entry(self, loan_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            self._holders[loan_id] = self._holders.get(loan_id, 0) + 1
            return lock

    def _release_entry(self, loan_id: str) -> None:
        with self._guard:
            self._holders[loan_id] -= 1
            if self._holders[loan_id] == 0:
                del self._holders[loan_id]
                del self._locks[loan_id]

    @contextmanager
    def hold(self, loan_id: str):
        lock = self._acquire_entry(loan_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(loan_id)


class LoanMutationEngine:
    """
    Orchestrates every state-changing loan operation

    States per loan: no-schedule (active, no installments), active, closed.
    """

    def __init__(
        self,
        storage: StorageInterface,
        schedule_store: Optional[ScheduleStore] = None,
        ledger: Optional[EventLedger] = None,
        dispatcher: Optional[EventDispatcher] = None,
        lock_manager: Optional[LoanLockManager] = None,
        foreclosure_day_count: int = 30,
        notifications_enabled: bool = True,
        default_currency: str = Currency.INR.code
    ):
        self.storage = storage
        self.schedule = schedule_store or ScheduleStore(storage)
        self.ledger = ledger or EventLedger(storage)
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.locks = lock_manager or LoanLockManager()
        self.foreclosure_day_count = foreclosure_day_count
        self.notifications_enabled = notifications_enabled
        self.default_currency = default_currency
        self.logger = get_logger("loans")

        self.loans_table = "loans"

    def create_loan(
        self,
        principal: Numeric,
        annual_rate: Numeric,
        tenure_months: int,
        start_date: date,
        loan_id: Optional[str] = None,
        currency: Optional[str] = None,
        lender: Optional[str] = None,
        loan_type: Optional[str] = None
    ) -> Loan:
        """
        Register a loan with no schedule yet

        Args:
            principal: Sanctioned principal
            annual_rate: Annual interest rate in percent
            tenure_months: Tenure in months
            start_date: Due date of the first installment
            loan_id: Optional caller-chosen ID
            currency: ISO currency code, defaults to the engine default currency
            lender: Lender name, used in payment notifications
            loan_type: Loan type label, used in payment notifications

        Returns:
            Created Loan object
        """
        principal = round2(principal)
        annual_rate = to_decimal(annual_rate)
        _validate_terms(principal, annual_rate, tenure_months)
        currency = currency or self.default_currency
        if currency not in Currency.__members__:
            raise InvalidInputError(f"Unsupported currency: {currency}")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=loan_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            principal_amount=principal,
            annual_interest_rate=annual_rate,
            tenure_months=tenure_months,
            start_date=start_date,
            currency=currency,
            lender=lender,
            loan_type=loan_type
        )

        with self.locks.hold(loan.id):
            if self.storage.exists(self.loans_table, loan.id):
                raise InvalidInputError(f"Loan {loan.id} already exists")
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

        log_action(
            self.logger, "info",
            f"Loan created. Principal: {format_money(principal, Currency[currency])}, "
            f"Rate: {annual_rate}%, Tenure: {tenure_months} months",
            loan_id=loan.id, action="create_loan"
        )
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        """All loans, optionally filtered by status"""
        filters = {"status": status.value} if status else {}
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda x: x.created_at)
        return loans

    def generate_schedule(
        self,
        loan_id: str,
        principal: Numeric,
        annual_rate: Numeric,
        tenure_months: int,
        start_date: date,
        installment_override: Optional[Numeric] = None
    ) -> ScheduleResult:
        """
        Build and store a full schedule, replacing any existing one

        Regenerating with identical inputs yields an identical schedule.

        Returns:
            ScheduleResult with installment amount, row count and total interest
        """
        principal = round2(principal)
        annual_rate = to_decimal(annual_rate)
        override = round2(installment_override) if installment_override is not None else None

        with self._mutation(loan_id, "generate_schedule"):
            loan = self._require_loan(loan_id)
            if loan.status == LoanStatus.CLOSED:
                raise LoanClosedError(loan_id)
            expected_version = loan.version

            installment = compute_installment(principal, annual_rate, tenure_months)
            if override is not None:
                installment = override
            entries = build_schedule(
                principal, annual_rate, tenure_months, start_date,
                installment_override=installment
            )
            self.schedule.generate(loan_id, entries)
            interest = total_interest(entries)

            event = ScheduleGeneratedEvent.create(
                loan_id=loan_id,
                effective_date=start_date,
                amount=principal,
                annual_rate=annual_rate,
                tenure_months=tenure_months,
                start_date=start_date,
                installment_amount=installment,
                total_interest=interest,
                row_count=len(entries),
                installment_override=override
            )
            self.ledger.append(event)

            loan.principal_amount = principal
            loan.annual_interest_rate = annual_rate
            loan.tenure_months = len(entries)
            loan.start_date = start_date
            loan.installment_amount = installment
            self._save_loan(loan, expected_version)

        log_action(
            self.logger, "info",
            f"EMI schedule generated for loan. EMI: {format_money(installment, _currency(loan))}, "
            f"Tenure: {len(entries)} months",
            loan_id=loan_id, action="generate_schedule",
            extra={"row_count": len(entries), "total_interest": format_amount(interest)}
        )
        self._notify(create_loan_event(DomainEvent.SCHEDULE_GENERATED, loan, {
            "installment_amount": format_amount(installment),
            "row_count": len(entries),
            "total_interest": format_amount(interest),
        }))
        return ScheduleResult(
            installment_amount=installment,
            row_count=len(entries),
            total_interest=interest,
            event_id=event.id
        )

    def apply_part_payment(
        self,
        loan_id: str,
        amount: Numeric,
        payment_date: date,
        reduction_mode: Union[ReductionMode, str],
        payment_method: Optional[str] = None
    ) -> PartPaymentResult:
        """
        Apply a lump-sum prepayment and rebuild the pending schedule

        Args:
            loan_id: Loan ID
            amount: Prepaid principal
            payment_date: Date of the part-payment
            reduction_mode: "tenure" keeps the installment, "emi" keeps the tenure
            payment_method: Optional payment method label

        Returns:
            PartPaymentResult
        """
        amount = round2(amount)
        mode = _reduction_mode(reduction_mode)
        if amount <= 0:
            raise InvalidInputError(f"Part-payment amount must be positive, got {amount}")

        with self._mutation(loan_id, "apply_part_payment"):
            loan = self._require_loan(loan_id)
            pending = self.schedule.pending(loan_id)
            if not pending:
                raise NoPendingInstallmentsError(loan_id)
            if loan.status == LoanStatus.CLOSED:
                raise LoanClosedError(loan_id)
            expected_version = loan.version

            first = pending[0]
            current_outstanding = round2(first.opening_principal)
            if amount > current_outstanding:
                raise ExceedsOutstandingError(amount, current_outstanding)

            new_principal = round2(current_outstanding - amount)
            current_installment = loan.installment_amount or first.installment_amount

            if new_principal == 0:
                new_tenure = 0
                new_installment = current_installment
            elif mode == ReductionMode.TENURE:
                new_installment = current_installment
                new_tenure = solve_tenure_for_installment(
                    new_principal, loan.monthly_rate, new_installment
                )
            else:
                new_tenure = len(pending)
                new_installment = compute_installment(
                    new_principal, loan.annual_interest_rate, new_tenure
                )

            entries = build_schedule(
                new_principal, loan.annual_interest_rate, new_tenure, first.due_date,
                installment_override=new_installment if new_tenure else None,
                first_sequence=first.sequence
            )
            original_interest = sum((row.interest_component for row in pending), ZERO)
            interest_saved = round2(original_interest - total_interest(entries))

            event_id = str(uuid.uuid4())
            superseded = self.schedule.mark_adjusted(loan_id, event_id)
            self.schedule.replace_pending(loan_id, entries, adjustment_event_id=event_id)

            self.ledger.append(PartPaymentEvent.create(
                loan_id=loan_id,
                effective_date=payment_date,
                amount=amount,
                event_id=event_id,
                reduction_mode=mode,
                previous_outstanding=current_outstanding,
                new_principal=new_principal,
                new_tenure_months=new_tenure,
                new_installment_amount=new_installment,
                interest_saved=interest_saved,
                first_sequence=first.sequence,
                first_due_date=first.due_date,
                superseded_installment_ids=[row.id for row in superseded],
                payment_method=payment_method
            ))

            if mode == ReductionMode.EMI:
                loan.installment_amount = new_installment
            self._save_loan(loan, expected_version)

        currency = _currency(loan)
        if mode == ReductionMode.TENURE:
            effect = f"Tenure reduced by {len(pending) - new_tenure} months"
        else:
            effect = f"EMI reduced to {format_money(new_installment, currency)}"
        log_action(
            self.logger, "info",
            f"Part-payment of {format_money(amount, currency)} applied. {effect}. "
            f"Interest saved: {format_money(interest_saved, currency)}",
            loan_id=loan_id, action="apply_part_payment",
            extra={"event_id": event_id, "reduction_mode": mode.value}
        )
        self._notify(create_loan_event(DomainEvent.PART_PAYMENT_APPLIED, loan, {
            "event_id": event_id,
            "amount": format_amount(amount),
            "reduction_mode": mode.value,
            "new_remaining_principal": format_amount(new_principal),
            "new_tenure_months": new_tenure,
            "new_installment_amount": format_amount(new_installment),
            "interest_saved": format_amount(interest_saved),
        }))
        return PartPaymentResult(
            new_remaining_principal=new_principal,
            new_tenure_months=new_tenure,
            new_installment_amount=new_installment,
            interest_saved=interest_saved,
            event_id=event_id
        )

    def foreclose(
        self,
        loan_id: str,
        foreclosure_date: date,
        payment_method: Optional[str] = None
    ) -> ForeclosureResult:
        """
        Settle the loan early and close it

        Accrued interest runs from the first pending due date on a 30-day
        month convention.

        Returns:
            ForeclosureResult
        """
        with self._mutation(loan_id, "foreclose"):
            loan = self._require_loan(loan_id)
            pending = self.schedule.pending(loan_id)
            if not pending:
                raise NoPendingInstallmentsError(loan_id)
            if loan.status == LoanStatus.CLOSED:
                raise LoanClosedError(loan_id)
            expected_version = loan.version

            first = pending[0]
            outstanding = round2(first.opening_principal)
            days = max(0, (foreclosure_date - first.due_date).days)
            daily_rate = loan.monthly_rate / Decimal(self.foreclosure_day_count)
            accrued_interest = round2(outstanding * daily_rate * days)
            foreclosure_amount = round2(outstanding + accrued_interest)

            future_interest = sum((row.interest_component for row in pending), ZERO)
            interest_saved = round2(future_interest - accrued_interest)

            cancelled = self.schedule.cancel_pending(loan_id)
            event = ForeclosureEvent.create(
                loan_id=loan_id,
                effective_date=foreclosure_date,
                amount=foreclosure_amount,
                principal_component=outstanding,
                interest_component=accrued_interest,
                interest_saved=interest_saved,
                days_accrued=days,
                cancelled_installment_ids=[row.id for row in cancelled],
                payment_method=payment_method
            )
            self.ledger.append(event)

            loan.status = LoanStatus.CLOSED
            loan.closed_date = foreclosure_date
            self._save_loan(loan, expected_version)

        currency = _currency(loan)
        log_action(
            self.logger, "info",
            f"Loan foreclosed. Amount paid: {format_money(foreclosure_amount, currency)}. "
            f"Interest saved: {format_money(interest_saved, currency)}",
            loan_id=loan_id, action="foreclose",
            extra={
                "principal": format_amount(outstanding),
                "accrued_interest": format_amount(accrued_interest),
                "days_accrued": days,
            }
        )
        self._notify(create_loan_event(DomainEvent.LOAN_FORECLOSED, loan, {
            "event_id": event.id,
            "amount_paid": format_amount(foreclosure_amount),
            "principal_component": format_amount(outstanding),
            "interest_component": format_amount(accrued_interest),
            "interest_saved": format_amount(interest_saved),
        }))
        return ForeclosureResult(
            amount_paid=foreclosure_amount,
            principal_component=outstanding,
            interest_component=accrued_interest,
            interest_saved=interest_saved,
            event_id=event.id
        )

    def mark_installment_paid(
        self,
        installment_id: str,
        paid_date: date,
        payment_method: Optional[str]
    ) -> InstallmentPaymentResult:
        """
        Record payment of one scheduled installment

        After commit, publishes INSTALLMENT_PAID for the expense ledger.

        Returns:
            InstallmentPaymentResult
        """
        found = self.schedule.get(installment_id)
        if found is None:
            raise InstallmentNotFoundError(installment_id)
        loan_id = found.loan_id

        with self._mutation(loan_id, "mark_installment_paid"):
            loan = self._require_loan(loan_id)
            current = self.schedule.get(installment_id)
            if current is None:
                # Replaced by a part-payment between lookup and lock
                raise InstallmentNotFoundError(installment_id)
            if current.status == InstallmentStatus.PAID:
                raise AlreadyPaidError(installment_id)
            if loan.status == LoanStatus.CLOSED:
                raise LoanClosedError(loan_id)
            if current.is_pending:
                # Paid rows always form a prefix of the schedule
                earliest = self.schedule.pending(loan_id)[0]
                if earliest.id != current.id:
                    raise OutOfOrderPaymentError(installment_id, current.sequence, earliest.sequence)
            expected_version = loan.version

            installment = self.schedule.mark_paid(installment_id, paid_date, payment_method)
            self.ledger.append(PaymentEvent.create(
                loan_id=loan_id,
                effective_date=paid_date,
                amount=installment.installment_amount,
                installment_id=installment.id,
                installment_sequence=installment.sequence,
                payment_method=payment_method
            ))
            self._save_loan(loan, expected_version)

        log_action(
            self.logger, "info",
            f"EMI #{installment.sequence} marked as paid. "
            f"Amount: {format_money(installment.installment_amount, _currency(loan))}, "
            f"Method: {payment_method}",
            loan_id=loan_id, action="mark_installment_paid",
            resource=installment.id
        )
        self._notify(create_installment_paid_event(loan, installment))
        return InstallmentPaymentResult(
            status=installment.status.value,
            installment_seq=installment.sequence,
            amount=installment.installment_amount,
            loan_id=loan_id,
            installment_id=installment.id
        )

    @contextmanager
    def _mutation(self, loan_id: str, action: str):
        """Per-loan lock around one all-or-nothing storage transaction"""
        with self.locks.hold(loan_id):
            try:
                with self.storage.atomic():
                    yield
            except LoanEngineError as e:
                log_action(
                    self.logger, "warning", f"{action} rejected: {e.message}",
                    loan_id=loan_id, action=action, extra={"error": e.kind}
                )
                raise

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFoundError(loan_id)
        return loan

    def _save_loan(self, loan: Loan, expected_version: int) -> None:
        """Save loan if nobody else committed a mutation since it was read"""
        if not self.storage.exists(self.loans_table, loan.id):
            raise LoanNotFoundError(loan.id)
        # Re-checked at commit by backends that let other engines interleave
        self.storage.expect(self.loans_table, loan.id, 'version', expected_version)
        loan.version = expected_version + 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _notify(self, event) -> None:
        if self.notifications_enabled:
            self.dispatcher.publish(event)


def _currency(loan: Loan) -> Currency:
    return Currency[loan.currency]


def _reduction_mode(value: Union[ReductionMode, str]) -> ReductionMode:
    if isinstance(value, ReductionMode):
        return value
    try:
        return ReductionMode(value)
    except ValueError:
        raise InvalidInputError(f"Unknown reduction mode: {value!r}; expected 'tenure' or 'emi'")


def _validate_terms(principal: Decimal, annual_rate: Decimal, tenure_months: int) -> None:
    if principal <= 0:
        raise InvalidInputError(f"Principal must be positive, got {principal}")
    if annual_rate < 0:
        raise InvalidInputError(f"Interest rate must not be negative, got {annual_rate}")
    if not isinstance(tenure_months, int) or tenure_months < 1:
        raise InvalidInputError(f"Tenure must be at least 1 month, got {tenure_months}")
