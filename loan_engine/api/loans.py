"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import LoanSystem, get_loan_system
from .schemas import (
    CreateLoanRequest, ForeclosureRequest, GenerateScheduleRequest,
    PartPaymentRequest, installment_response, loan_response, parse_date
)
from ..exceptions import InvalidInputError, LoanNotFoundError
from ..loans import LoanStatus
from ..schedule import InstallmentStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Register a new loan"""
    loan = system.engine.create_loan(
        principal=request.principal_amount,
        annual_rate=request.annual_interest_rate,
        tenure_months=request.tenure_months,
        start_date=parse_date(request.start_date, "start_date"),
        loan_id=request.loan_id,
        currency=request.currency,
        lender=request.lender,
        loan_type=request.loan_type
    )
    return loan_response(loan)


@router.get("")
async def list_loans(
    status: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """List loans, optionally filtered by status"""
    loans = system.engine.list_loans(_parse_enum(LoanStatus, status, "status"))
    return {"loans": [loan_response(loan) for loan in loans]}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get loan details"""
    loan = system.engine.get_loan(loan_id)
    if not loan:
        raise LoanNotFoundError(loan_id)
    return loan_response(loan)


@router.post("/{loan_id}/schedule", status_code=status.HTTP_201_CREATED)
async def generate_schedule(
    loan_id: str,
    request: GenerateScheduleRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Generate (or regenerate) the full installment schedule"""
    result = system.engine.generate_schedule(
        loan_id=loan_id,
        principal=request.principal,
        annual_rate=request.annual_rate,
        tenure_months=request.tenure_months,
        start_date=parse_date(request.start_date, "start_date"),
        installment_override=request.installment_override
    )
    return result.to_dict()


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    status: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get the loan's installments ordered by sequence"""
    if system.engine.get_loan(loan_id) is None:
        raise LoanNotFoundError(loan_id)
    installments = system.schedule_store.list_by_loan(
        loan_id, _parse_enum(InstallmentStatus, status, "status")
    )
    return {"installments": [installment_response(i) for i in installments]}


@router.post("/{loan_id}/part-payments")
async def apply_part_payment(
    loan_id: str,
    request: PartPaymentRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Apply a part-payment and rebuild the pending schedule"""
    result = system.engine.apply_part_payment(
        loan_id=loan_id,
        amount=request.amount,
        payment_date=parse_date(request.payment_date, "payment_date"),
        reduction_mode=request.reduction_mode,
        payment_method=request.payment_method
    )
    return result.to_dict()


@router.post("/{loan_id}/foreclosure")
async def foreclose_loan(
    loan_id: str,
    request: ForeclosureRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Settle the loan early and close it"""
    result = system.engine.foreclose(
        loan_id=loan_id,
        foreclosure_date=parse_date(request.foreclosure_date, "foreclosure_date"),
        payment_method=request.payment_method
    )
    return result.to_dict()


@router.get("/{loan_id}/summary")
async def get_summary(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get the loan's repayment summary"""
    return system.summaries.summarize(loan_id).to_dict()


@router.get("/{loan_id}/events")
async def get_events(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get the loan's event history in append order"""
    if system.engine.get_loan(loan_id) is None:
        raise LoanNotFoundError(loan_id)
    return {"events": [event.to_dict() for event in system.ledger.list_by_loan(loan_id)]}


@router.get("/{loan_id}/reconciliation")
async def reconcile(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Replay the event history and compare it with the stored schedule"""
    return system.replayer.reconcile(loan_id).to_dict()


def _parse_enum(enum_cls, value: Optional[str], field_name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInputError(f"Invalid {field_name}: {value!r}")
