"""
Pydantic schemas for API requests
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field

from ..currency import format_amount
from ..exceptions import InvalidInputError


class CreateLoanRequest(BaseModel):
    principal_amount: str = Field(..., description="Decimal amount as string")
    annual_interest_rate: str = Field(..., description="Annual rate in percent, e.g. \"12\"")
    tenure_months: int
    start_date: str = Field(..., description="ISO date of the first installment")
    loan_id: Optional[str] = None
    currency: Optional[str] = Field(None, description="ISO code; defaults to the configured currency")
    lender: Optional[str] = None
    loan_type: Optional[str] = None


class GenerateScheduleRequest(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    annual_rate: str = Field(..., description="Annual rate in percent")
    tenure_months: int
    start_date: str = Field(..., description="ISO date of the first installment")
    installment_override: Optional[str] = None


class PartPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: str = Field(..., description="ISO date")
    reduction_mode: str = Field(..., description="Reduction mode (tenure, emi)")
    payment_method: Optional[str] = None


class ForeclosureRequest(BaseModel):
    foreclosure_date: str = Field(..., description="ISO date")
    payment_method: Optional[str] = None


class MarkPaidRequest(BaseModel):
    paid_date: str = Field(..., description="ISO date")
    payment_method: Optional[str] = None


def parse_date(value: str, field_name: str) -> date:
    """Parse an ISO-8601 calendar date from a request"""
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{field_name} must be an ISO date (YYYY-MM-DD), got {value!r}")


def loan_response(loan) -> dict:
    return {
        "id": loan.id,
        "status": loan.status.value,
        "principal_amount": format_amount(loan.principal_amount),
        "annual_interest_rate": str(loan.annual_interest_rate),
        "tenure_months": loan.tenure_months,
        "start_date": loan.start_date.isoformat(),
        "installment_amount": (
            format_amount(loan.installment_amount) if loan.installment_amount is not None else None
        ),
        "currency": loan.currency,
        "lender": loan.lender,
        "loan_type": loan.loan_type,
        "closed_date": loan.closed_date.isoformat() if loan.closed_date else None,
        "version": loan.version,
    }


def installment_response(installment) -> dict:
    return {
        "id": installment.id,
        "loan_id": installment.loan_id,
        "sequence": installment.sequence,
        "due_date": installment.due_date.isoformat(),
        "installment_amount": format_amount(installment.installment_amount),
        "principal_component": format_amount(installment.principal_component),
        "interest_component": format_amount(installment.interest_component),
        "remaining_principal": format_amount(installment.remaining_principal),
        "status": installment.status.value,
        "adjusted": installment.adjusted,
        "adjustment_event_id": installment.adjustment_event_id,
        "paid_date": installment.paid_date.isoformat() if installment.paid_date else None,
        "payment_method": installment.payment_method,
    }
