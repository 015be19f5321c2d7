"""
Installment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .deps import LoanSystem, get_loan_system
from .schemas import MarkPaidRequest, parse_date
from ..exceptions import InvalidInputError


router = APIRouter()


@router.get("/upcoming")
async def get_upcoming(
    as_of: str,
    windows: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Pending installments due exactly 7, 3 or 1 days after as_of"""
    reference = parse_date(as_of, "as_of")
    if windows:
        offsets = _parse_windows(windows)
    else:
        offsets = system.config.reminder_windows_days
    upcoming = system.summaries.upcoming_installments(reference, offsets)
    return {
        "as_of": reference.isoformat(),
        "installments": [item.to_dict() for item in upcoming]
    }


@router.post("/{installment_id}/pay")
async def mark_paid(
    installment_id: str,
    request: MarkPaidRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Mark an installment as paid"""
    result = system.engine.mark_installment_paid(
        installment_id=installment_id,
        paid_date=parse_date(request.paid_date, "paid_date"),
        payment_method=request.payment_method
    )
    return result.to_dict()


def _parse_windows(windows: str):
    try:
        return [int(part) for part in windows.split(",") if part.strip()]
    except ValueError:
        raise InvalidInputError(f"windows must be comma-separated day counts, got {windows!r}")
