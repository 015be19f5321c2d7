"""
Amortization Calculator Module

Pure functions for equal-installment (EMI) loans: installment amount,
inverse tenure solve and schedule construction. No storage, no I/O.

Every intermediate value that feeds a stored amount is rounded to two
decimals before it is reused. Over long tenures this incremental
rounding drifts from a single-final-rounding calculation; stored
schedules depend on it, so it is kept.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP
from typing import List, Optional
import calendar

from .currency import Numeric, ZERO, round2, to_decimal
from .exceptions import InvalidInputError, NonAmortizingInstallmentError


# Precision the raw tenure quotient is rounded to before taking the ceiling
_TENURE_QUOTIENT_PLACES = Decimal('1E-10')


@dataclass(frozen=True)
class ScheduleEntry:
    """One computed period of an amortization schedule, before persistence"""
    sequence: int
    due_date: date
    installment_amount: Decimal
    principal_component: Decimal
    interest_component: Decimal
    remaining_principal: Decimal

    @property
    def opening_principal(self) -> Decimal:
        """Outstanding principal before this period's principal is applied"""
        return self.remaining_principal + self.principal_component


def monthly_rate(annual_rate_percent: Numeric) -> Decimal:
    """Convert an annual percentage rate to a monthly fraction"""
    return to_decimal(annual_rate_percent) / Decimal('12') / Decimal('100')


def add_months(start_date: date, months: int) -> date:
    """Add calendar months, clipping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def compute_installment(
    principal: Numeric,
    annual_rate_percent: Numeric,
    tenure_months: int
) -> Decimal:
    """
    Calculate the periodic installment for an amortizing loan

    Standard formula: P * r * (1+r)^n / ((1+r)^n - 1), or P / n when the
    rate is zero.

    Args:
        principal: Principal amount (> 0)
        annual_rate_percent: Annual interest rate in percent (>= 0)
        tenure_months: Number of monthly installments (>= 1)

    Returns:
        Installment amount rounded to 2 decimal places
    """
    principal = to_decimal(principal)
    rate = monthly_rate(annual_rate_percent)
    _validate_terms(principal, rate, tenure_months)

    if rate == 0:
        return round2(principal / Decimal(tenure_months))

    factor = (Decimal('1') + rate) ** tenure_months
    return round2(principal * rate * factor / (factor - Decimal('1')))


def solve_tenure_for_installment(
    principal: Numeric,
    rate: Numeric,
    installment_amount: Numeric
) -> int:
    """
    Solve for the number of periods needed to amortize principal

    n = ln(E / (E - P*r)) / ln(1 + r), rounded up to a whole period.

    Args:
        principal: Outstanding principal (>= 0)
        rate: Monthly rate as a fraction (not percent)
        installment_amount: Fixed installment E

    Returns:
        Whole number of periods

    Raises:
        NonAmortizingInstallmentError: If E <= P*r
    """
    principal = to_decimal(principal)
    rate = to_decimal(rate)
    installment = to_decimal(installment_amount)

    if principal < 0 or rate < 0:
        raise InvalidInputError("Principal and rate must not be negative")
    if principal == 0:
        return 0

    periodic_interest = principal * rate
    if installment <= periodic_interest:
        raise NonAmortizingInstallmentError(installment, round2(periodic_interest))

    if rate == 0:
        quotient = principal / installment
    else:
        numerator = (installment / (installment - periodic_interest)).ln()
        denominator = (Decimal('1') + rate).ln()
        quotient = numerator / denominator

    quotient = quotient.quantize(_TENURE_QUOTIENT_PLACES, rounding=ROUND_HALF_UP)
    return int(quotient.to_integral_value(rounding=ROUND_CEILING))


def build_schedule(
    principal: Numeric,
    annual_rate_percent: Numeric,
    tenure_months: int,
    start_date: date,
    installment_override: Optional[Numeric] = None,
    first_sequence: int = 1
) -> List[ScheduleEntry]:
    """
    Build an amortization schedule as a fold over outstanding principal

    Args:
        principal: Opening principal
        annual_rate_percent: Annual interest rate in percent
        tenure_months: Maximum number of periods; the fold stops once the
            principal is settled
        start_date: Due date of the first period
        installment_override: Fixed installment to use instead of the computed one
        first_sequence: Sequence number of the first period

    Returns:
        Ordered list of ScheduleEntry
    """
    principal = round2(principal)
    if tenure_months < 0:
        raise InvalidInputError("Tenure must not be negative")
    if tenure_months == 0:
        return []

    rate = monthly_rate(annual_rate_percent)
    if installment_override is not None:
        installment = round2(installment_override)
        if installment <= 0:
            raise InvalidInputError("Installment override must be positive")
    else:
        installment = compute_installment(principal, annual_rate_percent, tenure_months)

    schedule: List[ScheduleEntry] = []
    outstanding = principal
    for period in range(1, tenure_months + 1):
        entry, outstanding = _next_period(
            outstanding,
            rate,
            installment,
            sequence=first_sequence + period - 1,
            due_date=add_months(start_date, period - 1),
            final=period == tenure_months
        )
        schedule.append(entry)
        if outstanding == 0:
            break
    return schedule


def total_interest(schedule: List[ScheduleEntry]) -> Decimal:
    """Sum of interest components"""
    return round2(sum((entry.interest_component for entry in schedule), ZERO))


def _next_period(
    outstanding: Decimal,
    rate: Decimal,
    installment: Decimal,
    sequence: int,
    due_date: date,
    final: bool
):
    """Apply one period to the outstanding accumulator"""
    interest = round2(outstanding * rate)
    principal_component = round2(installment - interest)
    amount = installment

    if final or principal_component > outstanding:
        # Settle exactly what is left, absorbing the rounding residue
        principal_component = outstanding
        amount = round2(principal_component + interest)

    outstanding = round2(outstanding - principal_component)

    entry = ScheduleEntry(
        sequence=sequence,
        due_date=due_date,
        installment_amount=amount,
        principal_component=principal_component,
        interest_component=interest,
        remaining_principal=outstanding
    )
    return entry, outstanding


def _validate_terms(principal: Decimal, rate: Decimal, tenure_months: int) -> None:
    if principal <= 0:
        raise InvalidInputError(f"Principal must be positive, got {principal}")
    if rate < 0:
        raise InvalidInputError(f"Interest rate must not be negative, got {rate}")
    if not isinstance(tenure_months, int) or tenure_months < 1:
        raise InvalidInputError(f"Tenure must be at least 1 month, got {tenure_months}")
