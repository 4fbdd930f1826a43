"""Fixed-payment amortization and installment schedule generation."""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List

from dateutil.relativedelta import relativedelta

from components.core.exceptions import ValidationError
from components.loan.models import LoanInstallment, InstallmentStatus

MIN_TERM_MONTHS = 1
MAX_TERM_MONTHS = 60
MAX_INTEREST_RATE = 100.0


def validate_loan_terms(amount: int, interest_rate: float, term: int) -> None:
    """Reject loan parameters outside the accepted ranges."""
    if amount is None or amount <= 0:
        raise ValidationError("loan amount must be greater than 0")
    if interest_rate is None or interest_rate < 0 or interest_rate > MAX_INTEREST_RATE:
        raise ValidationError("interest rate must be between 0 and 100")
    if term is None or term < MIN_TERM_MONTHS or term > MAX_TERM_MONTHS:
        raise ValidationError("loan term must be between 1 and 60 months")


def compute_monthly_payment(principal: int, annual_rate_percent: float, term_months: int) -> int:
    """
    Fixed monthly payment of an annuity loan.

    PMT = P * r * (1 + r)^n / ((1 + r)^n - 1) with r the monthly rate,
    rounded half away from zero. An interest-free loan pays principal // n.
    """
    if term_months <= 0:
        raise ValidationError("loan term must be between 1 and 60 months")

    monthly_rate = annual_rate_percent / 100 / 12
    if monthly_rate == 0:
        return principal // term_months

    growth = (1 + monthly_rate) ** term_months
    payment = principal * monthly_rate * growth / (growth - 1)
    return int(Decimal(payment).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def installment_due_date(disbursed_at: datetime, number: int) -> datetime:
    """Due date of the n-th installment; the day is clamped in shorter months."""
    return disbursed_at + relativedelta(months=number)


def generate_installments(
    loan_id: int,
    principal: int,
    annual_rate_percent: float,
    term_months: int,
    disbursed_at: datetime,
) -> List[LoanInstallment]:
    """Build (unsaved) installment rows 1..term for a disbursed loan."""
    monthly_payment = compute_monthly_payment(principal, annual_rate_percent, term_months)

    return [
        LoanInstallment(
            loan_id=loan_id,
            number=number,
            due_date=installment_due_date(disbursed_at, number),
            amount_due=monthly_payment,
            amount_paid=0,
            status=InstallmentStatus.PENDING,
            days_past_due=0,
            created_at=disbursed_at,
        )
        for number in range(1, term_months + 1)
    ]
