"""Pydantic schemas for loan data validation."""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field

from components.loan.models import LoanStatus, InstallmentStatus


class LoanBase(BaseModel):
    """Base loan schema."""
    amount: int = Field(..., gt=0, description="Principal in minor currency units")
    interest_rate: float = Field(..., ge=0, le=100, description="Annual interest rate, percent")
    term: int = Field(..., ge=1, le=60, description="Term in months")


class LoanCreate(LoanBase):
    """Schema for loan creation."""
    customer_id: int = Field(..., gt=0)


class LoanUpdate(LoanBase):
    """Schema for loan update. Payment is re-derived from these fields."""
    pass


class LoanStatusChange(BaseModel):
    """Schema for a manual status transition."""
    status: LoanStatus


class Installment(BaseModel):
    """Schema for installment response."""
    id: int
    loan_id: int
    number: int
    due_date: datetime
    amount_due: int
    amount_paid: int
    status: InstallmentStatus
    paid_at: Optional[datetime] = None
    days_past_due: int

    class Config:
        from_attributes = True


class Loan(BaseModel):
    """Schema for loan response."""
    id: int
    customer_id: int
    contract_number: str
    amount: int
    interest_rate: float
    term: int
    monthly_payment: int
    status: LoanStatus
    disbursed_at: Optional[datetime] = None
    due_date: datetime
    created_at: datetime

    class Config:
        from_attributes = True


class LoanWithInstallments(Loan):
    """Schema for loan detail response."""
    installments: List[Installment] = []


class LoanList(BaseModel):
    """Schema for paginated loan list."""
    loans: List[Loan]
    total: int
    page: int
    limit: int


class InstallmentPayment(BaseModel):
    """Schema for an installment payment."""
    amount: int = Field(..., gt=0)
    payment_date: Optional[datetime] = None


class OverdueInstallment(Installment):
    """Schema for an overdue installment with its contract."""
    contract_number: str
    customer_name: str
