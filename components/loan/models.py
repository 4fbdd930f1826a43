"""Loan and installment models for the database."""

import enum

from sqlalchemy import (
    Column, Integer, BigInteger, Float, String, DateTime, Enum, ForeignKey,
    UniqueConstraint, func,
)
from sqlalchemy.orm import relationship

from components.core.database import Base


class LoanStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DISBURSED = "disbursed"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


# A customer may hold at most one loan in any of these statuses
OPEN_LOAN_STATUSES = (
    LoanStatus.PENDING,
    LoanStatus.APPROVED,
    LoanStatus.DISBURSED,
    LoanStatus.ACTIVE,
)


class InstallmentStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Loan(Base):
    """Installment loan issued to a customer."""
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    contract_number = Column(String(32), unique=True, nullable=False)
    amount = Column(BigInteger, nullable=False)  # Principal, minor currency units
    interest_rate = Column(Float, nullable=False)  # Annual, percent
    term = Column(Integer, nullable=False)  # Months
    monthly_payment = Column(BigInteger, nullable=False)
    status = Column(
        Enum(LoanStatus, native_enum=False, values_callable=_enum_values, length=20),
        nullable=False,
        default=LoanStatus.PENDING,
    )
    disbursed_at = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    customer = relationship("Customer", back_populates="loans")
    installments = relationship(
        "LoanInstallment",
        back_populates="loan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="LoanInstallment.number",
    )


class LoanInstallment(Base):
    """One scheduled repayment of a disbursed loan."""
    __tablename__ = "loan_installments"
    __table_args__ = (UniqueConstraint("loan_id", "number", name="uq_installment_loan_number"),)

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id", ondelete="CASCADE"), nullable=False, index=True)
    number = Column(Integer, nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)
    amount_due = Column(BigInteger, nullable=False)
    amount_paid = Column(BigInteger, nullable=False, default=0)
    status = Column(
        Enum(InstallmentStatus, native_enum=False, values_callable=_enum_values, length=20),
        nullable=False,
        default=InstallmentStatus.PENDING,
    )
    paid_at = Column(DateTime, nullable=True)
    days_past_due = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    # Relationship with Loan
    loan = relationship("Loan", back_populates="installments")
