"""Repository for loan operations."""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update, func, case
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from components.core.clock import Clock
from components.core.exceptions import (
    DisbursementError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from components.customer.models import Customer
from components.loan.amortization import (
    compute_monthly_payment,
    generate_installments,
    validate_loan_terms,
)
from components.loan.dpd import days_past_due
from components.loan.models import (
    Loan,
    LoanInstallment,
    LoanStatus,
    InstallmentStatus,
    OPEN_LOAN_STATUSES,
)

logger = logging.getLogger(__name__)

# Manual transitions. DISBURSED is reached only through disburse() and
# COMPLETED only through pay_installment().
ALLOWED_TRANSITIONS: Dict[LoanStatus, tuple] = {
    LoanStatus.PENDING: (LoanStatus.APPROVED, LoanStatus.CANCELLED),
    LoanStatus.APPROVED: (LoanStatus.CANCELLED,),
    LoanStatus.DISBURSED: (LoanStatus.ACTIVE,),
    LoanStatus.ACTIVE: (LoanStatus.DEFAULTED,),
}

EDITABLE_STATUSES = (LoanStatus.PENDING, LoanStatus.APPROVED)


class LoanRepository:
    """Repository for loan operations."""

    def __init__(self, session: AsyncSession, clock: Clock):
        """Initialize repository with database session and clock."""
        self.session = session
        self.clock = clock

    async def create(self, customer_id: int, amount: int, interest_rate: float, term: int) -> Loan:
        """Create a pending loan with its payment derived from amount, rate and term."""
        validate_loan_terms(amount, interest_rate, term)

        customer = await self.session.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError("customer not found")

        result = await self.session.execute(
            select(func.count(Loan.id)).where(
                Loan.customer_id == customer_id,
                Loan.status.in_(OPEN_LOAN_STATUSES),
            )
        )
        if result.scalar_one() > 0:
            raise InvalidStateError("customer already has an active loan")

        now = self.clock.now()
        loan = Loan(
            customer_id=customer_id,
            contract_number=await self._next_contract_number(now.year),
            amount=amount,
            interest_rate=interest_rate,
            term=term,
            monthly_payment=compute_monthly_payment(amount, interest_rate, term),
            status=LoanStatus.PENDING,
            due_date=now + relativedelta(months=term),
            created_at=now,
            updated_at=now,
        )
        self.session.add(loan)
        await self.session.commit()
        logger.info("Created loan %s for customer %s", loan.contract_number, customer_id)
        return loan

    async def get(self, loan_id: int) -> Loan:
        """Get loan by ID together with its installments."""
        result = await self.session.execute(
            select(Loan)
            .where(Loan.id == loan_id)
            .options(selectinload(Loan.installments))
            .execution_options(populate_existing=True)
        )
        loan = result.scalar_one_or_none()
        if loan is None:
            raise NotFoundError("loan not found")
        return loan

    async def list(
        self,
        page: int = 1,
        limit: int = 20,
        customer_id: Optional[int] = None,
        status: Optional[LoanStatus] = None,
    ) -> tuple:
        """List loans newest first. Returns (loans, total, page, limit)."""
        if page < 1:
            page = 1
        if limit < 1 or limit > 100:
            limit = 20

        query = select(Loan)
        count_query = select(func.count(Loan.id))
        if customer_id is not None:
            query = query.where(Loan.customer_id == customer_id)
            count_query = count_query.where(Loan.customer_id == customer_id)
        if status is not None:
            query = query.where(Loan.status == status)
            count_query = count_query.where(Loan.status == status)

        query = query.order_by(Loan.created_at.desc(), Loan.id.desc())
        query = query.offset((page - 1) * limit).limit(limit)

        loans = list((await self.session.execute(query)).scalars().all())
        total = (await self.session.execute(count_query)).scalar_one()
        return loans, total, page, limit

    async def update(self, loan_id: int, amount: int, interest_rate: float, term: int) -> Loan:
        """Change loan terms and re-derive the monthly payment."""
        validate_loan_terms(amount, interest_rate, term)

        loan = await self._get_loan(loan_id)
        if loan.status not in EDITABLE_STATUSES:
            raise InvalidStateError(f"cannot update a {loan.status.value} loan")

        now = self.clock.now()
        loan.amount = amount
        loan.interest_rate = interest_rate
        loan.term = term
        loan.monthly_payment = compute_monthly_payment(amount, interest_rate, term)
        loan.due_date = now + relativedelta(months=term)
        loan.updated_at = now
        await self.session.commit()
        return await self.get(loan_id)

    async def change_status(self, loan_id: int, status: LoanStatus) -> Loan:
        """Apply a manual status transition."""
        loan = await self._get_loan(loan_id)
        if status not in ALLOWED_TRANSITIONS.get(loan.status, ()):
            if status == LoanStatus.DISBURSED:
                raise InvalidStateError("use disbursement to move a loan to disbursed")
            raise InvalidStateError(
                f"cannot change loan status from {loan.status.value} to {status.value}"
            )

        loan.status = status
        loan.updated_at = self.clock.now()
        await self.session.commit()
        logger.info("Loan %s moved to %s", loan.contract_number, status.value)
        return await self.get(loan_id)

    async def disburse(self, loan_id: int) -> Loan:
        """
        Disburse an approved loan.

        The status change and the installment batch commit together; on any
        failure both are rolled back and the loan stays approved.
        """
        loan = await self._get_loan(loan_id)
        if loan.status != LoanStatus.APPROVED:
            raise InvalidStateError("only approved loans can be disbursed")

        principal, rate, term = loan.amount, loan.interest_rate, loan.term
        now = self.clock.now()
        try:
            result = await self.session.execute(
                update(Loan)
                .where(Loan.id == loan_id, Loan.status == LoanStatus.APPROVED)
                .values(status=LoanStatus.DISBURSED, disbursed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1
            if claimed:
                self.session.add_all(generate_installments(loan_id, principal, rate, term, now))
                await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            logger.error("Disbursement of loan %s rolled back: %s", loan_id, exc)
            raise DisbursementError(f"failed to disburse loan: {exc}") from exc

        if not claimed:
            await self.session.rollback()
            raise InvalidStateError("only approved loans can be disbursed")

        logger.info("Disbursed loan %s with %d installments", loan_id, term)
        return await self.get(loan_id)

    async def pay_installment(
        self,
        installment_id: int,
        amount: int,
        paid_at: Optional[datetime] = None,
    ) -> LoanInstallment:
        """
        Record a payment against an installment.

        The installment becomes paid on the payment that brings amount_paid to
        amount_due; earlier payments leave it partial. When the last unpaid
        installment of a loan is paid the loan is completed in the same
        transaction.
        """
        if amount is None or amount <= 0:
            raise ValidationError("payment amount must be greater than 0")

        installment = await self.session.get(LoanInstallment, installment_id, populate_existing=True)
        if installment is None:
            raise NotFoundError("installment not found")
        if installment.status == InstallmentStatus.PAID:
            raise InvalidStateError("installment already paid")

        paid_at = paid_at or self.clock.now()
        loan_id = installment.loan_id
        new_amount_paid = LoanInstallment.amount_paid + amount
        reaches_due = new_amount_paid >= LoanInstallment.amount_due

        try:
            # Guarded single-row update so a concurrent DPD sweep cannot undo a payment
            result = await self.session.execute(
                update(LoanInstallment)
                .where(
                    LoanInstallment.id == installment_id,
                    LoanInstallment.status != InstallmentStatus.PAID,
                )
                .ordered_values(
                    (LoanInstallment.status, case(
                        (reaches_due, InstallmentStatus.PAID.value),
                        else_=InstallmentStatus.PARTIAL.value,
                    )),
                    (LoanInstallment.paid_at, case(
                        (reaches_due, paid_at),
                        else_=LoanInstallment.paid_at,
                    )),
                    (LoanInstallment.days_past_due, case(
                        (reaches_due, 0),
                        else_=LoanInstallment.days_past_due,
                    )),
                    (LoanInstallment.amount_paid, new_amount_paid),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidStateError("installment already paid")

            installment = (await self.session.execute(
                select(LoanInstallment)
                .where(LoanInstallment.id == installment_id)
                .execution_options(populate_existing=True)
            )).scalar_one()

            if installment.status == InstallmentStatus.PAID:
                await self._complete_loan_if_settled(loan_id)

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "Payment of %d recorded on installment %s (%s)",
            amount, installment_id, installment.status.value,
        )
        return installment

    async def get_overdue_installments(self, now: datetime) -> List[dict]:
        """Unpaid installments past their due date, with DPD computed as of now."""
        result = await self.session.execute(
            select(LoanInstallment, Loan.contract_number, Customer.name)
            .join(Loan, LoanInstallment.loan_id == Loan.id)
            .join(Customer, Loan.customer_id == Customer.id)
            .where(
                LoanInstallment.due_date < now,
                LoanInstallment.status != InstallmentStatus.PAID,
            )
            .order_by(LoanInstallment.due_date.asc())
        )

        overdue = []
        for installment, contract_number, customer_name in result.all():
            overdue.append({
                "id": installment.id,
                "loan_id": installment.loan_id,
                "number": installment.number,
                "due_date": installment.due_date,
                "amount_due": installment.amount_due,
                "amount_paid": installment.amount_paid,
                "status": installment.status,
                "paid_at": installment.paid_at,
                "days_past_due": days_past_due(installment.due_date, now),
                "contract_number": contract_number,
                "customer_name": customer_name,
            })
        return overdue

    async def _get_loan(self, loan_id: int) -> Loan:
        loan = await self.session.get(Loan, loan_id, populate_existing=True)
        if loan is None:
            raise NotFoundError("loan not found")
        return loan

    async def _next_contract_number(self, year: int) -> str:
        result = await self.session.execute(
            select(func.count(Loan.id)).where(
                Loan.created_at >= datetime(year, 1, 1),
                Loan.created_at < datetime(year + 1, 1, 1),
            )
        )
        return f"KOP-{year}-{result.scalar_one() + 1:04d}"

    async def _complete_loan_if_settled(self, loan_id: int) -> None:
        result = await self.session.execute(
            select(func.count(LoanInstallment.id)).where(
                LoanInstallment.loan_id == loan_id,
                LoanInstallment.status != InstallmentStatus.PAID,
            )
        )
        if result.scalar_one() == 0:
            await self.session.execute(
                update(Loan)
                .where(Loan.id == loan_id)
                .values(status=LoanStatus.COMPLETED, updated_at=self.clock.now())
                .execution_options(synchronize_session=False)
            )
            logger.info("Loan %s completed", loan_id)
