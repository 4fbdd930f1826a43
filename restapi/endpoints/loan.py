"""Loan endpoints for the API."""

from typing import Optional
from fastapi import APIRouter, Depends, Query

from components.core.clock import Clock
from components.core.schemas import APIResponse
from components.loan import schemas
from components.loan.models import LoanStatus
from components.loan.repository import LoanRepository
from restapi.dependencies import get_clock, get_loan_repository

router = APIRouter(
    prefix="/loans",
    tags=["loans"],
    responses={404: {"description": "Not found"}},
)


@router.get("/installments/overdue", response_model=APIResponse)
async def get_overdue_installments(
    repo: LoanRepository = Depends(get_loan_repository),
    clock: Clock = Depends(get_clock),
):
    """
    Get all unpaid installments past their due date.

    Days past due are computed as of the request time; nothing is written.
    """
    overdue = await repo.get_overdue_installments(clock.now())
    return APIResponse(
        success=True,
        message=f"Found {len(overdue)} overdue installments",
        data=[schemas.OverdueInstallment(**item) for item in overdue],
    )


@router.post("/installments/{installment_id}/pay", response_model=APIResponse)
async def pay_installment(
    installment_id: int,
    payment: schemas.InstallmentPayment,
    repo: LoanRepository = Depends(get_loan_repository),
    clock: Clock = Depends(get_clock),
):
    """
    Record a payment against an installment.

    The installment is paid once the accumulated amount reaches the amount
    due. Paying the last open installment completes the loan.
    """
    paid_at = clock.localize(payment.payment_date) if payment.payment_date else None
    installment = await repo.pay_installment(installment_id, payment.amount, paid_at)
    return APIResponse(
        success=True,
        message="Payment recorded",
        data=schemas.Installment.model_validate(installment),
    )


@router.post("/", response_model=APIResponse, status_code=201)
async def create_loan(
    loan_data: schemas.LoanCreate,
    repo: LoanRepository = Depends(get_loan_repository),
):
    """Create a pending loan. The monthly payment is derived from amount, rate and term."""
    loan = await repo.create(
        customer_id=loan_data.customer_id,
        amount=loan_data.amount,
        interest_rate=loan_data.interest_rate,
        term=loan_data.term,
    )
    return APIResponse(
        success=True,
        message="Loan created",
        data=schemas.Loan.model_validate(loan),
    )


@router.get("/", response_model=APIResponse)
async def list_loans(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    customer_id: Optional[int] = Query(None, description="Only loans of this customer"),
    status: Optional[LoanStatus] = Query(None, description="Only loans in this status"),
    repo: LoanRepository = Depends(get_loan_repository),
):
    """List loans, newest first."""
    loans, total, page, limit = await repo.list(page, limit, customer_id, status)
    return APIResponse(
        success=True,
        message=f"Found {total} loans",
        data=schemas.LoanList(
            loans=[schemas.Loan.model_validate(loan) for loan in loans],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get("/{loan_id}", response_model=APIResponse)
async def get_loan(
    loan_id: int,
    repo: LoanRepository = Depends(get_loan_repository),
):
    """Get a loan with its installment schedule."""
    loan = await repo.get(loan_id)
    return APIResponse(
        success=True,
        message="Loan found",
        data=schemas.LoanWithInstallments.model_validate(loan),
    )


@router.put("/{loan_id}", response_model=APIResponse)
async def update_loan(
    loan_id: int,
    loan_data: schemas.LoanUpdate,
    repo: LoanRepository = Depends(get_loan_repository),
):
    """Change the terms of a pending or approved loan."""
    loan = await repo.update(loan_id, loan_data.amount, loan_data.interest_rate, loan_data.term)
    return APIResponse(
        success=True,
        message="Loan updated",
        data=schemas.Loan.model_validate(loan),
    )


@router.post("/{loan_id}/status", response_model=APIResponse)
async def change_loan_status(
    loan_id: int,
    change: schemas.LoanStatusChange,
    repo: LoanRepository = Depends(get_loan_repository),
):
    """
    Apply a manual status transition.

    Allowed: pending to approved or cancelled, approved to cancelled,
    disbursed to active, active to defaulted.
    """
    loan = await repo.change_status(loan_id, change.status)
    return APIResponse(
        success=True,
        message=f"Loan status changed to {loan.status.value}",
        data=schemas.Loan.model_validate(loan),
    )


@router.post("/{loan_id}/disburse", response_model=APIResponse)
async def disburse_loan(
    loan_id: int,
    repo: LoanRepository = Depends(get_loan_repository),
):
    """Disburse an approved loan and generate its installments."""
    loan = await repo.disburse(loan_id)
    return APIResponse(
        success=True,
        message="Loan disbursed",
        data=schemas.LoanWithInstallments.model_validate(loan),
    )
