"""Days-past-due recalculation sweep."""

import logging
from datetime import datetime

from sqlalchemy import select, update, case
from sqlalchemy.ext.asyncio import AsyncSession

from components.loan.models import LoanInstallment, InstallmentStatus

logger = logging.getLogger(__name__)


def days_past_due(due_date: datetime, now: datetime) -> int:
    """Whole days elapsed since the due date, never negative."""
    if now <= due_date:
        return 0
    return (now - due_date).days


class DPDRecalculator:
    """Recomputes DPD and flips pending installments to overdue."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def recalculate(self, now: datetime) -> int:
        """
        Refresh every unpaid installment that is past due as of ``now``.

        Values are overwritten rather than incremented, so repeated or
        overlapping runs for the same ``now`` converge on the same rows.
        Each row update is guarded by ``status != 'paid'`` so a payment
        committed in between is never reverted. Returns the number of
        installments updated.
        """
        result = await self.session.execute(
            select(LoanInstallment.id, LoanInstallment.due_date).where(
                LoanInstallment.due_date < now,
                LoanInstallment.status != InstallmentStatus.PAID,
            )
        )
        candidates = result.all()

        affected = 0
        try:
            for installment_id, due_date in candidates:
                updated = await self.session.execute(
                    update(LoanInstallment)
                    .where(
                        LoanInstallment.id == installment_id,
                        LoanInstallment.status != InstallmentStatus.PAID,
                    )
                    .values(
                        days_past_due=days_past_due(due_date, now),
                        status=case(
                            (LoanInstallment.status == InstallmentStatus.PENDING,
                             InstallmentStatus.OVERDUE.value),
                            else_=LoanInstallment.status,
                        ),
                    )
                    .execution_options(synchronize_session=False)
                )
                affected += updated.rowcount
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info("DPD sweep as of %s updated %d installments", now.isoformat(), affected)
        return affected
