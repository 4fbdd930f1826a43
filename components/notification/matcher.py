"""Selection of installments that are due a reminder today."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from components.core.exceptions import ValidationError
from components.core.security import FieldCipher
from components.customer.models import Customer
from components.loan.models import Loan, LoanInstallment, LoanStatus, InstallmentStatus
from components.notification.models import Channel, NotificationTemplate, ScheduleOffset

logger = logging.getLogger(__name__)

VALID_OFFSETS = frozenset(offset.value for offset in ScheduleOffset)


@dataclass
class ReminderMatch:
    """An installment, the template that fires for it today, and where to send it."""
    installment_id: int
    loan_id: int
    contract_number: str
    customer_name: str
    due_date: datetime
    template: NotificationTemplate
    recipient: str

    @property
    def channel(self) -> Channel:
        return self.template.channel


def target_due_date(today: date, schedule_offset: int) -> date:
    """
    Due date a template looks for on ``today``.

    A template fires when ``today == due_date + offset``: offset -7 on the
    1st targets installments due on the 8th, offset +3 targets those due
    three days ago.
    """
    if schedule_offset not in VALID_OFFSETS:
        raise ValidationError(f"unknown schedule offset: {schedule_offset}")
    return today - timedelta(days=schedule_offset)


class ReminderMatcher:
    """Read-only lookup of reminder candidates. Never writes."""

    def __init__(self, session: AsyncSession, cipher: FieldCipher):
        self.session = session
        self.cipher = cipher

    async def get_active_templates(self) -> List[NotificationTemplate]:
        result = await self.session.execute(
            select(NotificationTemplate)
            .where(NotificationTemplate.active.is_(True))
            .order_by(NotificationTemplate.schedule_offset, NotificationTemplate.channel)
        )
        return list(result.scalars().all())

    async def find_due_reminders(
        self,
        today: date,
        templates: Iterable[NotificationTemplate],
    ) -> List[ReminderMatch]:
        """All (installment, template, recipient) triples that fire on ``today``."""
        matches: List[ReminderMatch] = []
        for template in templates:
            matches.extend(await self.match_template(template, today))
        return matches

    async def match_template(self, template: NotificationTemplate, today: date) -> List[ReminderMatch]:
        """Installments of active loans, not yet paid, due on this template's target day."""
        if not template.active:
            return []

        day_start = datetime.combine(target_due_date(today, template.schedule_offset), time.min)
        day_end = day_start + timedelta(days=1)

        result = await self.session.execute(
            select(
                LoanInstallment,
                Loan.contract_number,
                Customer.name,
                Customer.email,
                Customer.phone,
            )
            .join(Loan, LoanInstallment.loan_id == Loan.id)
            .join(Customer, Loan.customer_id == Customer.id)
            .where(
                LoanInstallment.due_date >= day_start,
                LoanInstallment.due_date < day_end,
                LoanInstallment.status != InstallmentStatus.PAID,
                Loan.status == LoanStatus.ACTIVE,
            )
            .order_by(LoanInstallment.id)
        )

        matches = []
        for installment, contract_number, customer_name, email, phone in result.all():
            contact = email if template.channel == Channel.EMAIL else phone
            try:
                recipient = self.cipher.decrypt(contact or "")
            except ValidationError as exc:
                logger.error(
                    "Cannot read contact of customer %s (contract %s): %s",
                    customer_name, contract_number, exc,
                )
                continue
            if not recipient:
                logger.warning(
                    "No recipient for %s notification to customer %s (contract %s)",
                    template.channel.value, customer_name, contract_number,
                )
                continue

            matches.append(ReminderMatch(
                installment_id=installment.id,
                loan_id=installment.loan_id,
                contract_number=contract_number,
                customer_name=customer_name,
                due_date=installment.due_date,
                template=template,
                recipient=recipient,
            ))
        return matches
