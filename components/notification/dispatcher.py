"""Scheduling and delivery of reminder notifications."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from components.core.clock import Clock
from components.core.config import Settings
from components.core.exceptions import (
    DeliveryError,
    DuplicateNotificationError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from components.customer.models import Customer
from components.loan.models import Loan, LoanInstallment
from components.notification.models import (
    Channel,
    NotificationLog,
    NotificationStatus,
    NotificationTemplate,
)
from components.notification.providers import ProviderRegistry
from components.notification.rendering import build_context, render_template
from components.notification.schemas import DrainResult

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = (NotificationStatus.PENDING, NotificationStatus.FAILED)

# Grace on top of the provider timeout before an in-flight claim counts as abandoned
LEASE_GRACE = timedelta(minutes=1)


class NotificationDispatcher:
    """Creates notification logs and pushes them through channel providers."""

    def __init__(
        self,
        session: AsyncSession,
        providers: ProviderRegistry,
        clock: Clock,
        settings: Settings,
    ):
        self.session = session
        self.providers = providers
        self.clock = clock
        self.settings = settings

    @property
    def max_attempts(self) -> int:
        return self.settings.MAX_SEND_ATTEMPTS

    async def schedule(
        self,
        installment_id: int,
        template_id: int,
        channel: Channel,
        recipient: str,
        scheduled_for: Optional[datetime] = None,
    ) -> NotificationLog:
        """
        Render a template for an installment and queue the result.

        At most one log exists per (installment, template, day). A duplicate
        or a WhatsApp send inside the rate-limit window is rejected before
        anything is written. When ``scheduled_for`` is not in the future the
        log is sent right away.
        """
        try:
            channel = Channel(channel)
        except ValueError:
            raise ValidationError(f"unsupported notification channel: {channel}") from None
        if not recipient:
            raise ValidationError("recipient is required")

        installment, contract_number, customer_name = await self._load_installment(installment_id)
        template = await self._load_template(template_id)
        if template.channel != channel:
            raise ValidationError(
                f"template {template_id} is for {template.channel.value}, not {channel.value}"
            )

        now = self.clock.now()
        today = now.date()
        if await self._exists_for_day(installment_id, template_id, today):
            raise DuplicateNotificationError(
                f"notification already created today for installment {installment_id} "
                f"and template {template_id}"
            )
        if channel == Channel.WHATSAPP:
            await self._check_rate_limit(contract_number, now)

        context = build_context(
            customer_name=customer_name,
            contract_number=contract_number,
            due_date=installment.due_date,
            amount_due=installment.amount_due,
            payment_link_base=self.settings.PAYMENT_LINK_BASE,
            support_contact=self.settings.SUPPORT_CONTACT,
            currency_prefix=self.settings.CURRENCY_PREFIX,
        )
        subject = render_template(template.subject, context)
        body = render_template(template.body, context)

        scheduled_for = self.clock.localize(scheduled_for) if scheduled_for else now
        log = NotificationLog(
            installment_id=installment_id,
            template_id=template_id,
            channel=channel,
            recipient=recipient,
            subject=subject,
            body=body,
            status=NotificationStatus.PENDING,
            scheduled_for=scheduled_for,
            attempts=0,
            dedupe_date=today,
            created_at=now,
        )
        self.session.add(log)
        try:
            await self.session.commit()
        except IntegrityError:
            # Lost the race against another writer for the same day
            await self.session.rollback()
            raise DuplicateNotificationError(
                f"notification already created today for installment {installment_id} "
                f"and template {template_id}"
            ) from None

        logger.info(
            "Scheduled %s notification %s for installment %s at %s",
            channel.value, log.id, installment_id, scheduled_for.isoformat(),
        )

        if scheduled_for <= now:
            return await self.send(log.id)
        return log

    async def send(self, log_id: int) -> NotificationLog:
        """
        Make one delivery attempt for a log.

        Provider failures and timeouts are recorded on the log rather than
        raised. Sent, skipped and exhausted logs are returned untouched, and
        so is a log another sender is delivering right now.
        """
        log = await self.get_log(log_id)
        if log.status not in CLAIMABLE_STATUSES or log.attempts >= self.max_attempts:
            logger.debug("Notification %s not sendable (%s, %d attempts)", log_id, log.status.value, log.attempts)
            return log

        claimed = await self._claim_attempt(log_id, log.attempts)
        if not claimed:
            logger.debug("Notification %s claimed elsewhere", log_id)
            return await self.get_log(log_id)

        error = None
        try:
            provider = self.providers.get(log.channel)
            await asyncio.wait_for(
                provider.send(log.recipient, log.subject, log.body),
                timeout=self.settings.SEND_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            error = f"provider timed out after {self.settings.SEND_TIMEOUT_SECONDS}s"
        except (DeliveryError, ValidationError) as exc:
            error = str(exc)
        except Exception as exc:
            logger.exception("Unexpected provider failure for notification %s", log_id)
            error = f"unexpected provider error: {exc}"

        now = self.clock.now()
        if error is None:
            values = dict(status=NotificationStatus.SENT, sent_at=now, error_message=None)
            logger.info("Sent %s notification %s to %s", log.channel.value, log_id, log.recipient)
        else:
            values = dict(status=NotificationStatus.FAILED, error_message=error)
            logger.warning("Failed to send notification %s: %s", log_id, error)

        await self.session.execute(
            update(NotificationLog)
            .where(
                NotificationLog.id == log_id,
                NotificationLog.status == NotificationStatus.SENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return await self.get_log(log_id)

    async def drain_pending(self, now: Optional[datetime] = None) -> DrainResult:
        """Attempt every due log that is pending, or failed with attempts left."""
        now = now or self.clock.now()
        result = DrainResult()

        await self.release_stale_claims(now)
        for log_id in await self._due_log_ids(now):
            try:
                log = await self.send(log_id)
            except Exception:
                await self.session.rollback()
                logger.exception("Error processing notification %s", log_id)
                result.failed += 1
                continue

            if log.status == NotificationStatus.SENDING:
                # Picked up by a concurrent drain
                continue
            result.processed += 1
            if log.status == NotificationStatus.SENT:
                result.sent += 1
            elif log.status == NotificationStatus.FAILED:
                result.failed += 1

        if result.processed or result.failed:
            logger.info(
                "Drained %d notifications: %d sent, %d failed",
                result.processed, result.sent, result.failed,
            )
        return result

    async def release_stale_claims(self, now: Optional[datetime] = None) -> int:
        """
        Mark logs stuck in ``sending`` as failed.

        A claim outlives its provider call only when the sender died midway.
        Such logs go back to the retry queue if they still have attempts left.
        """
        now = now or self.clock.now()
        expired_before = now - timedelta(seconds=self.settings.SEND_TIMEOUT_SECONDS) - LEASE_GRACE
        result = await self.session.execute(
            update(NotificationLog)
            .where(
                NotificationLog.status == NotificationStatus.SENDING,
                NotificationLog.last_attempt_at < expired_before,
            )
            .values(status=NotificationStatus.FAILED, error_message="delivery interrupted")
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if result.rowcount:
            logger.warning("Released %d abandoned notification claims", result.rowcount)
        return result.rowcount

    async def get_pending(self, now: Optional[datetime] = None) -> List[NotificationLog]:
        """Logs the next drain would pick up."""
        now = now or self.clock.now()
        result = await self.session.execute(
            select(NotificationLog)
            .where(self._due_clause(now))
            .order_by(NotificationLog.scheduled_for, NotificationLog.id)
        )
        return list(result.scalars().all())

    async def get_log(self, log_id: int) -> NotificationLog:
        log = await self.session.get(NotificationLog, log_id, populate_existing=True)
        if log is None:
            raise NotFoundError("notification not found")
        return log

    async def send_test(self, channel: Channel, recipient: str, subject: str, body: str) -> None:
        """Send a one-off message straight through a provider. Nothing is logged."""
        provider = self.providers.get(channel)
        try:
            await asyncio.wait_for(
                provider.send(recipient, subject, body),
                timeout=self.settings.SEND_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise DeliveryError(
                f"provider timed out after {self.settings.SEND_TIMEOUT_SECONDS}s"
            ) from None

    async def _load_installment(self, installment_id: int) -> Tuple[LoanInstallment, str, str]:
        result = await self.session.execute(
            select(LoanInstallment, Loan.contract_number, Customer.name)
            .join(Loan, LoanInstallment.loan_id == Loan.id)
            .join(Customer, Loan.customer_id == Customer.id)
            .where(LoanInstallment.id == installment_id)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("installment not found")
        return row[0], row[1], row[2]

    async def _load_template(self, template_id: int) -> NotificationTemplate:
        template = await self.session.get(NotificationTemplate, template_id)
        if template is None or not template.active:
            raise NotFoundError("template not found or inactive")
        return template

    async def _exists_for_day(self, installment_id: int, template_id: int, day) -> bool:
        result = await self.session.execute(
            select(func.count(NotificationLog.id)).where(
                NotificationLog.installment_id == installment_id,
                NotificationLog.template_id == template_id,
                NotificationLog.dedupe_date == day,
            )
        )
        return result.scalar_one() > 0

    async def _check_rate_limit(self, contract_number: str, now: datetime) -> None:
        window_start = now - timedelta(hours=self.settings.WHATSAPP_RATE_LIMIT_HOURS)
        result = await self.session.execute(
            select(func.count(NotificationLog.id))
            .join(LoanInstallment, NotificationLog.installment_id == LoanInstallment.id)
            .join(Loan, LoanInstallment.loan_id == Loan.id)
            .where(
                Loan.contract_number == contract_number,
                NotificationLog.channel == Channel.WHATSAPP,
                NotificationLog.status == NotificationStatus.SENT,
                NotificationLog.sent_at > window_start,
            )
        )
        if result.scalar_one() > 0:
            raise RateLimitError(
                f"WhatsApp rate limit exceeded for contract {contract_number}"
            )

    async def _claim_attempt(self, log_id: int, seen_attempts: int) -> bool:
        # Only one sender can move the row out of pending/failed at a given attempt count
        result = await self.session.execute(
            update(NotificationLog)
            .where(
                NotificationLog.id == log_id,
                NotificationLog.status.in_(CLAIMABLE_STATUSES),
                NotificationLog.attempts == seen_attempts,
                NotificationLog.attempts < self.max_attempts,
            )
            .values(
                status=NotificationStatus.SENDING,
                attempts=NotificationLog.attempts + 1,
                last_attempt_at=self.clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    def _due_clause(self, now: datetime):
        return and_(
            NotificationLog.scheduled_for <= now,
            or_(
                NotificationLog.status == NotificationStatus.PENDING,
                and_(
                    NotificationLog.status == NotificationStatus.FAILED,
                    NotificationLog.attempts < self.max_attempts,
                ),
            ),
        )

    async def _due_log_ids(self, now: datetime) -> List[int]:
        result = await self.session.execute(
            select(NotificationLog.id)
            .where(self._due_clause(now))
            .order_by(NotificationLog.scheduled_for, NotificationLog.id)
        )
        return list(result.scalars().all())
