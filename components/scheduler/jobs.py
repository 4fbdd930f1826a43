"""The three recurring jobs: reminder pass, pending drain and DPD sweep."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from components.core.clock import Clock
from components.core.config import Settings
from components.core.database import DatabaseManager
from components.core.exceptions import (
    DuplicateNotificationError,
    KoperasiError,
    RateLimitError,
)
from components.core.security import FieldCipher
from components.loan.dpd import DPDRecalculator
from components.notification.dispatcher import NotificationDispatcher
from components.notification.matcher import ReminderMatcher
from components.notification.providers import ProviderRegistry
from components.notification.schemas import DrainResult, ReminderPassResult

logger = logging.getLogger(__name__)


class ReminderJobs:
    """Job bodies. Each run opens its own session and takes ``now`` explicitly."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        providers: ProviderRegistry,
        clock: Clock,
        settings: Settings,
        cipher: FieldCipher,
    ):
        self.db_manager = db_manager
        self.providers = providers
        self.clock = clock
        self.settings = settings
        self.cipher = cipher

    async def run_reminder_pass(self, now: Optional[datetime] = None) -> ReminderPassResult:
        """
        Match every active template against today's installments and queue
        reminders for them.

        Duplicates and rate-limited sends are counted as skipped. A template
        or an installment that fails is logged and the pass moves on.
        """
        now = now or self.clock.now()
        today = now.date()
        scheduled_for = now + timedelta(minutes=self.settings.REMINDER_DISPATCH_DELAY_MINUTES)
        result = ReminderPassResult()

        logger.info("Starting reminder pass for %s", today.isoformat())
        async with self.db_manager.get_db() as session:
            matcher = ReminderMatcher(session, self.cipher)
            dispatcher = NotificationDispatcher(session, self.providers, self.clock, self.settings)

            templates = await matcher.get_active_templates()
            result.templates = len(templates)

            for template in templates:
                try:
                    matches = await matcher.match_template(template, today)
                except Exception:
                    await session.rollback()
                    logger.exception("Failed to process template %s", template.name)
                    result.errors += 1
                    continue

                result.matched += len(matches)
                for match in matches:
                    try:
                        await dispatcher.schedule(
                            installment_id=match.installment_id,
                            template_id=template.id,
                            channel=template.channel,
                            recipient=match.recipient,
                            scheduled_for=scheduled_for,
                        )
                        result.scheduled += 1
                    except (DuplicateNotificationError, RateLimitError) as exc:
                        logger.info("Skipped reminder for installment %s: %s", match.installment_id, exc)
                        result.skipped += 1
                    except KoperasiError as exc:
                        logger.warning(
                            "Failed to schedule reminder for installment %s: %s",
                            match.installment_id, exc,
                        )
                        result.errors += 1
                    except Exception:
                        await session.rollback()
                        logger.exception("Failed to schedule reminder for installment %s", match.installment_id)
                        result.errors += 1

        logger.info(
            "Reminder pass finished: %d templates, %d matched, %d scheduled, %d skipped, %d errors",
            result.templates, result.matched, result.scheduled, result.skipped, result.errors,
        )
        return result

    async def drain_pending(self, now: Optional[datetime] = None) -> DrainResult:
        now = now or self.clock.now()
        async with self.db_manager.get_db() as session:
            dispatcher = NotificationDispatcher(session, self.providers, self.clock, self.settings)
            return await dispatcher.drain_pending(now)

    async def recalculate_dpd(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock.now()
        async with self.db_manager.get_db() as session:
            return await DPDRecalculator(session).recalculate(now)
