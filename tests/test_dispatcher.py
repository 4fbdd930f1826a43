"""Tests for NotificationDispatcher."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, func, update

from components.core.exceptions import (
    DeliveryError,
    DuplicateNotificationError,
    NotFoundError,
    RateLimitError,
    TemplateRenderError,
    ValidationError,
)
from components.notification.dispatcher import NotificationDispatcher
from components.notification.models import (
    Channel,
    NotificationLog,
    NotificationStatus,
    NotificationTemplate,
)
from components.notification.providers import NotificationProvider, ProviderRegistry
from components.notification.rendering import format_currency


@pytest.fixture
def dispatcher(session, providers, clock, settings) -> NotificationDispatcher:
    return NotificationDispatcher(session, providers, clock, settings)


@pytest.fixture
async def loan(make_active_loan, clock):
    """An active loan, with the clock moved to seven days before the first due date."""
    loan = await make_active_loan()
    clock.advance(days=24)  # 2024-03-25 09:00
    return loan


async def count_logs(session) -> int:
    result = await session.execute(select(func.count(NotificationLog.id)))
    return result.scalar_one()


class TestSchedule:
    """Tests for scheduling and immediate sends."""

    async def test_immediate_send(self, dispatcher, templates, loan, email_provider, clock) -> None:
        installment = loan.installments[0]

        log = await dispatcher.schedule(installment.id, templates[-7].id, Channel.EMAIL, "siti@example.com")

        assert log.status == NotificationStatus.SENT
        assert log.attempts == 1
        assert log.sent_at == clock.now()
        assert log.dedupe_date == clock.now().date()
        assert len(email_provider.sent) == 1
        recipient, subject, body = email_provider.sent[0]
        assert recipient == "siti@example.com"
        assert loan.contract_number in subject
        assert format_currency(installment.amount_due) in body
        assert "01/04/2024" in body
        assert f"https://pay.koperasi.com/{loan.contract_number}" in body

    async def test_future_log_waits_for_drain(self, dispatcher, templates, loan, email_provider, clock) -> None:
        later = clock.now() + timedelta(minutes=1)

        log = await dispatcher.schedule(
            loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com", later,
        )

        assert log.status == NotificationStatus.PENDING
        assert log.attempts == 0
        assert email_provider.sent == []

        assert (await dispatcher.drain_pending(clock.now())).processed == 0
        result = await dispatcher.drain_pending(later)
        assert (result.processed, result.sent, result.failed) == (1, 1, 0)
        assert (await dispatcher.get_log(log.id)).status == NotificationStatus.SENT

    async def test_aware_scheduled_for_is_localized(self, dispatcher, templates, loan, clock) -> None:
        later = clock.aware_now() + timedelta(hours=2)

        log = await dispatcher.schedule(
            loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com", later,
        )

        assert log.scheduled_for == clock.now() + timedelta(hours=2)
        assert log.scheduled_for.tzinfo is None

    async def test_duplicate_same_day(self, dispatcher, templates, loan, session) -> None:
        installment_id = loan.installments[0].id
        await dispatcher.schedule(installment_id, templates[-7].id, Channel.EMAIL, "siti@example.com")

        with pytest.raises(DuplicateNotificationError):
            await dispatcher.schedule(installment_id, templates[-7].id, Channel.EMAIL, "siti@example.com")
        assert await count_logs(session) == 1

    async def test_next_day_is_not_duplicate(self, dispatcher, templates, loan, session, clock) -> None:
        installment_id = loan.installments[0].id
        await dispatcher.schedule(installment_id, templates[-7].id, Channel.EMAIL, "siti@example.com")
        clock.advance(days=1)

        await dispatcher.schedule(installment_id, templates[-7].id, Channel.EMAIL, "siti@example.com")
        assert await count_logs(session) == 2

    async def test_channel_must_match_template(self, dispatcher, templates, loan, session) -> None:
        with pytest.raises(ValidationError):
            await dispatcher.schedule(loan.installments[0].id, templates[-7].id, Channel.WHATSAPP, "0812")
        assert await count_logs(session) == 0

    async def test_unknown_installment(self, dispatcher, templates) -> None:
        with pytest.raises(NotFoundError):
            await dispatcher.schedule(9999, templates[-7].id, Channel.EMAIL, "siti@example.com")

    async def test_inactive_template(self, dispatcher, templates, loan, session) -> None:
        template = templates[-7]
        template.active = False
        await session.commit()

        with pytest.raises(NotFoundError):
            await dispatcher.schedule(loan.installments[0].id, template.id, Channel.EMAIL, "siti@example.com")

    async def test_empty_recipient(self, dispatcher, templates, loan) -> None:
        with pytest.raises(ValidationError):
            await dispatcher.schedule(loan.installments[0].id, templates[-7].id, Channel.EMAIL, "")

    async def test_render_error_creates_no_log(self, dispatcher, loan, session, clock) -> None:
        broken = NotificationTemplate(
            name="Broken",
            channel=Channel.EMAIL,
            subject="Halo",
            body="Halo {nama}",
            schedule_offset=-7,
            active=True,
            created_at=clock.now(),
        )
        session.add(broken)
        await session.commit()

        with pytest.raises(TemplateRenderError):
            await dispatcher.schedule(loan.installments[0].id, broken.id, Channel.EMAIL, "siti@example.com")
        assert await count_logs(session) == 0


class TestWhatsAppRateLimit:
    """Tests for the per-contract WhatsApp window."""

    async def test_second_send_within_window(self, dispatcher, templates, loan, session, clock) -> None:
        installment_id = loan.installments[0].id
        first = await dispatcher.schedule(installment_id, templates[-3].id, Channel.WHATSAPP, "081234567890")
        assert first.status == NotificationStatus.SENT

        clock.advance(hours=23)  # next calendar day, still inside 24 h
        with pytest.raises(RateLimitError):
            await dispatcher.schedule(installment_id, templates[-3].id, Channel.WHATSAPP, "081234567890")
        assert await count_logs(session) == 1

    async def test_other_installment_same_contract(self, dispatcher, templates, loan) -> None:
        await dispatcher.schedule(loan.installments[0].id, templates[-3].id, Channel.WHATSAPP, "081234567890")

        with pytest.raises(RateLimitError):
            await dispatcher.schedule(loan.installments[1].id, templates[1].id, Channel.WHATSAPP, "081234567890")

    async def test_window_expires(self, dispatcher, templates, loan, clock) -> None:
        installment_id = loan.installments[0].id
        await dispatcher.schedule(installment_id, templates[-3].id, Channel.WHATSAPP, "081234567890")

        clock.advance(hours=25)
        log = await dispatcher.schedule(installment_id, templates[-3].id, Channel.WHATSAPP, "081234567890")
        assert log.status == NotificationStatus.SENT

    async def test_email_not_limited(self, dispatcher, templates, loan) -> None:
        await dispatcher.schedule(loan.installments[0].id, templates[-3].id, Channel.WHATSAPP, "081234567890")
        log = await dispatcher.schedule(loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com")
        assert log.status == NotificationStatus.SENT


class TestDeliveryFailures:
    """Tests for failed and timed-out sends and the retry cap."""

    @pytest.fixture
    def failing(self, failing_email_provider):
        return failing_email_provider

    @pytest.fixture
    def dispatcher(self, session, failing, whatsapp_provider, clock, settings) -> NotificationDispatcher:
        registry = ProviderRegistry({
            Channel.EMAIL: failing,
            Channel.WHATSAPP: whatsapp_provider,
        })
        return NotificationDispatcher(session, registry, clock, settings)

    async def test_failure_is_recorded(self, dispatcher, templates, loan) -> None:
        log = await dispatcher.schedule(loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com")

        assert log.status == NotificationStatus.FAILED
        assert log.attempts == 1
        assert log.error_message == "smtp down"
        assert log.sent_at is None

    async def test_retries_stop_at_cap(self, dispatcher, templates, loan, failing, settings) -> None:
        log = await dispatcher.schedule(loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com")

        for _ in range(5):
            await dispatcher.drain_pending()

        log = await dispatcher.get_log(log.id)
        assert log.status == NotificationStatus.FAILED
        assert log.attempts == settings.MAX_SEND_ATTEMPTS
        assert failing.calls == settings.MAX_SEND_ATTEMPTS
        assert await dispatcher.get_pending() == []

    async def test_send_on_exhausted_log_is_noop(self, dispatcher, templates, loan, failing, settings) -> None:
        log = await dispatcher.schedule(loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com")
        for _ in range(settings.MAX_SEND_ATTEMPTS):
            log = await dispatcher.send(log.id)

        again = await dispatcher.send(log.id)
        assert again.attempts == settings.MAX_SEND_ATTEMPTS
        assert failing.calls == settings.MAX_SEND_ATTEMPTS

    async def test_timeout_is_recorded(
        self, session, templates, loan, clock, settings, slow_email_provider, whatsapp_provider,
    ) -> None:
        registry = ProviderRegistry({
            Channel.EMAIL: slow_email_provider,
            Channel.WHATSAPP: whatsapp_provider,
        })
        dispatcher = NotificationDispatcher(session, registry, clock, settings)

        log = await dispatcher.schedule(loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com")

        assert log.status == NotificationStatus.FAILED
        assert "timed out" in log.error_message


class TestQueueAndTest:
    """Tests for the pending queue, lookups and test sends."""

    async def test_sent_log_is_not_resent(self, dispatcher, templates, loan, email_provider) -> None:
        log = await dispatcher.schedule(loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com")

        again = await dispatcher.send(log.id)

        assert again.attempts == 1
        assert len(email_provider.sent) == 1

    async def test_get_pending(self, dispatcher, templates, loan, clock) -> None:
        later = clock.now() + timedelta(minutes=5)
        log = await dispatcher.schedule(
            loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com", later,
        )

        assert await dispatcher.get_pending() == []
        assert [p.id for p in await dispatcher.get_pending(later)] == [log.id]

    async def test_get_missing_log(self, dispatcher) -> None:
        with pytest.raises(NotFoundError):
            await dispatcher.get_log(12345)

    async def test_send_test(self, dispatcher, whatsapp_provider, session) -> None:
        await dispatcher.send_test(Channel.WHATSAPP, "081234567890", "", "Tes koneksi")

        assert whatsapp_provider.sent == [("081234567890", "", "Tes koneksi")]
        assert await count_logs(session) == 0

    async def test_send_test_failure(self, session, clock, settings, failing_email_provider) -> None:
        registry = ProviderRegistry({Channel.EMAIL: failing_email_provider})
        dispatcher = NotificationDispatcher(session, registry, clock, settings)

        with pytest.raises(DeliveryError):
            await dispatcher.send_test(Channel.EMAIL, "siti@example.com", "Tes", "Tes")


class PausingProvider(NotificationProvider):
    """Records messages after a short pause, like a real network call."""

    def __init__(self, channel: Channel, delay: float = 0.05):
        self.channel = channel
        self.delay = delay
        self.sent = []

    async def send(self, recipient: str, subject: str, body: str) -> None:
        await asyncio.sleep(self.delay)
        self.sent.append((recipient, subject, body))


class TestConcurrentDrains:
    """A log is delivered by exactly one of several overlapping drains."""

    async def test_overlapping_drains_send_once(
        self, db_manager, dispatcher, templates, loan, clock, settings, whatsapp_provider,
    ) -> None:
        later = clock.now() + timedelta(minutes=1)
        log = await dispatcher.schedule(
            loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com", later,
        )
        pausing = PausingProvider(Channel.EMAIL)
        registry = ProviderRegistry({Channel.EMAIL: pausing, Channel.WHATSAPP: whatsapp_provider})
        clock.advance(minutes=2)

        async with db_manager.get_db() as first, db_manager.get_db() as second:
            results = await asyncio.gather(
                NotificationDispatcher(first, registry, clock, settings).drain_pending(),
                NotificationDispatcher(second, registry, clock, settings).drain_pending(),
            )

        assert len(pausing.sent) == 1
        assert sum(result.sent for result in results) >= 1
        log = await dispatcher.get_log(log.id)
        assert log.status == NotificationStatus.SENT
        assert log.attempts == 1

    async def test_in_flight_log_is_not_reclaimed(self, dispatcher, templates, loan, clock, session) -> None:
        later = clock.now() + timedelta(minutes=1)
        log = await dispatcher.schedule(
            loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com", later,
        )
        await session.execute(
            update(NotificationLog)
            .where(NotificationLog.id == log.id)
            .values(status=NotificationStatus.SENDING, attempts=1, last_attempt_at=clock.now())
        )
        await session.commit()
        clock.advance(minutes=1)

        assert await dispatcher.get_pending() == []
        assert (await dispatcher.send(log.id)).status == NotificationStatus.SENDING
        assert (await dispatcher.drain_pending()).processed == 0

    async def test_abandoned_claim_is_retried(
        self, dispatcher, templates, loan, clock, session, email_provider,
    ) -> None:
        later = clock.now() + timedelta(minutes=1)
        log = await dispatcher.schedule(
            loan.installments[0].id, templates[-7].id, Channel.EMAIL, "siti@example.com", later,
        )
        await session.execute(
            update(NotificationLog)
            .where(NotificationLog.id == log.id)
            .values(status=NotificationStatus.SENDING, attempts=1, last_attempt_at=later)
        )
        await session.commit()
        clock.advance(minutes=10)

        result = await dispatcher.drain_pending()

        assert (result.processed, result.sent) == (1, 1)
        log = await dispatcher.get_log(log.id)
        assert log.status == NotificationStatus.SENT
        assert log.attempts == 2
        assert len(email_provider.sent) == 1
