"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from components.core.clock import FixedClock
from components.core.config import Settings
from components.core.database import DatabaseManager
from components.core.exceptions import DeliveryError
from components.core.security import PlaintextCipher
from components.customer.models import Customer
from components.loan.models import LoanStatus
from components.loan.repository import LoanRepository
from components.notification.defaults import seed_default_templates
from components.notification.models import Channel, NotificationTemplate
from components.notification.providers import NotificationProvider, ProviderRegistry

JAKARTA = ZoneInfo("Asia/Jakarta")

# Loans created by the fixtures are disbursed at this moment, so the first
# installment is due on 2024-04-01 09:00 and the n-th one n months later.
DISBURSED_AT = datetime(2024, 3, 1, 9, 0)


class RecordingProvider(NotificationProvider):
    """Keeps every message instead of delivering it."""

    def __init__(self, channel: Channel):
        self.channel = channel
        self.sent = []

    async def send(self, recipient: str, subject: str, body: str) -> None:
        self.sent.append((recipient, subject, body))


class FailingProvider(NotificationProvider):
    """Always fails with a DeliveryError."""

    def __init__(self, channel: Channel, message: str = "provider unavailable"):
        self.channel = channel
        self.message = message
        self.calls = 0

    async def send(self, recipient: str, subject: str, body: str) -> None:
        self.calls += 1
        raise DeliveryError(self.message)


class SlowProvider(NotificationProvider):
    """Never answers within a short timeout."""

    def __init__(self, channel: Channel, delay: float = 5.0):
        self.channel = channel
        self.delay = delay

    async def send(self, recipient: str, subject: str, body: str) -> None:
        await asyncio.sleep(self.delay)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        DB_URL="sqlite+aiosqlite://",
        AUTO_CREATE_TABLES=False,
        SCHEDULER_ENABLED=False,
        TIMEZONE="Asia/Jakarta",
        SEND_TIMEOUT_SECONDS=0.2,
        SMTP_HOST="",
        SMTP_USERNAME="",
        WHATSAPP_ACCESS_TOKEN="",
        WHATSAPP_PHONE_NUMBER_ID="",
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(DISBURSED_AT, JAKARTA)


@pytest.fixture
def cipher() -> PlaintextCipher:
    return PlaintextCipher()


@pytest.fixture
async def db_manager(settings):
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    manager = DatabaseManager(settings, engine=engine)
    await manager.create_all()
    yield manager
    await manager.dispose()


@pytest.fixture
async def session(db_manager):
    async with db_manager.get_db() as session:
        yield session


@pytest.fixture
def email_provider() -> RecordingProvider:
    return RecordingProvider(Channel.EMAIL)


@pytest.fixture
def whatsapp_provider() -> RecordingProvider:
    return RecordingProvider(Channel.WHATSAPP)


@pytest.fixture
def failing_email_provider() -> FailingProvider:
    return FailingProvider(Channel.EMAIL, "smtp down")


@pytest.fixture
def slow_email_provider() -> SlowProvider:
    return SlowProvider(Channel.EMAIL)


@pytest.fixture
def providers(email_provider, whatsapp_provider) -> ProviderRegistry:
    return ProviderRegistry({
        Channel.EMAIL: email_provider,
        Channel.WHATSAPP: whatsapp_provider,
    })


@pytest.fixture
def loan_repo(session, clock) -> LoanRepository:
    return LoanRepository(session, clock)


@pytest.fixture
def make_customer(session, clock):
    """Factory for customers with plaintext contacts."""
    counter = {"n": 0}

    async def _make(name=None, email=None, phone="081234567890"):
        counter["n"] += 1
        customer = Customer(
            name=name or f"Anggota {counter['n']}",
            email=email if email is not None else f"anggota{counter['n']}@example.com",
            phone=phone,
            status="active",
            created_at=clock.now(),
        )
        session.add(customer)
        await session.commit()
        return customer

    return _make


@pytest.fixture
def make_active_loan(session, clock, make_customer):
    """Factory for loans taken through approval, disbursement and activation."""

    async def _make(customer=None, amount=12_000_000, interest_rate=12.0, term=12):
        customer = customer or await make_customer()
        repo = LoanRepository(session, clock)
        loan = await repo.create(customer.id, amount, interest_rate, term)
        await repo.change_status(loan.id, LoanStatus.APPROVED)
        await repo.disburse(loan.id)
        return await repo.change_status(loan.id, LoanStatus.ACTIVE)

    return _make


@pytest.fixture
async def templates(session, clock):
    """The six default templates, keyed by schedule offset."""
    await seed_default_templates(session, created_at=clock.now())
    result = await session.execute(select(NotificationTemplate))
    return {template.schedule_offset: template for template in result.scalars().all()}
