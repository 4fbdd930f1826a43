"""Script to seed reference and demo data into the database."""

import asyncio
import logging

from sqlalchemy import select

from components.core.clock import Clock
from components.core.config import get_settings
from components.core.database import DatabaseManager
from components.core.logging import setup_logging
from components.core.security import build_cipher
from components.customer.models import Customer
from components.loan.models import LoanStatus
from components.loan.repository import LoanRepository
from components.notification.defaults import seed_default_templates

logger = logging.getLogger("scripts.seed_data")

DEMO_CUSTOMER = {
    "name": "Budi Santoso",
    "email": "budi.santoso@example.com",
    "phone": "081234567890",
}


async def seed_data():
    """Create tables, the default templates and one customer with an active loan."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    clock = Clock.from_name(settings.TIMEZONE)
    cipher = build_cipher(settings)
    db_manager = DatabaseManager(settings)

    try:
        await db_manager.create_all()

        async with db_manager.get_db() as db:
            added = await seed_default_templates(db, created_at=clock.now())
            logger.info("Seeded %d notification templates", added)

            # Ciphertext is randomized, so the demo customer is found by name
            result = await db.execute(select(Customer).where(Customer.name == DEMO_CUSTOMER["name"]))
            if result.scalar_one_or_none() is not None:
                logger.info("Demo customer already present, skipping demo loan")
                return

            customer = Customer(
                name=DEMO_CUSTOMER["name"],
                email=cipher.encrypt(DEMO_CUSTOMER["email"]),
                phone=cipher.encrypt(DEMO_CUSTOMER["phone"]),
                status="active",
                created_at=clock.now(),
            )
            db.add(customer)
            await db.commit()

            repo = LoanRepository(db, clock)
            loan = await repo.create(customer.id, amount=12_000_000, interest_rate=12.0, term=12)
            await repo.change_status(loan.id, LoanStatus.APPROVED)
            await repo.disburse(loan.id)
            loan = await repo.change_status(loan.id, LoanStatus.ACTIVE)
            logger.info(
                "Seeded customer %s with active loan %s (%d x %d)",
                customer.name, loan.contract_number, loan.term, loan.monthly_payment,
            )
    finally:
        await db_manager.dispose()


if __name__ == "__main__":
    asyncio.run(seed_data())
