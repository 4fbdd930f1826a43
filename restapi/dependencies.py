"""FastAPI dependencies that hand out app-scoped services."""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from components.core.clock import Clock
from components.core.config import Settings
from components.core.init_db import get_db
from components.loan.repository import LoanRepository
from components.notification.dispatcher import NotificationDispatcher
from components.scheduler.runner import Scheduler


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


def get_loan_repository(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> LoanRepository:
    return LoanRepository(db, clock)


def get_dispatcher(
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_app_settings),
) -> NotificationDispatcher:
    return NotificationDispatcher(db, request.app.state.providers, clock, settings)
