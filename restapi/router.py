"""Application configuration and router setup."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import fastapi
from fastapi.exceptions import RequestValidationError
from fastapi.middleware import cors
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse

from components.core import init_db
from components.core.clock import Clock
from components.core.config import Settings, get_settings
from components.core.database import DatabaseManager
from components.core.exceptions import (
    DeliveryError,
    DisbursementError,
    DuplicateNotificationError,
    InvalidStateError,
    KoperasiError,
    NotFoundError,
    RateLimitError,
    TemplateRenderError,
    ValidationError,
)
from components.core.logging import setup_logging
from components.core.security import FieldCipher, build_cipher
from components.notification.providers import ProviderRegistry
from components.scheduler.jobs import ReminderJobs
from components.scheduler.runner import Scheduler
from restapi.endpoints import health_check, loan, notification, scheduler

logger = logging.getLogger(__name__)

# Checked in order, so subclasses come before their parents
ERROR_STATUS_CODES = (
    (InvalidStateError, 409),
    (DuplicateNotificationError, 409),
    (ValidationError, 400),
    (NotFoundError, 404),
    (TemplateRenderError, 422),
    (RateLimitError, 429),
    (DeliveryError, 502),
    (DisbursementError, 500),
)


def status_code_for(exc: KoperasiError) -> int:
    for exc_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


def _error_response(status_code: int, message: str, data=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "data": data},
    )


@asynccontextmanager
async def lifespan(app: fastapi.FastAPI):
    settings: Settings = app.state.settings
    db_manager: DatabaseManager = app.state.db_manager

    if settings.AUTO_CREATE_TABLES:
        await db_manager.create_all()
    if settings.SCHEDULER_ENABLED:
        await app.state.scheduler.start()

    yield

    await app.state.scheduler.stop()
    await db_manager.dispose()


def create_app(
    settings: Optional[Settings] = None,
    db_manager: Optional[DatabaseManager] = None,
    clock: Optional[Clock] = None,
    providers: Optional[ProviderRegistry] = None,
    cipher: Optional[FieldCipher] = None,
) -> fastapi.FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    app = fastapi.FastAPI(
        title=settings.APP_NAME,
        description="Koperasi loan lifecycle and repayment reminder service",
        version="1.0.0",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )

    # Initialize database and app-scoped services
    init_db.init_db(app, db_manager or DatabaseManager(settings))
    app.state.settings = settings
    app.state.clock = clock or Clock.from_name(settings.TIMEZONE)
    app.state.providers = providers or ProviderRegistry.from_settings(settings)
    app.state.cipher = cipher or build_cipher(settings)
    app.state.scheduler = Scheduler(
        ReminderJobs(
            app.state.db_manager,
            app.state.providers,
            app.state.clock,
            settings,
            app.state.cipher,
        ),
        app.state.clock,
        settings,
    )

    # Add CORS middleware
    app.add_middleware(
        cors.CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(KoperasiError)
    async def koperasi_error_handler(request: fastapi.Request, exc: KoperasiError) -> JSONResponse:
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return _error_response(status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: fastapi.Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return _error_response(400, "invalid request", errors)

    # Include routers
    app.include_router(health_check.router)
    app.include_router(loan.router)
    app.include_router(notification.router)
    app.include_router(scheduler.router)

    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        openapi_schema = get_openapi(
            title=settings.APP_NAME,
            version="1.0.0",
            description="Koperasi loan lifecycle and repayment reminder service",
            routes=app.routes,
        )
        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app
