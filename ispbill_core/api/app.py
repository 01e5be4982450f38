"""
FastAPI Application Module

This module provides the main FastAPI application setup with the billing
routes, exception handlers and engine lifecycle.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..billing.base import BillingError, utcnow
from ..billing.boundary import (
    CommandChannel,
    HttpCommandChannel,
    HttpNotificationSender,
    NotificationSender,
)
from ..billing.engine import BillingEngine, BillingEngineConfig
from ..config import Settings, get_settings
from ..core.logging import configure_logging
from ..database.base import close_database, get_database, init_database
from ..database.ledger import SQLAlchemyLedgerStore
from ..database.outbox import OutboxCommandChannel, OutboxNotificationSender
from .base import APIException, ValidationError, from_billing_error, generate_request_id
from .routes import billing_router


logger = logging.getLogger(__name__)


# =============================================================================
# Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """Application configuration."""

    # API settings
    title: str = "ISP Billing API"
    description: str = "Billing cycle engine for ISP subscriber accounts"
    version: str = "1.0.0"
    api_prefix: str = "/api"

    # Server settings
    debug: bool = False
    docs_enabled: bool = True

    # Database
    database_url: str = "sqlite+aiosqlite:///./ispbill.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10

    cors_origins: list = ["http://localhost:3000"]

    # Logging
    service_name: str = "ispbill-billing"
    log_level: str = "info"
    log_format: str = "json"

    # Billing engine
    billing_timezone: str = "UTC"
    monthly_cron: str = "0 0 1 * *"
    hourly_cron: str = "0 * * * *"
    scheduler_enabled: bool = True
    scheduler_startup_delay_seconds: float = 60.0
    batch_concurrency: int = 16
    boundary_timeout_seconds: float = 5.0
    notification_threshold: Decimal = Decimal("100")
    max_hourly_catchup_hours: int = 24
    command_gateway_url: Optional[str] = None
    notification_gateway_url: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "AppConfig":
        return cls(
            debug=settings.debug,
            api_prefix=settings.api_prefix,
            database_url=settings.database_url,
            service_name=settings.service_name,
            log_level=settings.log_level,
            log_format=settings.log_format,
            billing_timezone=settings.billing_timezone,
            monthly_cron=settings.monthly_cron,
            hourly_cron=settings.hourly_cron,
            scheduler_enabled=settings.scheduler_enabled,
            scheduler_startup_delay_seconds=settings.scheduler_startup_delay_seconds,
            batch_concurrency=settings.batch_concurrency,
            boundary_timeout_seconds=settings.boundary_timeout_seconds,
            notification_threshold=settings.notification_threshold,
            max_hourly_catchup_hours=settings.max_hourly_catchup_hours,
            command_gateway_url=settings.command_gateway_url,
            notification_gateway_url=settings.notification_gateway_url,
        )

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load configuration from environment variables."""
        return cls.from_settings(get_settings())

    def engine_config(self) -> BillingEngineConfig:
        return BillingEngineConfig(
            billing_timezone=self.billing_timezone,
            monthly_cron=self.monthly_cron,
            hourly_cron=self.hourly_cron,
            scheduler_enabled=self.scheduler_enabled,
            scheduler_startup_delay_seconds=self.scheduler_startup_delay_seconds,
            batch_concurrency=self.batch_concurrency,
            notification_threshold=self.notification_threshold,
            max_hourly_catchup_hours=self.max_hourly_catchup_hours,
            boundary_timeout_seconds=self.boundary_timeout_seconds,
            command_gateway_url=self.command_gateway_url,
            notification_gateway_url=self.notification_gateway_url,
        )


# =============================================================================
# Health Check Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    timestamp: datetime
    checks: Dict[str, Any] = {}


# =============================================================================
# Exception Handlers
# =============================================================================


def _error_response(request: Request, exc: APIException) -> JSONResponse:
    request_id = getattr(request.state, "request_id", generate_request_id())
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(request_id))


async def api_exception_handler(request: Request, exc: APIException):
    """Handle API exceptions."""
    return _error_response(request, exc)


async def billing_exception_handler(request: Request, exc: BillingError):
    """Handle billing errors raised by the engine."""
    api_exc = from_billing_error(exc)
    if api_exc.status_code >= 500:
        logger.error(f"Billing request failed: {exc.message}")
    return _error_response(request, api_exc)


async def value_error_handler(request: Request, exc: ValueError):
    """Handle invalid arguments rejected by the engine."""
    return _error_response(request, ValidationError(str(exc)))


# =============================================================================
# Engine Wiring
# =============================================================================


def build_engine(config: AppConfig) -> BillingEngine:
    """Create the engine backed by the global database manager."""
    db = get_database()

    sender: NotificationSender
    channel: CommandChannel
    if config.notification_gateway_url:
        sender = HttpNotificationSender(
            config.notification_gateway_url,
            timeout=config.boundary_timeout_seconds,
        )
    else:
        sender = OutboxNotificationSender(db)
    if config.command_gateway_url:
        channel = HttpCommandChannel(
            config.command_gateway_url,
            timeout=config.boundary_timeout_seconds,
        )
    else:
        channel = OutboxCommandChannel(db)

    return BillingEngine(
        config.engine_config(),
        store=SQLAlchemyLedgerStore(db),
        notification_sender=sender,
        command_channel=channel,
    )


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    config: Optional[AppConfig] = None,
    engine: Optional[BillingEngine] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Application configuration
        engine: Pre-built billing engine; when given, the database is not
            initialized by the lifespan

    Returns:
        Configured FastAPI application
    """
    config = config or AppConfig.from_env()

    # Lifespan context manager
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        configure_logging(config.log_level, config.log_format, config.service_name)
        logger.info("Starting billing API...")

        owns_database = engine is None
        if owns_database:
            logger.info("Initializing database connection...")
            db = init_database(
                database_url=config.database_url,
                pool_size=config.database_pool_size,
                max_overflow=config.database_max_overflow,
                echo=config.debug,
            )

            # Create tables if they don't exist (for development)
            if config.debug or "sqlite" in config.database_url:
                logger.info("Creating database tables...")
                await db.create_all()

            if await db.health_check():
                logger.info("Database connection established successfully")
            else:
                logger.error("Database connection failed!")

            app.state.engine = build_engine(config)

        await app.state.engine.start()

        yield

        # Shutdown
        logger.info("Shutting down billing API...")
        await app.state.engine.stop()
        if owns_database:
            await close_database()
            logger.info("Database connection closed")

    # Create app
    app = FastAPI(
        title=config.title,
        description=config.description,
        version=config.version,
        docs_url="/docs" if config.docs_enabled else None,
        redoc_url="/redoc" if config.docs_enabled else None,
        openapi_url="/openapi.json" if config.docs_enabled else None,
        lifespan=lifespan,
    )

    # Store config
    app.state.config = config
    if engine is not None:
        app.state.engine = engine

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    app.add_exception_handler(APIException, api_exception_handler)
    app.add_exception_handler(BillingError, billing_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    # ==========================================================================
    # Routes
    # ==========================================================================

    # Health check (no prefix)
    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        try:
            db_healthy: Optional[bool] = await get_database().health_check()
        except RuntimeError:
            # No database manager, engine runs on an injected store
            db_healthy = None

        engine_state = app.state.engine.get_scheduler_status() if hasattr(app.state, "engine") else None

        return HealthResponse(
            status="degraded" if db_healthy is False else "healthy",
            version=config.version,
            timestamp=utcnow(),
            checks={
                "api": "ok",
                "database": {True: "ok", False: "error", None: "not_configured"}[db_healthy],
                "scheduler": "running" if engine_state and engine_state["isRunning"] else "stopped",
            },
        )

    app.include_router(billing_router, prefix=config.api_prefix)

    return app


# =============================================================================
# Entry Point
# =============================================================================


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    reload: bool = False,
):
    """Run the API server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "ispbill_core.api.app:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    run_server(reload=True)
