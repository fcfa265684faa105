"""FastAPI application entry point for the meetup escrow service.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, build the service graph,
       start the expiration sweep.
    2. Running: Serve the REST API at /api/v1/*.
    3. Shutdown: Stop the sweep, close database and Redis connections.

Run with:
    uvicorn meetup_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

from fastapi import FastAPI

from meetup_escrow import __version__
from meetup_escrow.config import get_settings
from meetup_escrow.domain.reputation import ReputationAdjustmentEngine
from meetup_escrow.logging_config import get_logger, setup_logging
from meetup_escrow.services.notification_service import (
    LoggingNotificationDispatcher,
    NotificationService,
    RedisNotificationDispatcher,
)
from meetup_escrow.services.payment_service import PaymentService, SimulatedPaymentGateway
from meetup_escrow.services.reputation_service import ReputationService, build_trust_policy
from meetup_escrow.services.sweep_service import ExpirationSweeper
from meetup_escrow.services.transaction_service import TransactionService, utc_now

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from meetup_escrow.config import Settings
    from meetup_escrow.domain.collaborators import (
        NotificationDispatcher,
        PaymentGateway,
        PersistenceStore,
    )


def build_services(
    store: PersistenceStore,
    settings: Settings,
    gateway: PaymentGateway | None = None,
    dispatcher: NotificationDispatcher | None = None,
    clock=utc_now,
) -> tuple[TransactionService, ExpirationSweeper]:
    """Wire the service graph around a persistence store."""
    payments = PaymentService.from_settings(gateway or SimulatedPaymentGateway(), settings)
    notifications = NotificationService(
        dispatcher or LoggingNotificationDispatcher(), settings.notification_timeout_seconds
    )
    reputation = ReputationService(
        store, ReputationAdjustmentEngine(build_trust_policy(settings))
    )
    transactions = TransactionService(
        store, payments, notifications, reputation, settings=settings, clock=clock
    )
    sweeper = ExpirationSweeper(store, transactions, settings, clock)
    return transactions, sweeper


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from meetup_escrow.infrastructure.database.engine import close_db, get_store, init_db

    await init_db()

    # 3. Initialize Redis (optional: notifications fall back to the log)
    from meetup_escrow.infrastructure.redis_client import close_redis, init_redis

    dispatcher: NotificationDispatcher | None = None
    try:
        await init_redis()
        dispatcher = RedisNotificationDispatcher(settings.notification_channel)
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    # 4. Service graph
    if settings.simulate_payments:
        gateway = SimulatedPaymentGateway()
    else:
        raise RuntimeError("No live payment gateway configured; set SIMULATE_PAYMENTS=true")
    transactions, sweeper = build_services(get_store(), settings, gateway, dispatcher)
    app.state.transaction_service = transactions

    # 5. Expiration sweep
    stop = asyncio.Event()
    sweep_task = None
    if settings.sweep_enabled:
        sweep_task = asyncio.create_task(sweeper.run_periodic(stop))

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    stop.set()
    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Meetup Escrow",
        description=(
            "Escrow, cancellation timing and reputation for in-person "
            "marketplace meetups."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from meetup_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from meetup_escrow.api.routes.health import router as health_router
    from meetup_escrow.api.routes.transactions import router as transactions_router
    from meetup_escrow.api.routes.users import router as users_router

    app.include_router(health_router)
    app.include_router(transactions_router)
    app.include_router(users_router)

    return app


# The app instance used by Uvicorn
app = create_app()
