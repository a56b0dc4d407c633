"""
FastAPI application factory and configuration.

This module creates the FastAPI application instance, wires the domain
services onto app.state and manages the store lifecycle.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from psycopg_pool import ConnectionPool

from trustplane.adapters.notify.console import ConsoleNotificationSink
from trustplane.adapters.ratelimit.memory import InMemoryRateLimitStore
from trustplane.adapters.repository.memory import InMemoryTrustStore
from trustplane.adapters.repository.postgres import PostgresTrustStore, run_migrations
from trustplane.api.v1 import router as v1_router
from trustplane.config.settings import Settings, get_settings
from trustplane.domain.eligibility import EligibilityService
from trustplane.domain.ports import TrustStore
from trustplane.domain.quota import QuotaEngine
from trustplane.domain.rate_limit import RateLimiter
from trustplane.domain.verification import VerificationLedger

logger = logging.getLogger(__name__)

# OpenAPI tags for documentation grouping
tags_metadata = [
    {
        "name": "v1",
        "description": "Trust & Eligibility API v1 - Verification, quotas and posting eligibility",
    },
]


def wire_services(app: FastAPI, store: TrustStore, settings: Settings) -> None:
    """Build the domain services over ``store`` and expose them on app.state."""
    notifier = ConsoleNotificationSink()
    ledger = VerificationLedger(store=store, notifier=notifier)
    quota = QuotaEngine(store=store, notifier=notifier, tier_limits=settings.tier_limits())

    app.state.store = store
    app.state.ledger = ledger
    app.state.quota = quota
    app.state.eligibility = EligibilityService(ledger=ledger, quota=quota)
    app.state.rate_limiter = RateLimiter(store=InMemoryRateLimitStore())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan context manager.

    Manages application startup and shutdown:
    - Creates database connection pool on startup (postgres backend)
    - Runs migrations on startup
    - Wires domain services
    - Closes connection pool on shutdown
    """
    settings = get_settings()
    pool = None

    logger.info("Starting application...")

    if settings.storage_backend == "postgres":
        logger.info("Connecting to database...")
        pool = ConnectionPool(
            conninfo=settings.database_url,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
        )
        logger.info("Running database migrations...")
        run_migrations(pool)
        store = PostgresTrustStore(pool, statement_timeout_ms=settings.statement_timeout_ms)
    else:
        logger.info("Using in-memory store")
        store = InMemoryTrustStore()

    app.state.pool = pool
    wire_services(app, store, settings)

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    if pool is not None:
        pool.close()
        logger.info("Database connection pool closed")


app = FastAPI(
    title="trustplane",
    description="Trust & Eligibility Control Plane - verification ledger, quota engine and rate limits",
    version="0.1.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

# Include v1 API routes
app.include_router(v1_router, prefix="/v1")


@app.get("/health")
def health_check() -> dict[str, str]:
    """
    Health check endpoint with store validation.

    Returns 200 OK if application and store are healthy.
    Raises exception if the store cannot open a transaction.
    """
    with app.state.store.transaction():
        pass

    return {"status": "healthy"}
