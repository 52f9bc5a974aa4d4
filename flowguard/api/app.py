"""
FastAPI application factory.

Creates and configures the flowguard API application.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flowguard import __version__
from flowguard.api.routes import health_router, router
from flowguard.config import IdempotencyBackend, Settings, get_settings
from flowguard.core.validator import GraphValidator
from flowguard.mapping.engine import DataMappingEngine
from flowguard.retry.idempotency import IdempotencyStore, InMemoryIdempotencyStore
from flowguard.retry.manager import RetryManager
from flowguard.storage.redis.cache import RedisIdempotencyStore
from flowguard.storage.redis.connection import RedisConnection

logger = logging.getLogger(__name__)


def init_services(
    app: FastAPI,
    settings: Optional[Settings] = None,
    store: Optional[IdempotencyStore] = None,
    retry_manager: Optional[RetryManager] = None,
    mapping_engine: Optional[DataMappingEngine] = None,
) -> None:
    """Attach the validator, mapping engine and retry manager to app state."""
    settings = settings or get_settings()

    app.state.settings = settings
    app.state.validator = GraphValidator(settings.validator)
    app.state.mapping_engine = mapping_engine or DataMappingEngine()
    app.state.retry_manager = retry_manager or RetryManager(
        store=store or InMemoryIdempotencyStore(),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings = get_settings()

    # Startup
    logger.info("Starting flowguard...")

    store: IdempotencyStore
    redis_connection: Optional[RedisConnection] = None
    if settings.idempotency.backend == IdempotencyBackend.REDIS:
        redis_connection = RedisConnection(settings.redis)
        await redis_connection.init()
        store = RedisIdempotencyStore(redis_connection.client, settings.redis.key_prefix)
        logger.info("Redis connection established")
    else:
        store = InMemoryIdempotencyStore()

    app.state.redis_connection = redis_connection
    init_services(app, settings=settings, store=store)

    retry_manager: RetryManager = app.state.retry_manager
    await retry_manager.start()

    logger.info(
        f"flowguard started - Environment: {settings.environment.value}, "
        f"idempotency backend: {settings.idempotency.backend.value}"
    )

    yield

    # Shutdown
    logger.info("Shutting down flowguard...")

    await retry_manager.stop()

    if redis_connection is not None:
        await redis_connection.close()

    logger.info("flowguard shutdown complete")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        description="Workflow graph validation, data mapping and retry management",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(router)
    app.include_router(health_router)

    return app


# Application instance for ASGI servers
app = create_app()
