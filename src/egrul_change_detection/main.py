"""egrul-change-detection service entry point.

Initializes the FastAPI application with:
- Change database for snapshots and change event history
- Registry database as the source of current entity state
- Kafka publisher for persisted change events
- ChangeDetectionService wired from the adapters above
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI

from egrul_change_detection.adapters.database import (
    close_db,
    create_schema,
    get_registry_session_factory,
    get_session_factory,
    init_db,
    init_registry_db,
)
from egrul_change_detection.adapters.kafka import ChangeEventPublisher
from egrul_change_detection.adapters.registry import SqlEntitySource
from egrul_change_detection.adapters.repositories import SqlChangeRepository, SqlSnapshotStore
from egrul_change_detection.api.errors import register_exception_handlers
from egrul_change_detection.api.router import router
from egrul_change_detection.core.services import ChangeDetectionService
from egrul_change_detection.observability import configure_logging, get_logger
from egrul_change_detection.settings import Settings

logger = get_logger(__name__)

settings = Settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Initializes both databases, the Kafka publisher and the detection
    service on startup. Closes all connections on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    configure_logging(settings.log_level, settings.log_format)

    # Startup: change database
    logger.info("Initializing change database", service=settings.service_name)
    await init_db(
        database_url=settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
    )
    await create_schema()

    # Startup: registry database (read only)
    await init_registry_db(
        registry_database_url=settings.registry_database_url,
        pool_size=settings.registry_pool_size,
    )

    # Startup: Kafka publisher
    publisher: ChangeEventPublisher | None = None
    if settings.kafka_enabled:
        logger.info("Initializing Kafka publisher", bootstrap_servers=settings.kafka_bootstrap_servers)
        publisher = ChangeEventPublisher(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            company_topic=settings.kafka_company_changes_topic,
            entrepreneur_topic=settings.kafka_entrepreneur_changes_topic,
            delivery_timeout=settings.kafka_delivery_timeout_seconds,
        )
        await publisher.start()
    else:
        logger.warning("Kafka publishing disabled, persisted events will not be published")

    session_factory = get_session_factory()
    app.state.detection_service = ChangeDetectionService(
        source=SqlEntitySource(get_registry_session_factory()),
        snapshots=SqlSnapshotStore(session_factory),
        persistence=SqlChangeRepository(session_factory),
        publisher=publisher,
        settings=settings,
    )
    app.state.settings = settings

    logger.info("Change detection service startup complete", port=settings.port)

    yield

    # Shutdown
    logger.info("Shutting down change detection service")
    if publisher is not None:
        await publisher.stop()
    await close_db()
    logger.info("Change detection service shutdown complete")


app = FastAPI(title="egrul-change-detection", version="0.1.0", lifespan=lifespan)
register_exception_handlers(app)
app.include_router(router, prefix="/api/v1")


@app.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe."""
    return {
        "status": "ok",
        "service": settings.service_name,
        "time": datetime.now(UTC).isoformat(),
    }
