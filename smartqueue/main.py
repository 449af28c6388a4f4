# smartqueue/main.py
"""
FastAPI application: service lifecycle, error translation and request logging.
"""

import asyncio
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from smartqueue.config import Settings, settings
from smartqueue.core.errors import QueueError
from smartqueue.db.helpers import DatabaseError
from smartqueue.db.pool import db_pool
from smartqueue.db.schema import ensure_schema
from smartqueue.infrastructure.observability.logging import get_logger, log_request, setup_logging
from smartqueue.routes import health, parties, service_points, tokens
from smartqueue.services.container import QueueServices, build_services
from smartqueue.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)

ERROR_STATUS_CODES = {
    "not_found": 404,
    "invalid_state": 409,
    "capacity_exceeded": 409,
    "empty_queue": 409,
    "already_serving": 409,
    "point_unavailable": 409,
    "invalid_priority": 422,
    "contention": 503,
}

# Pending notifications get this long to flush on shutdown
SHUTDOWN_DRAIN_TIMEOUT_S = 5.0


def create_app(
    app_settings: Settings | None = None, services: QueueServices | None = None
) -> FastAPI:
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle application startup and shutdown with proper resource management."""
        logger.info(
            "Application starting",
            environment=app_settings.environment,
            storage_backend=app_settings.STORAGE_BACKEND,
            notification_sink=app_settings.NOTIFICATION_SINK,
        )

        startup_tasks = []

        try:
            if app_settings.STORAGE_BACKEND == "postgres":
                logger.info("Initializing database pool")
                await db_pool.initialize(app_settings.DATABASE_URL)
                startup_tasks.append("database_pool")
                await ensure_schema()

            if app_settings.NOTIFICATION_SINK == "redis":
                logger.info("Initializing Redis connection")
                await fast_redis.initialize()
                startup_tasks.append("redis")

            if getattr(app.state, "services", None) is None:
                app.state.services = build_services(app_settings)

            logger.info("All services initialized successfully", services=startup_tasks)

        except Exception as e:
            logger.error(
                "Failed to initialize services", error=str(e), completed_tasks=startup_tasks
            )

            if "redis" in startup_tasks:
                await fast_redis.close()
            if "database_pool" in startup_tasks:
                await db_pool.close()
            raise

        yield

        # Shutdown sequence (reverse order)
        logger.info("Application shutting down")

        dispatcher = app.state.services.dispatcher
        try:
            await asyncio.wait_for(dispatcher.drain(), timeout=SHUTDOWN_DRAIN_TIMEOUT_S)
        except TimeoutError:
            logger.warning("Notifier did not drain before shutdown", pending=dispatcher.pending)
        await dispatcher.close()

        if "redis" in startup_tasks:
            await fast_redis.close()
        if "database_pool" in startup_tasks:
            await db_pool.close()

        logger.info("All services closed successfully")

    app = FastAPI(
        title="Smart Queue",
        description="Token-based service queues with priority ordering and position updates",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Include routers
    app.include_router(health.router)
    app.include_router(parties.router)
    app.include_router(tokens.router)
    app.include_router(service_points.router)

    @app.exception_handler(QueueError)
    async def handle_queue_error(request: Request, exc: QueueError):
        status_code = ERROR_STATUS_CODES.get(exc.kind, 400)
        return JSONResponse(
            status_code=status_code, content={"error": exc.kind, "detail": exc.message}
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("Database failure", operation=exc.operation, error=str(exc))
        return JSONResponse(
            status_code=503, content={"error": "database_error", "detail": "Database unavailable"}
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000
        log_request(request.method, request.url.path, response.status_code, round(process_time, 2))
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
