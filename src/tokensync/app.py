"""FastAPI application factory."""

import asyncio
from collections.abc import Callable, Coroutine
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from tokensync.api.routes import contracts, sync
from tokensync.core.config import Settings, configure_logging
from tokensync.core.database import create_schema, setup_db_session
from tokensync.services.container import build_services
from tokensync.uow import create_uow_factory
from tokensync.workers.integrity_worker import run_integrity_worker

logger = structlog.get_logger()


def create_resilient_worker(
    coro_factory: Callable[[], Coroutine[Any, Any, None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    running: set[asyncio.Task],
):
    """Create a worker with automatic restart on failure.

    Args:
        coro_factory: Zero-argument callable returning the worker coroutine
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown
        running: Set the live task is kept in (replaced on every restart)

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """
    RESTART_DELAY = 1  # Fixed 1 second delay between restarts

    def on_worker_done(task: asyncio.Task):
        running.discard(task)

        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Workers are infinite loops; a clean return is unexpected
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_factory())
            new_task.add_done_callback(on_worker_done)
            running.add(new_task)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_factory())
    task.add_done_callback(on_worker_done)
    running.add(task)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: load settings, configure logging, create the database session
      factory (and SQLite schema), build services, start workers
    - Shutdown: stop workers, close the RPC request queue and the engine
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    if settings.database_url.startswith("sqlite"):
        # PostgreSQL deployments run `alembic upgrade head` instead
        await create_schema(session_factory)

    uow_factory = create_uow_factory(session_factory, batch_size=settings.db_batch_size)
    services = build_services(settings, uow_factory)

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.scheduler = services.scheduler
    app.state.registry = services.registry
    app.state.gap_detector = services.gap_detector
    app.state.validator = services.validator

    shutdown_event = asyncio.Event()
    worker_tasks: set[asyncio.Task] = set()

    create_resilient_worker(services.scheduler.run, "sync_scheduler", shutdown_event, worker_tasks)
    if settings.integrity_check_interval_seconds > 0:
        create_resilient_worker(
            lambda: run_integrity_worker(session_factory, settings),
            "integrity",
            shutdown_event,
            worker_tasks,
        )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    running = list(worker_tasks)
    for task in running:
        task.cancel()
    await asyncio.gather(*running, return_exceptions=True)

    await services.close()
    await session_factory.kw["bind"].dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="tokensync",
        description="ERC-721/ERC-1155 transfer indexer",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync.router)
    app.include_router(contracts.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check with scheduler state and database connectivity.

        Returns:
            200: {"status": "healthy", "queueLength": n, "isProcessing": bool}
            503: {"status": "unhealthy", "error": {...}} if the database is unreachable
        """
        scheduler = app.state.scheduler
        try:
            async with await app.state.uow_factory() as uow:
                result = await uow.session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {
                "status": "healthy",
                "queueLength": scheduler.queue_length,
                "isProcessing": scheduler.is_processing,
            }

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "queueLength": scheduler.queue_length,
                "isProcessing": scheduler.is_processing,
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
