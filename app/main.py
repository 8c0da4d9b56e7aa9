# app/main.py
"""
Notification engine application with database pool and scheduler lifecycle
management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.jobs.trigger_scheduler import trigger_scheduler
from app.middleware.cors import setup_cors
from app.routes import health, realtime, scheduler, sms
from app.services.sms.delivery_channel import delivery_channel

# Setup logging before creating the app
setup_logging(log_level="DEBUG" if settings.debug else "INFO")
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    # Startup sequence
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        # Initialize database pool first
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        # Scheduler needs the pool for rules and snapshots
        if settings.SCHEDULER_ENABLED:
            trigger_scheduler.start()
            startup_tasks.append("trigger_scheduler")
        else:
            logger.info("Trigger scheduler disabled by configuration")

        logger.info(
            "All services initialized successfully",
            services=startup_tasks,
            sms=delivery_channel.provider_info(),
        )

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "trigger_scheduler" in startup_tasks:
            try:
                await trigger_scheduler.stop()
            except Exception as cleanup_error:
                logger.error("Error stopping trigger scheduler", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    # Stop ticking before closing what the ticks use
    try:
        await trigger_scheduler.stop()
    except Exception as e:
        logger.error("Error stopping trigger scheduler", error=str(e))
        shutdown_errors.append(f"Scheduler: {e}")

    try:
        await delivery_channel.close()
    except Exception as e:
        logger.error("Error closing SMS providers", error=str(e))
        shutdown_errors.append(f"SMS: {e}")

    # Close database pool last (may have active connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Academy Notification Engine",
    description="Trigger scheduling, audience resolution, SMS delivery and realtime fanout",
    version="0.1.0",
    lifespan=lifespan,
)

setup_cors(app)

# Include routers
app.include_router(health.router)
app.include_router(scheduler.router)
app.include_router(sms.router)
app.include_router(realtime.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
