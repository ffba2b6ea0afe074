import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from . import models
from .database import engine
from .facade import build_facades
from .routers import booking_router
from .outbox_poller import run_outbox_poller

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

# Setup logger
logger = logging.getLogger("allocation_service")

# Create database tables on startup
models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting allocation service...")

    redis_client = None
    if settings.RATE_LIMIT_ENABLED:
        try:
            redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
            await FastAPILimiter.init(redis_client)
            logger.info("FastAPILimiter initialized with Redis.")
        except Exception as e:
            logger.error(f"Failed to initialize FastAPILimiter: {e}")

    # Start the outbox poller as a background task
    poller_task = None
    if settings.OUTBOX_POLLER_ENABLED:
        poller_task = asyncio.create_task(run_outbox_poller())

    yield  # The application is now running

    # --- Code to run on shutdown ---
    logger.info("Shutting down background tasks...")

    if redis_client is not None:
        await redis_client.close()

    if poller_task is not None:
        poller_task.cancel()
        # Await cancellation to allow for graceful shutdown
        try:
            await poller_task
        except asyncio.CancelledError:
            logger.info("Outbox poller task successfully cancelled.")
        except Exception as e:
            logger.error(f"Error during outbox poller shutdown: {e}")


# Create the FastAPI app instance, passing the lifespan manager
app = FastAPI(
    title="Restaurant Allocation Service API",
    description="Books tables, banquet halls and staff shifts without double-booking.",
    version="1.0.0",
    lifespan=lifespan
)

# One façade per resource kind for the whole process
app.state.facades = build_facades(settings)

app.include_router(booking_router.table_router)
app.include_router(booking_router.hall_router)
app.include_router(booking_router.staff_router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Restaurant Allocation Service"}
