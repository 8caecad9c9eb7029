import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import models
from .database import engine
from .errors import BookingError, InvariantViolation
from .routers import booking_router, webhook_router
from .outbox_poller import run_outbox_poller
from .booking_scheduler import run_booking_scheduler

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Setup logger
logger = logging.getLogger("booking_service")

# Create database tables on startup
models.Base.metadata.create_all(bind=engine)


async def _stop(task: asyncio.Task, name: str):
    task.cancel()
    # Await cancellation to allow for graceful shutdown
    try:
        await task
    except asyncio.CancelledError:
        logger.info(f"{name} task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during {name} shutdown: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting background tasks...")

    redis_client = None
    if settings.RATE_LIMIT_ENABLED:
        try:
            redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
            await FastAPILimiter.init(redis_client)
            logger.info("FastAPILimiter initialized with Redis.")
        except Exception as e:
            logger.error(f"Failed to initialize FastAPILimiter: {e}")

    # Relays outbox events (notifications, payouts, refunds) to Kafka
    poller_task = asyncio.create_task(run_outbox_poller())

    # Reaps expired holds and completes finished stays
    scheduler_task = asyncio.create_task(run_booking_scheduler())

    yield  # The application is now running

    logger.info("Shutting down background tasks...")
    if redis_client is not None:
        await redis_client.aclose()

    await _stop(poller_task, "Outbox poller")
    await _stop(scheduler_task, "Booking scheduler")


# Create the FastAPI app instance, passing the lifespan manager
app = FastAPI(
    title="Reservation Service API",
    description="Reserves property dates against payment: holds, confirmation, expiry.",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if isinstance(exc, InvariantViolation):
        logger.critical(f"Invariant violation on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(booking_router.router)
app.include_router(webhook_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Reservation Service"}
