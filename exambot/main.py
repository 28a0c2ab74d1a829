"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
import logging

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from exambot.api.deps import build_services
from exambot.api.webhook import router as webhook_router
from exambot.core.cache import close_redis, create_redis
from exambot.core.config import get_settings
from exambot.core.database import build_engine, build_sessionmaker, close_db, init_db
from exambot.services.session_store import MemorySessionStore, RedisSessionStore
from exambot.transport.telegram import TelegramError, TelegramOutbox

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Sentry if configured
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=[FastApiIntegration(transaction_style="endpoint")],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the service graph, start the timeout sweeper, and tear both down on exit.
    """
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}...")

    engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, pool_size=settings.DATABASE_POOL_SIZE)
    await init_db(engine)

    redis_client = None
    if settings.SESSION_BACKEND == "redis":
        redis_client = create_redis(settings.REDIS_URL, settings.REDIS_SOCKET_TIMEOUT)
        store = RedisSessionStore(redis_client, prefix=settings.SESSION_PREFIX, ttl=settings.SESSION_TTL)
        logger.info("Redis session store initialized")
    else:
        store = MemorySessionStore()
        logger.warning("Using in-process session store; sessions will not survive a restart")

    token = settings.TELEGRAM_BOT_TOKEN.get_secret_value()
    http_client = httpx.AsyncClient(timeout=settings.TELEGRAM_TIMEOUT)
    outbox = TelegramOutbox(token, http_client, base_url=settings.TELEGRAM_API_URL)

    services = build_services(settings, store, build_sessionmaker(engine), outbox)
    app.state.services = services

    if settings.WEBHOOK_URL and token:
        try:
            await outbox.set_webhook(f"{settings.WEBHOOK_URL.rstrip('/')}/webhook/{token}")
        except TelegramError as exc:
            logger.error(f"Could not set webhook: {exc}")

    services.sweeper.start()

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    await services.sweeper.stop()
    await http_client.aclose()
    if redis_client is not None:
        await close_redis(redis_client)
    await close_db(engine)
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url=None if settings.is_production() else "/docs",
    redoc_url=None,
    lifespan=lifespan,
)

app.include_router(webhook_router, tags=["telegram"])


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": "An internal error occurred" if settings.is_production() else str(exc),
                "type": "internal_error",
            }
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("exambot.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())
