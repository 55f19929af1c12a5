"""
FastAPI application entry point for the ServiceBell notification backend.

This module initializes the FastAPI application with:
- Application state (ChangeFeed, push gateway, DispatchScheduler)
- CORS middleware for the staff web app
- Rate limiting (slowapi)
- Exception handlers for consistent error responses
- Logging configuration

Environment Variables:
    SERVICEBELL_DB_URL: Database URL (default: sqlite:///./servicebell.db)
    SERVICEBELL_ENV: Environment (production/development, default: development)
    SERVICEBELL_LOG_LEVEL: Log level (DEBUG/INFO/WARNING/ERROR/CRITICAL, default: INFO)
    JWT_SECRET_KEY: Shared secret for verifying access tokens
    VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY: Web Push key pair
    SERVICEBELL_CRON_SECRET: Bearer secret for the scheduler endpoints
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from backend.src.config.settings import get_settings
from backend.src.db.database import DATABASE_URL, dispose_engine, init_db
from backend.src.services.dispatch_scheduler import DispatchScheduler, make_batch_runner
from backend.src.services.push_gateway import WebPushGateway
from backend.src.utils.change_feed import ChangeFeed
from backend.src.utils.logging_config import get_logger, init_logging
from backend.src.utils.rate_limit import limiter


APP_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Startup: Create the change feed, the push gateway and the dispatch scheduler
    - Shutdown: Stop the scheduler and release database connections

    Args:
        app: FastAPI application instance

    Yields:
        Control to the application
    """
    # Startup
    logger = get_logger("api")
    logger.info("Starting ServiceBell backend")
    settings = get_settings()

    if DATABASE_URL.startswith("sqlite"):
        logger.info("SQLite database in use, creating tables if missing")
        init_db()

    app.state.change_feed = ChangeFeed()
    app.state.push_gateway = None
    app.state.dispatch_scheduler = None

    if settings.vapid_configured:
        gateway = WebPushGateway.from_settings(settings)
        app.state.push_gateway = gateway
        if settings.dispatch_enabled:
            scheduler = DispatchScheduler(
                make_batch_runner(settings, gateway),
                interval=settings.dispatch_interval_seconds,
                batch_size=settings.dispatch_batch_size,
            )
            scheduler.start()
            app.state.dispatch_scheduler = scheduler
    else:
        logger.warning(
            "VAPID keys are not configured; push dispatch is disabled and "
            "devices will only receive notifications through sync"
        )

    if not settings.jwt_configured:
        logger.warning("JWT_SECRET_KEY is not set; authenticated endpoints will return 503")

    logger.info("ServiceBell backend started successfully")

    yield

    # Shutdown
    logger.info("Shutting down ServiceBell backend")
    if app.state.dispatch_scheduler is not None:
        await app.state.dispatch_scheduler.stop()
    dispose_engine()


# Initialize logging before creating app
init_logging()

# Create FastAPI application
app = FastAPI(
    title="ServiceBell API",
    description="Notification delivery backend for restaurant staff devices. "
                "Queues notification intents, delivers them over Web Push and "
                "device sync, and relays realtime row changes.",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers


@app.exception_handler(ValidationError)
async def validation_exception_handler(
    request: Request, exc: ValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors raised outside request parsing.

    Args:
        request: HTTP request
        exc: Pydantic ValidationError

    Returns:
        JSON response with validation error details
    """
    logger = get_logger("api")
    logger.warning(
        "Validation error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "errors": exc.errors(),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": exc.errors(include_url=False, include_context=False),
        }
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request, exc: SQLAlchemyError
) -> JSONResponse:
    """
    Handle SQLAlchemy database errors.

    Returns:
        JSON response with a generic database error message
    """
    logger = get_logger("db")
    logger.error(
        "Database error",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error": str(exc),
        }
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Database Error",
            "message": "An error occurred while accessing the database. "
                      "Please try again later.",
        }
    )


@app.exception_handler(Exception)
async def generic_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    logger = get_logger("api")
    logger.error(
        "Unhandled exception",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error": str(exc),
        },
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred. Please try again later.",
        }
    )


# Health check endpoint


@app.get("/health", tags=["Health"])
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Health status, push configuration and open change streams
    """
    feed = getattr(request.app.state, "change_feed", None)
    scheduler = getattr(request.app.state, "dispatch_scheduler", None)
    return {
        "status": "healthy",
        "service": "servicebell-backend",
        "version": APP_VERSION,
        "push_configured": get_settings().vapid_configured,
        "dispatch_running": bool(scheduler and scheduler.running),
        "change_streams": feed.get_subscriber_count() if feed else 0,
    }


# API routers
from backend.src.api import changes, notifications  # noqa: E402

app.include_router(notifications.router, prefix="/api")
app.include_router(changes.router, prefix="/api")


@app.get("/", tags=["Root"])
async def root() -> Dict[str, str]:
    """API metadata and documentation links."""
    return {
        "message": "ServiceBell API",
        "version": APP_VERSION,
        "docs": "/docs",
        "openapi": "/openapi.json",
    }
