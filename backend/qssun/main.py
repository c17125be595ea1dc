"""
FastAPI application factory and configuration.
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, UTC

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Gauge, Histogram
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .config.database import async_database_health_check, check_async_database_connection
from .config.logging import configure_logging, reset_request_id, set_request_id
from .config.observability import setup_observability, trace_operation
from .config.settings import get_settings
from .routers.instant_expenses import router as instant_expenses_router
from .routers.metrics import router as metrics_router
from .routers.notifications import router as notifications_router
from .routers.quotations import router as quotations_router
from .routers.system import router as system_router
from .routers.webpush import router as webpush_router
from .utils.errors import ERROR_CODES, DomainError, error_payload

logger = logging.getLogger(__name__)

APP_REQUEST_COUNT = Counter(
    "app_requests_total",
    "Total HTTP requests processed",
    ["method", "path", "status"],
)
APP_REQUEST_LATENCY = Histogram(
    "app_request_duration_seconds",
    "Request latency in seconds",
    ["method", "path", "status"],
)
APP_UPTIME_SECONDS = Gauge(
    "app_uptime_seconds",
    "Application uptime in seconds",
)

APP_START_TIME = datetime.now(UTC)


def _route_label(request: Request) -> str:
    # templated path keeps label cardinality bounded (/api/quotations/{identifier})
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if template is None:
        return request.url.path
    # included routers may match below a mount; their prefix sits in root_path
    root_path = request.scope.get("root_path", "")
    app_root_path = request.scope.get("app_root_path", "")
    prefix = root_path[len(app_root_path):] if root_path.startswith(app_root_path) else root_path
    if prefix and not template.startswith(prefix + "/") and template != prefix:
        template = prefix.rstrip("/") + template
    return template


class ResponseTimeMiddleware(BaseHTTPMiddleware):
    """Record request metrics and expose the response time header."""

    async def dispatch(self, request: Request, call_next):  # noqa: D401
        start_time = time.time()
        response = await call_next(request)
        duration_s = time.time() - start_time
        response_time_ms = duration_s * 1000
        response.headers["X-Response-Time"] = f"{response_time_ms:.1f}ms"

        status = str(response.status_code)
        path = _route_label(request)
        APP_REQUEST_COUNT.labels(request.method, path, status).inc()
        APP_REQUEST_LATENCY.labels(request.method, path, status).observe(duration_s)
        APP_UPTIME_SECONDS.set((datetime.now(UTC) - APP_START_TIME).total_seconds())

        if response_time_ms > 500:
            logger.warning(
                "Slow response: %.1fms for %s %s",
                response_time_ms,
                request.method,
                request.url.path,
            )
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Generate a per-request ID (or reuse the caller's) and echo it back."""

    async def dispatch(self, request: Request, call_next):  # noqa: D401
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers["X-Request-ID"] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    """Application lifespan management."""
    configure_logging()
    logger.info("Starting up Qssun back-office API...")

    try:
        # Fail fast on a bad SERIAL_PREFIX / SERIAL_TIMEZONE / SERIAL_STORE
        settings = get_settings()
        logger.info(
            "Serial allocator: store=%s timezone=%s",
            settings.SERIAL_STORE,
            settings.SERIAL_TIMEZONE,
        )

        fast_tests = os.getenv("FAST_TESTS") == "1"
        if fast_tests:
            logger.info(
                "FAST_TESTS=1: skipping observability setup and DB connectivity check")
            yield
            return

        setup_observability()
        logger.info("Observability setup complete")

        db_connected = await check_async_database_connection()
        if not db_connected:
            logger.error("Failed to connect to database")
            raise RuntimeError("Database connection failed")

        # Schema is managed by Alembic migrations (run_migrations.py)
        logger.info("Application startup complete")
    except Exception as e:  # noqa: BLE001 (startup safety net)
        logger.error("Application startup failed: %s", e)
        raise

    yield

    logger.info("Shutting down Qssun back-office API...")


def create_application() -> FastAPI:
    """Create and configure FastAPI application."""

    application_obj = FastAPI(
        title="Qssun Back-office API",
        description="Quotations, custody sheets, notifications and daily serial numbering",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan
    )

    setup_middleware(application_obj)
    setup_exception_handlers(application_obj)
    setup_routes(application_obj)

    return application_obj


def setup_middleware(app: FastAPI) -> None:
    """Setup application middleware."""

    allowed_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=os.getenv("ALLOWED_HOSTS", "*").split(",")
    )

    app.add_middleware(ResponseTimeMiddleware)
    app.add_middleware(RequestIDMiddleware)


def _error_response(request: Request, status_code: int, code: str, message, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_payload(code, message, details, str(request.url.path)),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup global exception handlers."""

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors with standardized response."""
        # Sanitize error details to ensure all values JSON serializable
        sanitized = []
        for err in exc.errors():
            cleaned = {}
            for k, v in err.items():
                try:
                    json.dumps(v)
                    cleaned[k] = v
                except (TypeError, ValueError):
                    cleaned[k] = str(v)
            sanitized.append(cleaned)
        return _error_response(request, 422, ERROR_CODES["validation"],
                               "Request validation failed", sanitized)

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        """Map domain exceptions to their class status code."""
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        return _error_response(request, exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return _error_response(request, 500, ERROR_CODES["db"], "Database error")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with standardized response."""
        return _error_response(request, exc.status_code, getattr(exc, "code", "HTTP_ERROR"),
                               exc.detail, getattr(exc, "details", None))

    @app.exception_handler(StarletteHTTPException)
    async def starlette_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle Starlette HTTP exceptions."""
        code = ERROR_CODES["not_found"] if exc.status_code == 404 else "HTTP_ERROR"
        return _error_response(request, exc.status_code, code, exc.detail)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        return _error_response(request, 500, ERROR_CODES["internal"],
                               "An unexpected error occurred")


def setup_routes(app: FastAPI) -> None:
    """Setup application routes."""

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring."""
        with trace_operation("health_check"):
            db_health = await async_database_health_check()

            return {
                "status": "healthy" if db_health["status"] == "healthy" else "unhealthy",
                "timestamp": time.time(),
                "database": db_health,
                "version": __version__
            }

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "status": "success",
            "data": {
                "message": "Qssun Back-office API",
                "version": __version__,
                "docs": "/docs",
                "health": "/health"
            },
            "timestamp": time.time()
        }

    app.include_router(quotations_router, prefix="/api", tags=["Quotations"])
    app.include_router(instant_expenses_router, prefix="/api", tags=["Instant Expenses"])
    app.include_router(notifications_router, prefix="/api", tags=["Notifications"])
    app.include_router(webpush_router, prefix="/api", tags=["Web Push"])
    app.include_router(system_router, prefix="/api/system", tags=["System"])
    # Prometheus exposition format, no API prefix
    app.include_router(metrics_router)


# Create the application instance
app = create_application()


__all__ = ["app", "create_application"]
