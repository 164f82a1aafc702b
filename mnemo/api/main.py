"""mnemo API - Main FastAPI Application.

This module provides the operator HTTP surface for mnemo. It includes:
- API versioning (/api/v1)
- Health check endpoints
- Memory endpoints (save, search, update, move, delete, requeue, related)
- Status endpoints (system status, backend upgrade, reconciliation)
- Prometheus metrics at /metrics
- Container startup and shutdown through the lifespan

Usage:
    # Run with uvicorn
    uvicorn mnemo.api.main:app --reload

    # Or run the root entry point
    python main.py
"""

import hmac
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

import structlog
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from mnemo import __version__
from mnemo.api.dependencies import peek_container, reset_dependencies, set_container
from mnemo.api.models import ErrorResponse, ValidationErrorDetail, ValidationErrorResponse
from mnemo.api.routes.health import router as health_router, set_server_start_time
from mnemo.api.routes.memories import router as memories_router
from mnemo.api.routes.status import router as status_router
from mnemo.config.settings import get_settings
from mnemo.core.container import DependencyContainer
from mnemo.core.exceptions import BackendUnreachableError, MemoryNotFoundError, MnemoError
from mnemo.monitoring.metrics import get_metrics_app

logger = structlog.get_logger(__name__)

API_TITLE = "mnemo API"
API_DESCRIPTION = """
## Multi-backend memory persistence and enrichment

Memories are saved to a relational system of record (embedded SQLite, or
PostgreSQL after an upgrade) and enriched in the background by a language
model, then indexed in a vector store and a graph store.

### Authentication

Set `API_KEY_ENABLED=true` and `API_KEY=your-secret-key` to require an
X-API-Key header on every request except health and docs.
"""


# =============================================================================
# API Key Authentication Middleware
# =============================================================================


class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Require an X-API-Key header when API_KEY_ENABLED=true.

    Health probes, the docs and the landing page stay public so orchestrators
    can probe the service without credentials.
    """

    PUBLIC_PATHS = frozenset({"/", "/docs", "/redoc", "/openapi.json"})
    PUBLIC_PREFIXES = ("/health",)

    def _is_public(self, path: str) -> bool:
        return path in self.PUBLIC_PATHS or path.startswith(self.PUBLIC_PREFIXES)

    async def dispatch(self, request: Request, call_next):
        settings = get_settings()
        if not settings.api_key_enabled or self._is_public(request.url.path):
            return await call_next(request)

        if settings.api_key is None or not settings.api_key.get_secret_value():
            logger.error("api_key_enabled_but_not_set")
            return _plain_error(
                request,
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "misconfigured",
                "API key authentication is enabled but no key is configured",
            )

        presented = request.headers.get("X-API-Key", "")
        if not presented:
            return _plain_error(request, status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing X-API-Key header")
        if not hmac.compare_digest(presented.encode(), settings.api_key.get_secret_value().encode()):
            logger.warning("invalid_api_key_attempt", path=request.url.path)
            return _plain_error(request, status.HTTP_401_UNAUTHORIZED, "unauthorized", "Invalid API key")

        return await call_next(request)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Startup initializes the container (backend selection, optional stores,
    worker, reconciliation sweep) unless one was already set and started.
    Shutdown stops the worker and closes every backend.
    """
    logger.info("application_starting")
    set_server_start_time()

    container = peek_container() or DependencyContainer()
    if not container.is_initialized:
        await container.initialize()
    set_container(container)

    logger.info("application_started")

    yield

    logger.info("application_stopping")
    await container.shutdown()
    reset_dependencies()
    logger.info("application_stopped")


# =============================================================================
# Exception Handlers
# =============================================================================


def _plain_error(
    request: Request, code: int, error: str, message: str, detail: str | None = None
) -> JSONResponse:
    response = ErrorResponse(
        error=error,
        message=message,
        detail=detail,
        path=request.url.path,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(status_code=code, content=response.model_dump(mode="json"))


def _error_response(request: Request, code: int, error: str, exc: Exception, message: str) -> JSONResponse:
    # Raw exception text only leaks in debug mode
    detail = str(exc) if get_settings().debug else None
    return _plain_error(request, code, error, message, detail)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle Pydantic validation errors with detailed response."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append(ValidationErrorDetail(
            field=field,
            message=error["msg"],
            value=error.get("input"),
        ))

    response = ValidationErrorResponse(
        errors=errors,
        timestamp=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=response.model_dump(mode="json"),
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, "invalid_input", exc, str(exc))


async def not_found_handler(request: Request, exc: MemoryNotFoundError) -> JSONResponse:
    return _error_response(request, status.HTTP_404_NOT_FOUND, "not_found", exc, exc.message)


async def unavailable_handler(request: Request, exc: BackendUnreachableError) -> JSONResponse:
    logger.warning("backend_unavailable", path=request.url.path, backend=exc.backend, error=exc.message)
    return _error_response(
        request, status.HTTP_503_SERVICE_UNAVAILABLE, "backend_unavailable", exc, exc.message
    )


async def mnemo_error_handler(request: Request, exc: MnemoError) -> JSONResponse:
    logger.error("request_failed", path=request.url.path, error=exc.message, error_type=type(exc).__name__)
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "mnemo_error", exc, exc.message)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_server_error",
        exc,
        "An unexpected error occurred",
    )


# =============================================================================
# Application Factory
# =============================================================================


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "Health", "description": "Liveness, readiness and backend health"},
            {"name": "Memories", "description": "Save, search and manage memories"},
            {"name": "Status", "description": "Operator view: backends, queue, upgrade, reconciliation"},
        ],
    )
    app.add_middleware(APIKeyMiddleware)

    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(MemoryNotFoundError, not_found_handler)
    app.add_exception_handler(BackendUnreachableError, unavailable_handler)
    app.add_exception_handler(MnemoError, mnemo_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        return {
            "name": API_TITLE,
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
            "api": "/api/v1",
            "metrics": "/metrics",
        }

    app.include_router(health_router)

    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(memories_router)
    api_v1_router.include_router(status_router)
    app.include_router(api_v1_router)

    app.mount("/metrics", get_metrics_app())
    return app


app = create_app()
