"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ledgersync.api.routes import health, sync as sync_routes, sync_logs
from ledgersync.db.engine import get_engine
from ledgersync.ledger.auth import NoConnectionError
from ledgersync.ledger.errors import (
    LedgerAuthError,
    LedgerError,
    LedgerPermissionError,
    LedgerRateLimitError,
)
from ledgersync.sync.errors import (
    ConflictAlreadyResolvedError,
    NotRetryableError,
    RecordSyncError,
    UnknownEntityTypeError,
    UnsupportedDirectionError,
)

logger = logging.getLogger(__name__)

# The most specific registered class in the exception's MRO wins
ERROR_STATUS = (
    (NoConnectionError, 400),
    (LedgerAuthError, 401),
    (LedgerPermissionError, 403),
    (LedgerRateLimitError, 429),
    (LedgerError, 502),
    (UnknownEntityTypeError, 400),
    (UnsupportedDirectionError, 400),
    (ConflictAlreadyResolvedError, 400),
    (NotRetryableError, 400),
    (RecordSyncError, 422),
    (LookupError, 404),
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _domain_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if isinstance(exc, LedgerError):
            logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return _error(status_code, str(exc))

    return handler


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Creates tables and runs migrations on first use
        get_engine()
        yield

    app = FastAPI(
        title="Ledger Sync API",
        description="Two-way sync between the finance database and Xero",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return _error(400, f"Invalid request: {field} {first.get('msg', '')}".strip())

    for error_class, status_code in ERROR_STATUS:
        app.add_exception_handler(error_class, _domain_handler(status_code))

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(sync_logs.router, prefix="/sync-logs", tags=["sync-logs"])
    app.include_router(health.router, prefix="/health", tags=["health"])

    return app


# Module-level app instance for uvicorn
app = create_app()
