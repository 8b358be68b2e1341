"""
CoachLink HTTP service.

Builds the FastAPI app, maps domain errors to status codes and wires
the routers. Run locally with:

    uvicorn src.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import coaches, connections, health, leads
from .config.settings import get_settings
from .core.coaching.errors import (
    CapacityExceededError,
    CoachingError,
    CodeVerificationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from .infrastructure.snowflake.client import SnowflakeConnectionError

logger = logging.getLogger(__name__)

# One message for every code failure so guesses learn nothing
INVALID_CODE_DETAIL = "Invalid or expired code"

# Most specific first: the handler walks this in order
ERROR_STATUS = [
    (CodeVerificationError, status.HTTP_400_BAD_REQUEST),
    (CapacityExceededError, status.HTTP_409_CONFLICT),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (RateLimitedError, status.HTTP_429_TOO_MANY_REQUESTS),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )


def status_for(exc: CoachingError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the configuration we start with and anything missing from it."""
    # Startup
    settings = get_settings()

    logger.info(
        "CoachLink API starting",
        extra={
            "version": settings.api_version,
            "mock_mode": {
                "snowflake": settings.snowflake_mock_mode,
                "messaging": settings.messaging_mock_mode,
            }
        }
    )

    # Validate configuration
    missing_fields = settings.validate_required_fields()
    if missing_fields:
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )
        # Not fatal: /health/ready reports it and keeps traffic away

    yield

    # Shutdown
    logger.info("CoachLink API shutting down")


def create_app() -> FastAPI:
    """Build the app from the current settings. Tests call this after changing env."""
    settings = get_settings()
    configure_logging(settings.log_level)

    # Create FastAPI instance
    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
        Coach-client connections and data sharing.

        ## Authentication

        All endpoints except health checks require an API key in the
        `X-API-Key` header and the caller's user ID in `X-User-Id`.

        ## Workflow

        1. **Client requests a coach**: `POST /api/v1/connections/requests`
        2. **Coach approves**: `POST /api/v1/coaches/me/requests/{id}/approve`
           - A 6-character code is emailed to the client (valid 48 hours)
        3. **Client enters the code**: `POST /api/v1/connections/verify`
           - The connection becomes active
        4. **Client chooses what to share**: `PATCH /api/v1/connections/me/sharing`
        5. **Coach reads shared data**: `GET /api/v1/coaches/me/clients/{id}/meals`
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        coaches.router,
        prefix="/api/v1/coaches",
        tags=["Coaches"],
    )

    app.include_router(
        connections.router,
        prefix="/api/v1/connections",
        tags=["Connections"],
    )

    app.include_router(
        leads.router,
        prefix="/api/v1/leads",
        tags=["Leads"],
    )

    # Root endpoint
    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": "CoachLink API",
            "version": settings.api_version,
            "docs": "/docs",
            "health": "/health",
        }

    @app.exception_handler(CoachingError)
    async def coaching_error_handler(request: Request, exc: CoachingError):
        """Translate domain errors to HTTP responses."""
        status_code = status_for(exc)

        if isinstance(exc, CodeVerificationError):
            detail = INVALID_CODE_DETAIL
        elif isinstance(exc, TransientError):
            detail = "Service temporarily unavailable. Please retry."
        else:
            detail = str(exc)

        logger.info(
            "Request rejected",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error_type": type(exc).__name__,
                "status_code": status_code,
            }
        )
        return JSONResponse(status_code=status_code, content={"detail": detail})

    @app.exception_handler(SnowflakeConnectionError)
    async def database_unavailable_handler(request: Request, exc: SnowflakeConnectionError):
        logger.error(
            "Database unavailable",
            extra={"path": request.url.path, "error": str(exc)}
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Service temporarily unavailable. Please retry."}
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Log the traceback, return nothing the client could learn from."""
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error. Please contact support if this persists."
            }
        )

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": settings.api_version,
        }
    )

    return app


app = create_app()


# For debugging/development
if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
