"""BI Incidents: Main FastAPI Application.

Tracks biological indicator sterilization failures from detection through
remediation, and keeps regulators, clinic managers and staff informed.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .core import (
    ConcurrencyError,
    DeliveryError,
    IncidentError,
    NotFoundError,
    TransientStoreError,
    UnavailableError,
    ValidationError,
    close_db,
    get_settings,
    init_db,
)
from .schemas import ErrorResponse

logger = logging.getLogger(__name__)
settings = get_settings()

ERROR_STATUS_CODES: dict[type[IncidentError], int] = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConcurrencyError: status.HTTP_409_CONFLICT,
    TransientStoreError: status.HTTP_503_SERVICE_UNAVAILABLE,
    UnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    DeliveryError: status.HTTP_502_BAD_GATEWAY,
}


def status_code_for(exc: IncidentError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info(f"Starting {settings.app_name} ({settings.environment})")

    # Startup - skip init_db in production (tables come from migrations)
    if settings.environment != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## BI Incidents API

    Records **biological indicator failures** and drives their remediation.

    ### Key Features

    - **Incident Numbering**: Facility-unique numbers assigned on creation.
    - **Remediation Workflow**: Ordered steps with optimistic concurrency.
    - **Regulatory Notifications**: Immediate or delayed, by severity and facility policy.
    - **Tool Validation**: Blocks tools from affected batches at the point of use.

    ### Facility Context

    Every request must carry `X-Facility-ID` and `X-Operator-ID` headers.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH", "HEAD"],
    allow_headers=["*"],
    max_age=86400,
)


@app.exception_handler(IncidentError)
async def incident_error_handler(request: Request, exc: IncidentError):
    """Map the incident error taxonomy onto HTTP responses."""
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=code,
        content=ErrorResponse(
            error=exc.code,
            message=exc.message,
            details=[],
        ).model_dump(),
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}")

    message = "An unexpected error occurred"
    if settings.debug or settings.environment != "production":
        message = f"{message}: {str(exc)[:200]}"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            message=message,
            details=[],
        ).model_dump(),
    )


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "bi_incidents.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
