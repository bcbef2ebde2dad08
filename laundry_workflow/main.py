"""
FastAPI application entry point with health endpoints and workflow routing.

This module provides the main FastAPI application instance, request logging,
mapping of workflow engine failures to HTTP responses, and startup/shutdown
lifecycle handling for the database engine.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from laundry_workflow.api.v1 import workflow_router
from laundry_workflow.core.config import get_settings
from laundry_workflow.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    get_request_id,
    log_performance,
    set_request_id,
)
from laundry_workflow.database.connection import (
    check_database_health,
    close_database_connections,
)
from laundry_workflow.services.workflow.errors import WorkflowError

# Configure logging before application initialization
configure_logging()
logger = get_logger(__name__)

WORKFLOW_ERROR_STATUS = {
    "NotFound": status.HTTP_404_NOT_FOUND,
    "IllegalTransition": status.HTTP_409_CONFLICT,
    "GateBlocked": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "InvalidState": status.HTTP_409_CONFLICT,
    "ConcurrentModification": status.HTTP_409_CONFLICT,
    "EmptySplit": status.HTTP_400_BAD_REQUEST,
    "BatchTooLarge": status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    "Forbidden": status.HTTP_403_FORBIDDEN,
    "DeadlineExceeded": status.HTTP_504_GATEWAY_TIMEOUT,
    "StorageError": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan context manager for startup and shutdown events.

    Args:
        app: FastAPI application instance

    Yields:
        None during application runtime
    """
    settings = get_settings()

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        await close_database_connections()


settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Laundry order workflow and piece-tracking API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Middleware for request logging and correlation ID management.

    Sets request ID for correlation, logs request details, and measures
    response time. Clears context after request processing.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )

        return response
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        clear_context()


@app.exception_handler(WorkflowError)
async def workflow_exception_handler(
    request: Request, exc: WorkflowError
) -> JSONResponse:
    """
    Map a workflow engine failure to its HTTP status.

    The body carries the error kind, message and context so clients can
    tell an illegal move from a move blocked by unmet preconditions.
    """
    status_code = WORKFLOW_ERROR_STATUS.get(
        exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    log = logger.error if status_code >= 500 else logger.info
    log(
        "Workflow request failed",
        method=request.method,
        path=request.url.path,
        kind=exc.kind,
        status_code=status_code,
        error=exc.message,
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.kind,
            "message": exc.message,
            "details": exc.to_dict(),
            "request_id": get_request_id(),
        },
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    logger.info(
        "Request rejected",
        method=request.method,
        path=request.url.path,
        error=str(exc),
    )

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Bad Request",
            "message": str(exc),
            "request_id": get_request_id(),
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle request validation errors with structured error response.

    Args:
        request: HTTP request that caused validation error
        exc: Validation exception with error details

    Returns:
        JSON response with validation error details
    """
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation Error",
            "message": "Request validation failed",
            "details": jsonable_errors(exc),
            "request_id": get_request_id(),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    """Validation errors with non-serializable ``ctx`` values stringified."""
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    return errors


@app.exception_handler(Exception)
async def global_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions with structured error response.

    Logs error with full context and returns generic error message
    to avoid exposing internal details.
    """
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred",
            "request_id": get_request_id(),
        },
    )


@app.get(
    "/health",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Health check endpoint",
    response_description="Application health status",
)
async def health_check() -> dict[str, str]:
    """
    Basic health check endpoint.

    Always returns 200 OK if the application is running.
    """
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get(
    "/ready",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Readiness check endpoint",
    response_description="Application readiness status",
)
async def readiness_check():
    """Report ready only when the database answers."""
    if not await check_database_health(max_retries=1):
        logger.warning("Readiness check failed", database="unhealthy")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "service": settings.app_name,
                "database": "unhealthy",
            },
        )

    return {
        "status": "ready",
        "service": settings.app_name,
        "version": settings.app_version,
        "database": "healthy",
    }


app.include_router(workflow_router, prefix=settings.api_v1_prefix)
