"""FastAPI application entry point with lifespan, CORS, and structured logging.

This module initializes the FastAPI application with:
- Lifespan context manager for database connection and config lifecycle
- CORS middleware for the dashboard
- Structured logging (JSON) to logs/api.log
- Exception handlers for consistent error responses
- Basic health check endpoint

The database connection is opened in the lifespan context manager and stored
in app.state.db for access by route handlers throughout the application
lifecycle. The cron endpoints run the pipeline on that same connection.

All API responses follow the standard envelope format defined in reddit_pulse.api.models.

Usage:
    uvicorn reddit_pulse.api.app:app --reload
"""

import asyncio
import os
import traceback
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reddit_pulse.api.models import ErrorDetail, ErrorEnvelope
from reddit_pulse.api.responses import DATABASE_ERROR, NOT_FOUND, VALIDATION_ERROR
from reddit_pulse.api.routes import metrics, runs
from reddit_pulse.backend.db.connection import init_schema, open_connection
from reddit_pulse.backend.utils.logging_config import get_logger, setup_logging
from reddit_pulse.config import PipelineConfig


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for database connection lifecycle.

    Resolves configuration, opens the database (applying the schema) and
    stores both in app.state. Closes the connection on shutdown.
    """
    logger = get_logger(__name__)

    config = PipelineConfig.from_env()
    app.state.config = config
    app.state.run_lock = asyncio.Lock()

    try:
        conn = open_connection(config.db_path)
        init_schema(conn)
        app.state.db = conn

        logger.info("database_connection_acquired", db_path=config.db_path)

        yield

    finally:
        if getattr(app.state, 'db', None) is not None:
            app.state.db.close()
            app.state.db = None
            logger.info("database_connection_closed")


# Initialize logging before creating the app
setup_logging(log_dir=os.environ.get("LOG_DIR", "logs"), log_filename="api.log")

app = FastAPI(
    title="Reddit Pulse API",
    description="Cron triggers and aggregate metrics for subreddit sentiment analysis",
    version="1.0.0",
    lifespan=lifespan,
)

cors_origins = os.environ.get(
    'CORS_ORIGINS',
    'http://localhost:3000'
).split(',')

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = get_logger(__name__)
logger.info("fastapi_app_initialized", cors_origins=cors_origins)

app.include_router(runs.router)
app.include_router(metrics.router)

# Exception Handlers
# These handlers convert exceptions to the standard ErrorEnvelope format


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Convert request validation errors (422) into the ErrorEnvelope format."""
    logger = get_logger(__name__)
    logger.warning("validation_error", path=request.url.path, errors=exc.errors())

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(
            code=VALIDATION_ERROR,
            message=f"Request validation failed: {exc.errors()[0]['msg']}"
        )
    )

    return JSONResponse(status_code=422, content=error_envelope.model_dump())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTPException with error envelope format.

    Routes exceptions raised via raise_api_error() or raw HTTPException
    into the standard ErrorEnvelope structure.
    """
    logger = get_logger(__name__)
    logger.warning("http_exception", path=request.url.path, status=exc.status_code)

    if isinstance(exc.detail, dict) and "code" in exc.detail:
        code = exc.detail["code"]
        message = exc.detail["message"]
    else:
        code_map = {404: NOT_FOUND, 422: VALIDATION_ERROR}
        code = code_map.get(exc.status_code, DATABASE_ERROR)
        message = str(exc.detail) if exc.detail else "An error occurred"

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(code=code, message=message)
    )

    return JSONResponse(status_code=exc.status_code, content=error_envelope.model_dump())


@app.exception_handler(404)
async def not_found_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert unmatched routes into the ErrorEnvelope format."""
    if isinstance(exc, HTTPException) and isinstance(exc.detail, dict):
        return await http_exception_handler(request, exc)

    logger = get_logger(__name__)
    logger.warning("not_found", path=request.url.path)

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(
            code=NOT_FOUND,
            message=f"Resource not found: {request.url.path}"
        )
    )

    return JSONResponse(status_code=404, content=error_envelope.model_dump())


@app.exception_handler(500)
async def internal_server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert uncaught server errors into the ErrorEnvelope format."""
    logger = get_logger(__name__)
    logger.error(
        "internal_server_error",
        path=request.url.path,
        error=str(exc),
        traceback=traceback.format_exc(),
    )

    error_envelope = ErrorEnvelope(
        error=ErrorDetail(
            code=DATABASE_ERROR,
            message="An internal server error occurred"
        )
    )

    return JSONResponse(status_code=500, content=error_envelope.model_dump())


@app.get("/health")
async def health() -> Dict[str, str]:
    """Health check endpoint.

    Example:
        GET /health -> {"status": "healthy"}
    """
    return {"status": "healthy"}
