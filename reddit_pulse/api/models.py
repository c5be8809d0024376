"""Pydantic models for API request/response structures.

This module defines the standard response and error envelopes used across all API endpoints,
as well as the query parameters accepted by the cron trigger endpoints.

Response Structure:
    All successful responses use ResponseEnvelope with:
    - data: The actual response payload (any type)
    - meta: Metadata including timestamp, version, and optional total count

Error Structure:
    All error responses use ErrorEnvelope with:
    - error: ErrorDetail containing code and message
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


class MetaModel(BaseModel):
    """Metadata included in all successful responses.

    Attributes:
        timestamp: ISO 8601 formatted UTC timestamp of the response
        version: API version string (currently hardcoded as "1.0")
        total: Optional total count of items
    """
    timestamp: str
    version: str
    total: Optional[int] = None


class ResponseEnvelope(BaseModel):
    """Standard response envelope for all successful API responses.

    Attributes:
        data: The actual response payload (type varies by endpoint)
        meta: Metadata about the response (timestamp, version, total)
    """
    data: Any
    meta: MetaModel


class ErrorDetail(BaseModel):
    """Error details included in error responses.

    Attributes:
        code: Machine-readable error code (see responses.py for constants)
        message: Human-readable error message
    """
    code: str
    message: str


class ErrorEnvelope(BaseModel):
    """Standard error envelope for all error responses.

    Attributes:
        error: Error details including code and message
    """
    error: ErrorDetail


class CronParams(BaseModel):
    """Query parameters for the cron trigger endpoints.

    Used as a FastAPI dependency.

    Attributes:
        secret: Must equal CRON_SECRET
        extended: Also run extended analysis (POST /cron/run only)

    Example:
        @router.post("/run")
        async def trigger_run(params: CronParams = Depends()):
            ...
    """
    secret: Optional[str] = Field(default=None, description="Shared cron secret")
    extended: bool = Field(default=False, description="Run extended analysis")
