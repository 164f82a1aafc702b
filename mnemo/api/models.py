"""Pydantic models for API requests and responses.

Responses reuse the domain models from ``mnemo.models``; this module only
adds request bodies and the error envelopes.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Memory Requests
# =============================================================================


class MemoryCreate(BaseModel):
    """Request model for saving a memory."""

    content: str = Field(
        ...,
        min_length=1,
        description="Memory text",
        json_schema_extra={"example": "Postgres upgrade needs all five POSTGRES_* variables set"},
    )
    category: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Category the memory is filed under",
        json_schema_extra={"example": "operations"},
    )
    topic: Optional[str] = Field(
        None,
        max_length=255,
        description="Optional short title",
    )


class MemoryMove(BaseModel):
    """Request model for moving a memory to another category."""

    category: str = Field(..., min_length=1, max_length=255, description="Target category")


class MemoryUpdate(BaseModel):
    """Request model for replacing a memory's text."""

    content: str = Field(..., min_length=1, description="New memory text")
    topic: Optional[str] = Field(None, max_length=255, description="New short title; unchanged if omitted")


class CategoryListResponse(BaseModel):
    """Live memory counts per category."""

    categories: dict[str, int] = Field(default_factory=dict)
    total: int = 0


# =============================================================================
# Health Models
# =============================================================================


class HealthCheckResponse(BaseModel):
    """Response model for the aggregate health check."""

    status: str = Field(..., description="healthy, degraded or unhealthy")
    version: str
    timestamp: datetime
    selector_state: str
    active_backend: str
    fault: Optional[str] = None
    services: dict[str, dict[str, Any]] = Field(default_factory=dict)
    uptime_seconds: Optional[float] = None


# =============================================================================
# Error Models
# =============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[str] = Field(None, description="Additional error details")
    path: Optional[str] = Field(None, description="Request path")
    timestamp: datetime = Field(..., description="When the error occurred")


class ValidationErrorDetail(BaseModel):
    """Details about a validation error."""

    field: str = Field(..., description="Field that failed validation")
    message: str = Field(..., description="Validation error message")
    value: Optional[Any] = Field(None, description="Invalid value provided")


class ValidationErrorResponse(BaseModel):
    """Response for validation errors."""

    error: str = Field(default="validation_error")
    message: str = Field(default="Request validation failed")
    errors: list[ValidationErrorDetail] = Field(..., description="List of validation errors")
    timestamp: datetime
