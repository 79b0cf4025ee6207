"""Common schemas for the login shield API."""
from typing import Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str
    code: Optional[str] = None


class SuccessResponse(BaseModel):
    """Success response."""

    status: str = "ok"
    message: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: Optional[dict] = None
