"""
Common Schemas
==============

Shared Pydantic schemas used across the application.
"""

from typing import Any, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    message: str
    resolution: str
    details: Optional[Any] = None


class StatusResponse(BaseModel):
    """Health / acknowledgement response."""

    status: str = "ok"
