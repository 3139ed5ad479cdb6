"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from openrevenue.schemas.common import ErrorResponse, StatusResponse
from openrevenue.schemas.receipt import ReceiptRequest
from openrevenue.schemas.subscriber import (
    AttributesRequest,
    CustomerInfoResponse,
    IdentifyRequest,
)
from openrevenue.schemas.webhook import WebhookResponse

__all__ = [
    "ErrorResponse",
    "StatusResponse",
    "ReceiptRequest",
    "AttributesRequest",
    "CustomerInfoResponse",
    "IdentifyRequest",
    "WebhookResponse",
]
