"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations and table creation.
"""

from openrevenue.models.app import App, AppKey
from openrevenue.models.subscriber import Subscriber
from openrevenue.models.subscription import (
    Entitlement,
    Store,
    StoreEnvironment,
    Subscription,
)
from openrevenue.models.audit import (
    Event,
    EventType,
    Receipt,
    ReceiptStatus,
    WebhookEvent,
)

__all__ = [
    # Tenant
    "App",
    "AppKey",
    # Subscriber
    "Subscriber",
    # Subscription
    "Subscription",
    "Entitlement",
    "Store",
    "StoreEnvironment",
    # Audit
    "Receipt",
    "ReceiptStatus",
    "Event",
    "EventType",
    "WebhookEvent",
]
