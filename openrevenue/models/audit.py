"""
Audit Models
============

Write-once records: receipt submissions (validated or not), the domain
event log, and raw webhook payloads.  Nothing here is ever updated or
deleted.
"""

from datetime import datetime
from typing import Any, Optional
import uuid

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from openrevenue.db.base import Base, JSONType
from openrevenue.utils.helpers import utc_now


class ReceiptStatus:
    """Receipt audit status values besides the failure reason codes."""
    VALIDATED = "validated"


class EventType:
    """Domain event types appended to the event log."""
    RECEIPT_VALIDATED = "receipt_validated"
    ATTRIBUTION = "attribution"
    IDENTIFY = "identify"

    @staticmethod
    def webhook(event_type: str) -> str:
        return f"webhook_{event_type}"


class Receipt(Base):
    """A receipt submission and its verification outcome."""

    __tablename__ = "receipts"

    receipt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )
    app_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    store: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    purchase_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Claim (minus the proof blob) plus verification detail
    raw: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    # "validated" or the failure reason code
    status: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_receipts_subscriber", "app_id", "app_user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Receipt(app_user_id={self.app_user_id}, product_id={self.product_id}, status={self.status})>"


class Event(Base):
    """Append-only domain event."""

    __tablename__ = "events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    app_user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_events_app_type_created", "app_id", "type", "created_at"),
        Index("idx_events_subscriber", "app_id", "app_user_id"),
    )

    def __repr__(self) -> str:
        return f"<Event(type={self.type}, app_user_id={self.app_user_id})>"


class WebhookEvent(Base):
    """Raw inbound webhook payload, recorded before any processing."""

    __tablename__ = "webhook_events"

    webhook_event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    app_user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    __table_args__ = (
        Index("idx_webhook_events_app_received", "app_id", "received_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent(type={self.type}, app_user_id={self.app_user_id})>"
