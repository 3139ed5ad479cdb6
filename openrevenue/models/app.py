"""
Tenant Models
=============

An ``App`` is a tenant: every subscriber, subscription, entitlement and
audit row is scoped by its ``app_id``.  Store credentials needed for
receipt verification are configured per app.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from openrevenue.db.base import Base, TimestampMixin
from openrevenue.utils.helpers import utc_now


class App(Base, TimestampMixin):
    """Tenant application with its primary API key and store credentials."""

    __tablename__ = "apps"

    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    api_key: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        nullable=False,
    )

    # App Store (receipt-blob verification)
    app_store_shared_secret: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    app_store_bundle_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Play Store (token-based verification)
    play_store_service_account_json: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    play_store_package_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    keys: Mapped[list["AppKey"]] = relationship(
        "AppKey",
        back_populates="app",
        cascade="all, delete-orphan",
        order_by="AppKey.created_at",
    )

    def __repr__(self) -> str:
        return f"<App(app_id={self.app_id}, name={self.name})>"


class AppKey(Base):
    """Additional API key for an app. Revoked keys never resolve."""

    __tablename__ = "app_keys"

    key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )
    key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    revoked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    app: Mapped["App"] = relationship("App", back_populates="keys")

    __table_args__ = (
        Index("idx_app_keys_app", "app_id"),
    )

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def __repr__(self) -> str:
        return f"<AppKey(app_id={self.app_id}, label={self.label}, revoked={self.is_revoked})>"
