"""
Subscription Models
===================

SQLAlchemy models for subscription and entitlement records.

Rows are only ever inserted, flipped inactive, or reparented by an
identity merge.  At most one active row exists per
(app_id, app_user_id, product_id) for subscriptions and per
(app_id, app_user_id, identifier) for entitlements; the partial unique
indexes below enforce it in storage.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    String,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from openrevenue.db.base import Base
from openrevenue.utils.helpers import utc_now


class Store(str, Enum):
    """Purchase store."""
    APP_STORE = "app_store"
    PLAY_STORE = "play_store"


class StoreEnvironment(str, Enum):
    """Store environment a purchase was made in."""
    PRODUCTION = "production"
    SANDBOX = "sandbox"


class Subscription(Base):
    """
    One purchase period of a product for a subscriber.

    Superseded rows stay in the table with ``is_active = False``.
    """

    __tablename__ = "subscriptions"

    # Primary Key
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Scope
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )
    app_user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Purchase details
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    store: Mapped[str] = mapped_column(
        String(32),
        default=Store.APP_STORE.value,
        nullable=False,
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,  # null ids are never used to deduplicate
    )
    purchase_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    expires_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,  # null = non-expiring
    )
    environment: Mapped[str] = mapped_column(
        String(16),
        default=StoreEnvironment.PRODUCTION.value,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    # Indexes
    __table_args__ = (
        Index("idx_subscriptions_subscriber", "app_id", "app_user_id"),
        Index(
            "uq_subscriptions_active_product",
            "app_id",
            "app_user_id",
            "product_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(app_user_id={self.app_user_id}, product_id={self.product_id}, "
            f"is_active={self.is_active})>"
        )


class Entitlement(Base):
    """
    A named capability granted by a product, for one purchase period.
    """

    __tablename__ = "entitlements"

    # Primary Key
    entitlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # Scope
    app_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )
    app_user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    expires_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    # Indexes
    __table_args__ = (
        Index("idx_entitlements_subscriber", "app_id", "app_user_id"),
        Index(
            "uq_entitlements_active_identifier",
            "app_id",
            "app_user_id",
            "identifier",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Entitlement(app_user_id={self.app_user_id}, identifier={self.identifier}, "
            f"is_active={self.is_active})>"
        )
