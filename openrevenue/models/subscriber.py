"""
Subscriber Model
================

A subscriber is an end user of a tenant app, identified by the
app-chosen ``app_user_id``.  Created lazily on first reference and
never deleted.
"""

from datetime import datetime
from typing import Any
import uuid

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from openrevenue.db.base import Base, JSONType
from openrevenue.utils.helpers import utc_now


class Subscriber(Base):
    """Subscriber record keyed by (app_id, app_user_id)."""

    __tablename__ = "subscribers"

    subscriber_id: Mapped[uuid.UUID] = mapped_column(
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

    first_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    # Free-form string attributes (attribution, campaign, email...)
    attributes: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=dict,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("app_id", "app_user_id", name="uq_subscribers_app_user"),
    )

    def __repr__(self) -> str:
        return f"<Subscriber(app_id={self.app_id}, app_user_id={self.app_user_id})>"
