"""Initial schema: apps, subscribers, subscriptions, entitlements, audit tables

Revision ID: 0001
Revises:
Create Date: 2026-10-01 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _app_fk() -> sa.Column:
    return sa.Column(
        "app_id",
        sa.Uuid(),
        sa.ForeignKey("apps.app_id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------
    op.create_table(
        "apps",
        sa.Column("app_id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("api_key", sa.String(128), nullable=False, unique=True),
        sa.Column("app_store_shared_secret", sa.String(255), nullable=True),
        sa.Column("app_store_bundle_id", sa.String(255), nullable=True),
        sa.Column("play_store_service_account_json", sa.Text(), nullable=True),
        sa.Column("play_store_package_name", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "app_keys",
        sa.Column("key_id", sa.Uuid(), primary_key=True),
        _app_fk(),
        sa.Column("key", sa.String(128), nullable=False, unique=True),
        sa.Column("label", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_app_keys_app", "app_keys", ["app_id"])

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------
    op.create_table(
        "subscribers",
        sa.Column("subscriber_id", sa.Uuid(), primary_key=True),
        _app_fk(),
        sa.Column("app_user_id", sa.String(255), nullable=False),
        sa.Column("first_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attributes", JSON_TYPE, nullable=False),
        sa.UniqueConstraint("app_id", "app_user_id", name="uq_subscribers_app_user"),
    )

    # ------------------------------------------------------------------
    # Subscriptions and entitlements (one active row per key)
    # ------------------------------------------------------------------
    op.create_table(
        "subscriptions",
        sa.Column("subscription_id", sa.Uuid(), primary_key=True),
        _app_fk(),
        sa.Column("app_user_id", sa.String(255), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("store", sa.String(32), nullable=False),
        sa.Column("transaction_id", sa.String(255), nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("environment", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_subscriptions_subscriber", "subscriptions", ["app_id", "app_user_id"])
    op.create_index(
        "uq_subscriptions_active_product",
        "subscriptions",
        ["app_id", "app_user_id", "product_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )

    op.create_table(
        "entitlements",
        sa.Column("entitlement_id", sa.Uuid(), primary_key=True),
        _app_fk(),
        sa.Column("app_user_id", sa.String(255), nullable=False),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_entitlements_subscriber", "entitlements", ["app_id", "app_user_id"])
    op.create_index(
        "uq_entitlements_active_identifier",
        "entitlements",
        ["app_id", "app_user_id", "identifier"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------
    op.create_table(
        "receipts",
        sa.Column("receipt_id", sa.Uuid(), primary_key=True),
        _app_fk(),
        sa.Column("app_user_id", sa.String(255), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("store", sa.String(32), nullable=False),
        sa.Column("transaction_id", sa.String(255), nullable=True),
        sa.Column("purchase_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw", JSON_TYPE, nullable=False),
        sa.Column("status", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_receipts_subscriber", "receipts", ["app_id", "app_user_id", "created_at"])

    op.create_table(
        "events",
        sa.Column("event_id", sa.Uuid(), primary_key=True),
        _app_fk(),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("app_user_id", sa.String(255), nullable=True),
        sa.Column("product_id", sa.String(255), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_events_app_type_created", "events", ["app_id", "type", "created_at"])
    op.create_index("idx_events_subscriber", "events", ["app_id", "app_user_id"])

    op.create_table(
        "webhook_events",
        sa.Column("webhook_event_id", sa.Uuid(), primary_key=True),
        _app_fk(),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("app_user_id", sa.String(255), nullable=True),
        sa.Column("external_event_id", sa.String(255), nullable=True),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_webhook_events_app_received", "webhook_events", ["app_id", "received_at"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("webhook_events")
    op.drop_table("events")
    op.drop_table("receipts")
    op.drop_index("uq_entitlements_active_identifier", table_name="entitlements")
    op.drop_table("entitlements")
    op.drop_index("uq_subscriptions_active_product", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("subscribers")
    op.drop_table("app_keys")
    op.drop_table("apps")
