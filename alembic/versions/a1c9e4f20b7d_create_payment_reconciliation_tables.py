"""create payment reconciliation tables

Revision ID: a1c9e4f20b7d
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "a1c9e4f20b7d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = (
    "pending",
    "pending_provider_a",
    "pending_provider_b",
    "pending_deferred",
    "paid",
    "processing",
    "shipped",
    "delivered",
    "canceled",
    "failed",
    "refunded",
)
PAYMENT_STATUSES = ("authorized", "captured", "failed", "refunded", "expired")
PROVIDERS = ("card", "qr_wallet_a", "qr_wallet_b", "deferred")
REMOTE_VOID_STATUSES = ("not_required", "confirmed", "unconfirmed")


def upgrade() -> None:
    order_status = sa.Enum(*ORDER_STATUSES, name="orderstatus")
    payment_status = sa.Enum(*PAYMENT_STATUSES, name="paymentstatus")
    provider_type = sa.Enum(*PROVIDERS, name="paymentprovidertype")
    remote_void_status = sa.Enum(*REMOTE_VOID_STATUSES, name="remotevoidstatus")

    op.create_table(
        "orders",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("status", order_status, nullable=False),
        sa.Column("payment_status", payment_status, nullable=True),
        sa.Column("provider", provider_type, nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("line_items", sa.JSON, nullable=True),
        sa.Column("recipient_email", sa.String(255), nullable=True),
        sa.Column("remote_void_status", remote_void_status, nullable=True),
        sa.Column("cancel_reason", sa.String(120), nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_orders_owner_id", "orders", ["owner_id"])
    op.create_index(
        "ix_orders_remote_void_status", "orders", ["status", "remote_void_status"]
    )

    op.create_table(
        "order_external_refs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("provider", provider_type, nullable=False),
        sa.Column("external_id", sa.String(160), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "provider", "external_id", name="uq_order_external_refs_provider_ref"
        ),
    )
    op.create_index("ix_order_external_refs_order_id", "order_external_refs", ["order_id"])

    op.create_table(
        "idempotency_records",
        sa.Column("key", sa.String(255), primary_key=True),
        sa.Column("applied_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("result_summary", sa.String(255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_idempotency_records_expires_at", "idempotency_records", ["expires_at"]
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("group_id", sa.String(128), nullable=False),
        sa.Column("provider", sa.String(40), nullable=True),
        sa.Column("provider_subscription_id", sa.String(160), nullable=False, unique=True),
        sa.Column("cached_status", sa.String(40), nullable=False, server_default="active"),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean, nullable=True, server_default=sa.false()),
        sa.Column(
            "plan_type", sa.Enum("monthly", "yearly", name="subscriptionplantype"), nullable=True
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_owner_id", "subscriptions", ["owner_id"])
    op.create_index("ix_subscriptions_group_id", "subscriptions", ["group_id"])

    op.create_table(
        "access_codes",
        sa.Column("subject_id", sa.String(128), primary_key=True),
        sa.Column("code_hash", sa.String(64), nullable=False),
        sa.Column("salt", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("session_id", sa.String(128), nullable=True),
        sa.Column("device_hash", sa.String(64), nullable=True),
        sa.Column("issued_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "notifications",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("template", sa.String(80), nullable=False),
        sa.Column("recipient", sa.String(255), nullable=False),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=True),
        sa.Column("payload", sa.JSON, nullable=True),
        sa.Column(
            "status",
            sa.Enum("queued", "sent", "failed", name="notificationstatus"),
            nullable=True,
        ),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notifications_order_id", "notifications", ["order_id"])


def downgrade() -> None:
    op.drop_index("ix_notifications_order_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_table("access_codes")
    op.drop_index("ix_subscriptions_group_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_owner_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_idempotency_records_expires_at", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index("ix_order_external_refs_order_id", table_name="order_external_refs")
    op.drop_table("order_external_refs")
    op.drop_index("ix_orders_remote_void_status", table_name="orders")
    op.drop_index("ix_orders_owner_id", table_name="orders")
    op.drop_table("orders")
    bind = op.get_bind()
    for name in (
        "notificationstatus",
        "subscriptionplantype",
        "remotevoidstatus",
        "paymentprovidertype",
        "paymentstatus",
        "orderstatus",
    ):
        sa.Enum(name=name).drop(bind, checkfirst=True)
