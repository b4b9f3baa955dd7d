"""add consumption intents and order coupon code

Revision ID: b7e2d5a90c14
Revises: a1c9e4f20b7d
Create Date: 2026-10-18 15:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "b7e2d5a90c14"
down_revision: Union[str, None] = "a1c9e4f20b7d"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("orders", sa.Column("coupon_code", sa.String(64), nullable=True))
    op.create_table(
        "consumption_intents",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("order_id", UUID(as_uuid=True), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column(
            "kind",
            sa.Enum("inventory", "coupon", name="consumptionkind"),
            nullable=False,
        ),
        sa.Column("sku", sa.String(80), nullable=True),
        sa.Column("coupon_code", sa.String(64), nullable=True),
        sa.Column("quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_consumption_intents_order_id", "consumption_intents", ["order_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_consumption_intents_order_id", table_name="consumption_intents")
    op.drop_table("consumption_intents")
    sa.Enum(name="consumptionkind").drop(op.get_bind(), checkfirst=True)
    op.drop_column("orders", "coupon_code")
