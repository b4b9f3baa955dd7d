import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class ConsumptionKind(enum.Enum):
    inventory = "inventory"
    coupon = "coupon"


class ConsumptionIntent(Base):
    """Stock or coupon usage owed by a paid order, consumed by the storefront."""

    __tablename__ = "consumption_intents"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True
    )
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[ConsumptionKind] = mapped_column(Enum(ConsumptionKind), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(80))
    coupon_code: Mapped[str | None] = mapped_column(String(64))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
