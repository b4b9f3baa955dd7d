import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class OrderStatus(enum.Enum):
    pending = "pending"
    pending_provider_a = "pending_provider_a"
    pending_provider_b = "pending_provider_b"
    pending_deferred = "pending_deferred"
    paid = "paid"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    canceled = "canceled"
    failed = "failed"
    refunded = "refunded"


class PaymentStatus(enum.Enum):
    authorized = "authorized"
    captured = "captured"
    failed = "failed"
    refunded = "refunded"
    expired = "expired"


class PaymentProviderType(enum.Enum):
    card = "card"
    qr_wallet_a = "qr_wallet_a"
    qr_wallet_b = "qr_wallet_b"
    deferred = "deferred"


class RemoteVoidStatus(enum.Enum):
    not_required = "not_required"
    confirmed = "confirmed"
    unconfirmed = "unconfirmed"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus), default=OrderStatus.pending, nullable=False
    )
    payment_status: Mapped[PaymentStatus | None] = mapped_column(Enum(PaymentStatus))
    provider: Mapped[PaymentProviderType | None] = mapped_column(Enum(PaymentProviderType))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="JPY")
    line_items: Mapped[list | None] = mapped_column(JSON)
    recipient_email: Mapped[str | None] = mapped_column(String(255))
    coupon_code: Mapped[str | None] = mapped_column(String(64))
    remote_void_status: Mapped[RemoteVoidStatus] = mapped_column(
        Enum(RemoteVoidStatus), default=RemoteVoidStatus.not_required
    )
    cancel_reason: Mapped[str | None] = mapped_column(String(120))
    failure_reason: Mapped[str | None] = mapped_column(Text)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    external_refs = relationship(
        "OrderExternalRef",
        back_populates="order",
        order_by="OrderExternalRef.created_at",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def external_ref_map(self) -> dict[str, str]:
        """Latest external id per provider."""
        refs: dict[str, str] = {}
        for ref in self.external_refs:
            refs[ref.provider.value] = ref.external_id
        return refs


class OrderExternalRef(Base):
    __tablename__ = "order_external_refs"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_order_external_refs_provider_ref"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True
    )
    provider: Mapped[PaymentProviderType] = mapped_column(
        Enum(PaymentProviderType), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(160), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    order = relationship("Order", back_populates="external_refs")
