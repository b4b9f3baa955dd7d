"""Provider-neutral values exchanged between adapters and the order ledger."""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any


class LedgerEventKind(enum.Enum):
    initiated = "initiated"
    pending = "pending"
    authorized = "authorized"
    paid = "paid"
    failed = "failed"
    expired = "expired"
    canceled = "canceled"
    refunded = "refunded"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"


FULFILLMENT_KINDS = {
    LedgerEventKind.processing,
    LedgerEventKind.shipped,
    LedgerEventKind.delivered,
}


@dataclass(frozen=True)
class LedgerEvent:
    kind: LedgerEventKind
    provider: str
    order_id: str | None = None
    external_id: str | None = None
    event_id: str | None = None
    amount: Decimal | None = None
    occurred_at: datetime | None = None
    reason: str | None = None

    @property
    def idempotency_id(self) -> str | None:
        """Provider-scoped identity of this delivery, if the provider gives one."""
        if self.event_id:
            return self.event_id
        if self.external_id:
            return f"{self.external_id}:{self.kind.value}"
        return None


@dataclass(frozen=True)
class Unrecognized:
    provider: str
    event_type: str
    event_id: str | None = None


@dataclass(frozen=True)
class SubscriptionBillingUpdate:
    provider: str
    provider_subscription_id: str
    event_type: str
    status: str
    current_period_end: datetime | None
    cancel_at_period_end: bool = False
    owner_id: str | None = None
    group_id: str | None = None
    plan_type: str | None = None
    event_id: str | None = None
    recipient_email: str | None = None


@dataclass(frozen=True)
class ProviderHandle:
    provider: str
    external_id: str
    redirect_url: str | None = None
    expires_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)
