"""Card processor adapter (PaymentIntent-style API)."""

import logging
from decimal import Decimal
from typing import Any

from app.models.order import Order
from app.services.payments.adapters.base import (
    ProviderAdapter,
    WebhookResult,
    parse_timestamp,
    to_decimal,
)
from app.services.payments.errors import ProviderError
from app.services.payments.events import (
    LedgerEvent,
    LedgerEventKind,
    ProviderHandle,
    SubscriptionBillingUpdate,
)
from app.services.payments.http import ProviderHttpClient
from app.services.payments.signer import TimestampedHmacSigner, VerificationPolicy

logger = logging.getLogger(__name__)

INTENT_EVENTS = {
    "payment_intent.succeeded": LedgerEventKind.paid,
    "payment_intent.payment_failed": LedgerEventKind.failed,
    "payment_intent.canceled": LedgerEventKind.canceled,
    "payment_intent.processing": LedgerEventKind.pending,
}

INTENT_STATUSES = {
    "succeeded": LedgerEventKind.paid,
    "canceled": LedgerEventKind.canceled,
    "processing": LedgerEventKind.pending,
    "requires_payment_method": LedgerEventKind.pending,
    "requires_confirmation": LedgerEventKind.pending,
    "requires_action": LedgerEventKind.pending,
    "requires_capture": LedgerEventKind.authorized,
}

SUBSCRIPTION_EVENT_PREFIX = "customer.subscription."


class CardAdapter(ProviderAdapter):
    provider = "card"
    signature_header = "X-Card-Signature"

    def __init__(
        self,
        http: ProviderHttpClient,
        policy: VerificationPolicy,
        secret_key: str | None,
        signer: TimestampedHmacSigner,
    ):
        super().__init__(http, policy)
        self.secret_key = secret_key
        self.signer = signer

    def _headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise ProviderError(self.provider, "Card processor secret key is not configured")
        return {"Authorization": f"Bearer {self.secret_key}"}

    def initiate(self, order: Order, amount: Decimal) -> ProviderHandle:
        payload = {
            "amount": int(amount),
            "currency": order.currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "metadata": {"order_id": str(order.id), "owner_id": order.owner_id},
        }
        response = self.http.request(
            "POST",
            "/payment_intents",
            operation="initiate",
            json_body=payload,
            headers={**self._headers(), "Idempotency-Key": f"order-{order.id}-v{order.version}"},
        )
        data = response.json()
        intent_id = data.get("id")
        if not intent_id:
            raise ProviderError(self.provider, "Card processor returned no payment intent id")
        return ProviderHandle(
            provider=self.provider,
            external_id=intent_id,
            raw={"client_secret": data.get("client_secret"), "status": data.get("status")},
        )

    def poll_status(self, handle: ProviderHandle) -> LedgerEvent:
        response = self.http.request(
            "GET",
            f"/payment_intents/{handle.external_id}",
            operation="poll_status",
            headers=self._headers(),
        )
        data = response.json()
        status = data.get("status") or ""
        kind = INTENT_STATUSES.get(status, LedgerEventKind.pending)
        if status == "requires_payment_method" and data.get("last_payment_error"):
            kind = LedgerEventKind.failed
        return LedgerEvent(
            kind=kind,
            provider=self.provider,
            order_id=(data.get("metadata") or {}).get("order_id"),
            external_id=handle.external_id,
            amount=to_decimal(data.get("amount")),
        )

    def void(self, handle: ProviderHandle) -> None:
        self.http.request(
            "POST",
            f"/payment_intents/{handle.external_id}/cancel",
            operation="void",
            headers=self._headers(),
        )

    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> None:
        self.signer.verify(signature_header, raw_body)

    def parse_event(self, payload: dict[str, Any]) -> WebhookResult:
        event_type = payload.get("type") or ""
        event_id = payload.get("id")
        obj = (payload.get("data") or {}).get("object") or {}

        if event_type in INTENT_EVENTS:
            error = obj.get("last_payment_error") or {}
            return LedgerEvent(
                kind=INTENT_EVENTS[event_type],
                provider=self.provider,
                order_id=(obj.get("metadata") or {}).get("order_id"),
                external_id=obj.get("id"),
                event_id=event_id,
                amount=to_decimal(obj.get("amount")),
                occurred_at=parse_timestamp(payload.get("created")),
                reason=error.get("message") or obj.get("cancellation_reason"),
            )

        if event_type == "charge.refunded":
            amount = to_decimal(obj.get("amount"))
            refunded = to_decimal(obj.get("amount_refunded"))
            if not obj.get("refunded") and (amount is None or refunded != amount):
                logger.info("Ignoring partial card refund %s", obj.get("id"))
                return self.unrecognized("charge.refunded.partial", event_id)
            return LedgerEvent(
                kind=LedgerEventKind.refunded,
                provider=self.provider,
                order_id=(obj.get("metadata") or {}).get("order_id"),
                external_id=obj.get("payment_intent"),
                event_id=event_id,
                amount=refunded,
                occurred_at=parse_timestamp(payload.get("created")),
            )

        if event_type.startswith(SUBSCRIPTION_EVENT_PREFIX):
            metadata = obj.get("metadata") or {}
            status = obj.get("status") or ""
            if event_type == "customer.subscription.deleted":
                status = "canceled"
            return SubscriptionBillingUpdate(
                provider=self.provider,
                provider_subscription_id=obj.get("id") or "",
                event_type=event_type,
                status=status,
                current_period_end=parse_timestamp(obj.get("current_period_end")),
                cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                owner_id=metadata.get("owner_id"),
                group_id=metadata.get("group_id"),
                plan_type=metadata.get("plan_type"),
                event_id=event_id,
                recipient_email=metadata.get("email"),
            )

        return self.unrecognized(event_type, event_id)

    def set_cancel_at_period_end(self, provider_subscription_id: str, flag: bool) -> bool:
        """Schedule (or withdraw) cancellation at the end of the paid period."""
        response = self.http.request(
            "POST",
            f"/subscriptions/{provider_subscription_id}",
            operation="update_subscription",
            json_body={"cancel_at_period_end": flag},
            headers=self._headers(),
        )
        data = response.json()
        return bool(data.get("cancel_at_period_end", flag))
