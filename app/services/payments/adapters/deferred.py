"""Deferred ("pay later") adapter: authorize first, capture once authorized."""

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
from app.services.payments.events import LedgerEvent, LedgerEventKind, ProviderHandle
from app.services.payments.http import ProviderHttpClient
from app.services.payments.signer import TimestampedHmacSigner, VerificationPolicy

logger = logging.getLogger(__name__)

API_VERSION = "2018-04-10"

EVENT_TYPES = {
    "payment.authorized": LedgerEventKind.authorized,
    "payment.captured": LedgerEventKind.paid,
    "payment.closed": LedgerEventKind.paid,
    "payment.rejected": LedgerEventKind.failed,
    "payment.refunded": LedgerEventKind.refunded,
}

# Legacy callbacks carry only a status string.
STATUS_EVENT_TYPES = {
    "authorize_success": "payment.authorized",
    "capture_success": "payment.captured",
    "close_success": "payment.closed",
    "reject": "payment.rejected",
    "refund_success": "payment.refunded",
}

PAYMENT_STATUSES = {
    "pending": LedgerEventKind.pending,
    "authorized": LedgerEventKind.authorized,
    "closed": LedgerEventKind.paid,
    "rejected": LedgerEventKind.failed,
}


class DeferredPayAdapter(ProviderAdapter):
    provider = "deferred"
    signature_header = "X-Deferred-Signature"

    def __init__(
        self,
        http: ProviderHttpClient,
        policy: VerificationPolicy,
        signer: TimestampedHmacSigner,
        secret_key: str | None,
    ):
        super().__init__(http, policy)
        self.signer = signer
        self.secret_key = secret_key

    def _headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise ProviderError(self.provider, "Deferred payment secret key is not configured")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Paidy-Version": API_VERSION,
        }

    def initiate(self, order: Order, amount: Decimal) -> ProviderHandle:
        items = [
            {
                "id": item.get("sku"),
                "title": item.get("name"),
                "quantity": item.get("quantity", 1),
                "unit_price": int(Decimal(str(item.get("unit_price", 0)))),
            }
            for item in order.line_items or []
        ]
        response = self.http.request(
            "POST",
            "/payments",
            operation="initiate",
            json_body={
                "amount": int(amount),
                "currency": order.currency,
                "order": {"order_ref": str(order.id), "items": items},
                "buyer": {"email": order.recipient_email},
            },
            headers=self._headers(),
        )
        data = response.json()
        payment_id = data.get("id")
        if not payment_id:
            raise ProviderError(self.provider, "Deferred payment returned no payment id")
        return ProviderHandle(
            provider=self.provider,
            external_id=payment_id,
            redirect_url=data.get("checkout_url"),
            expires_at=parse_timestamp(data.get("expires_at")),
            raw={"status": data.get("status")},
        )

    def poll_status(self, handle: ProviderHandle) -> LedgerEvent:
        response = self.http.request(
            "GET",
            f"/payments/{handle.external_id}",
            operation="poll_status",
            headers=self._headers(),
        )
        data = response.json()
        kind = PAYMENT_STATUSES.get(data.get("status") or "", LedgerEventKind.pending)
        if kind == LedgerEventKind.paid and not data.get("captures"):
            # Closed without a capture is a cancellation, not a payment.
            kind = LedgerEventKind.canceled
        return LedgerEvent(
            kind=kind,
            provider=self.provider,
            order_id=(data.get("order") or {}).get("order_ref"),
            external_id=handle.external_id,
            amount=to_decimal(data.get("amount")),
        )

    def capture(self, handle: ProviderHandle) -> LedgerEvent:
        response = self.http.request(
            "POST",
            f"/payments/{handle.external_id}/captures",
            operation="capture",
            json_body={},
            headers=self._headers(),
        )
        data = response.json()
        capture_id = (data.get("captures") or [{}])[-1].get("id")
        return LedgerEvent(
            kind=LedgerEventKind.paid,
            provider=self.provider,
            order_id=(data.get("order") or {}).get("order_ref"),
            external_id=handle.external_id,
            event_id=f"capture:{capture_id or handle.external_id}",
            amount=to_decimal(data.get("amount")),
        )

    def void(self, handle: ProviderHandle) -> None:
        self.http.request(
            "POST",
            f"/payments/{handle.external_id}/close",
            operation="void",
            json_body={},
            headers=self._headers(),
        )

    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> None:
        self.signer.verify(signature_header, raw_body)

    def parse_event(self, payload: dict[str, Any]) -> WebhookResult:
        data = payload.get("data") or {}
        status = payload.get("status") or data.get("status") or ""
        event_type = payload.get("type") or payload.get("event_type") or STATUS_EVENT_TYPES.get(status)
        payment_id = payload.get("payment_id") or data.get("payment_id") or data.get("id")
        event_id = payload.get("id") or (f"{event_type}:{payment_id}" if payment_id else None)
        if event_type not in EVENT_TYPES:
            return self.unrecognized(event_type or status, event_id)
        kind = EVENT_TYPES[event_type]
        captures = payload.get("captures") or data.get("captures")
        if event_type == "payment.closed" and not captures:
            kind = LedgerEventKind.canceled
        return LedgerEvent(
            kind=kind,
            provider=self.provider,
            order_id=payload.get("order_ref") or data.get("order_ref"),
            external_id=payment_id,
            event_id=event_id,
            amount=to_decimal(payload.get("amount") or data.get("amount")),
            occurred_at=parse_timestamp(payload.get("created_at") or data.get("created_at")),
        )
