"""QR wallet A adapter: dynamic QR code API authenticated with OPA-Auth."""

import json
import logging
import secrets
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
from app.services.payments.signer import OpaAuthSigner, VerificationPolicy

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json; charset=UTF-8"
WEBHOOK_PATH = "/api/v1/payments/webhooks/qr_wallet_a"

STATE_EVENTS = {
    "CREATED": LedgerEventKind.pending,
    "AUTHORIZED": LedgerEventKind.authorized,
    "COMPLETED": LedgerEventKind.paid,
    "CANCELED": LedgerEventKind.canceled,
    "EXPIRED": LedgerEventKind.expired,
    "EXPIRED_USER_CONFIRMATION": LedgerEventKind.expired,
    "FAILED": LedgerEventKind.failed,
}


def merchant_payment_id(order: Order) -> str:
    # A fresh suffix per attempt; the provider refuses to reuse a payment id.
    return f"{order.id.hex}-{secrets.token_hex(4)}"


def order_id_from_payment_id(payment_id: str | None) -> str | None:
    if not payment_id:
        return None
    prefix = payment_id.split("-", 1)[0]
    return prefix if len(prefix) == 32 else None


class QrWalletAAdapter(ProviderAdapter):
    provider = "qr_wallet_a"
    signature_header = "Authorization"

    def __init__(
        self,
        http: ProviderHttpClient,
        policy: VerificationPolicy,
        signer: OpaAuthSigner,
        merchant_id: str | None = None,
        redirect_url: str | None = None,
        webhook_path: str = WEBHOOK_PATH,
    ):
        super().__init__(http, policy)
        self.signer = signer
        self.merchant_id = merchant_id
        self.redirect_url = redirect_url
        self.webhook_path = webhook_path

    def _call(self, method: str, path: str, operation: str, payload: dict | None = None):
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else None
        content_type = JSON_CONTENT_TYPE if body is not None else None
        headers = {}
        if self.merchant_id:
            headers["X-ASSUME-MERCHANT"] = self.merchant_id
        response = self.http.request(
            method,
            path,
            operation=operation,
            content=body,
            headers=headers,
            sign=lambda: self.signer.build_headers(method, path, body, content_type),
        )
        data = response.json()
        result_code = (data.get("resultInfo") or {}).get("code")
        if result_code not in (None, "SUCCESS", "REQUEST_ACCEPTED"):
            raise ProviderError(self.provider, f"QR wallet A error: {result_code}")
        return data.get("data") or {}

    def initiate(self, order: Order, amount: Decimal) -> ProviderHandle:
        payment_id = merchant_payment_id(order)
        data = self._call(
            "POST",
            "/v2/codes",
            "initiate",
            {
                "merchantPaymentId": payment_id,
                "amount": {"amount": int(amount), "currency": order.currency},
                "codeType": "ORDER_QR",
                "orderDescription": f"Order {order.id}",
                "requestedAt": int(self.signer.clock()),
                "redirectUrl": self.redirect_url,
                "redirectType": "WEB_LINK",
            },
        )
        expiry_ms = data.get("expiryDate")
        return ProviderHandle(
            provider=self.provider,
            external_id=payment_id,
            redirect_url=data.get("url") or data.get("deeplink"),
            expires_at=parse_timestamp(expiry_ms / 1000) if isinstance(expiry_ms, int) else None,
            raw={"code_id": data.get("codeId")},
        )

    def poll_status(self, handle: ProviderHandle) -> LedgerEvent:
        data = self._call("GET", f"/v2/codes/payments/{handle.external_id}", "poll_status")
        state = (data.get("status") or "").upper()
        return LedgerEvent(
            kind=STATE_EVENTS.get(state, LedgerEventKind.pending),
            provider=self.provider,
            order_id=order_id_from_payment_id(handle.external_id),
            external_id=handle.external_id,
            amount=to_decimal((data.get("amount") or {}).get("amount")),
            occurred_at=parse_timestamp(data.get("acceptedAt")),
        )

    def void(self, handle: ProviderHandle) -> None:
        self._call("DELETE", f"/v2/payments/{handle.external_id}", "void")

    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> None:
        self.signer.verify(
            signature_header,
            raw_body,
            method="POST",
            path=self.webhook_path,
            content_type=JSON_CONTENT_TYPE,
        )

    def parse_event(self, payload: dict[str, Any]) -> WebhookResult:
        notification_type = payload.get("notification_type")
        state = payload.get("state") or ""
        if notification_type != "Transaction" or state not in STATE_EVENTS:
            return self.unrecognized(f"{notification_type}:{state}" if state else notification_type)

        occurred = payload.get("paid_at") or payload.get("authorized_at") or payload.get("expires_at")
        provider_ref = payload.get("order_id") or payload.get("merchant_order_id") or "unknown"
        event_id = ":".join([provider_ref, state, str(occurred or "")])
        return LedgerEvent(
            kind=STATE_EVENTS[state],
            provider=self.provider,
            order_id=order_id_from_payment_id(payload.get("merchant_order_id")),
            external_id=payload.get("merchant_order_id"),
            event_id=event_id,
            amount=to_decimal(payload.get("order_amount")),
            occurred_at=parse_timestamp(occurred),
            reason=state.lower() if state != "COMPLETED" else None,
        )
