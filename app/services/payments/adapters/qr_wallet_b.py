"""QR wallet B adapter: hosted payment-link API with OAuth client credentials."""

import logging
import time
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

CHARGE_EVENTS = {
    "EVENT_TYPE_CHARGE_SUCCESS": LedgerEventKind.paid,
    "EVENT_TYPE_CHARGE_FAIL": LedgerEventKind.failed,
    "EVENT_TYPE_CHARGE_CANCEL": LedgerEventKind.canceled,
}

CHARGE_STATUSES = {
    "CHARGE_STATUS_SUCCESS": LedgerEventKind.paid,
    "CHARGE_STATUS_FAILURE": LedgerEventKind.failed,
    "CHARGE_STATUS_CANCELLED": LedgerEventKind.canceled,
    "CHARGE_STATUS_WAITING_EPOS": LedgerEventKind.pending,
    "CHARGE_STATUS_PENDING": LedgerEventKind.pending,
}

TOKEN_REFRESH_MARGIN_SECONDS = 30


class QrWalletBAdapter(ProviderAdapter):
    provider = "qr_wallet_b"
    signature_header = "X-Wallet-Signature"

    def __init__(
        self,
        http: ProviderHttpClient,
        policy: VerificationPolicy,
        signer: TimestampedHmacSigner,
        client_id: str | None,
        client_secret: str | None,
        success_url: str | None = None,
    ):
        super().__init__(http, policy)
        self.signer = signer
        self.client_id = client_id
        self.client_secret = client_secret
        self.success_url = success_url
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self.client_id or not self.client_secret:
            raise ProviderError(self.provider, "QR wallet B credentials are not configured")
        response = self.http.request(
            "POST",
            "/oauth2/token",
            operation="token",
            json_body={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise ProviderError(self.provider, "QR wallet B returned no access token")
        expires_in = int(data.get("expires_in") or 300)
        self._token = token
        self._token_expires_at = time.monotonic() + max(0, expires_in - TOKEN_REFRESH_MARGIN_SECONDS)
        return token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token()}"}

    def initiate(self, order: Order, amount: Decimal) -> ProviderHandle:
        response = self.http.request(
            "POST",
            "/payment-links",
            operation="initiate",
            json_body={
                "charge": {
                    "price": int(amount),
                    "currency": order.currency,
                    "description": f"Order {order.id}",
                    "metadata": {"order_id": str(order.id)},
                },
                "redirect": {"success_url": self.success_url},
            },
            headers=self._headers(),
        )
        data = response.json()
        charge_id = (data.get("charge") or {}).get("id")
        if not charge_id:
            raise ProviderError(self.provider, "QR wallet B returned no charge id")
        link = data.get("payment_link") or {}
        return ProviderHandle(
            provider=self.provider,
            external_id=charge_id,
            redirect_url=link.get("url"),
            expires_at=parse_timestamp(link.get("expires_at")),
        )

    def poll_status(self, handle: ProviderHandle) -> LedgerEvent:
        response = self.http.request(
            "GET",
            f"/charges/{handle.external_id}",
            operation="poll_status",
            headers=self._headers(),
        )
        charge = response.json().get("charge") or {}
        return LedgerEvent(
            kind=CHARGE_STATUSES.get(charge.get("status") or "", LedgerEventKind.pending),
            provider=self.provider,
            order_id=(charge.get("metadata") or {}).get("order_id"),
            external_id=handle.external_id,
            amount=to_decimal(charge.get("price")),
        )

    def void(self, handle: ProviderHandle) -> None:
        self.http.request(
            "POST",
            f"/charges/{handle.external_id}/cancel",
            operation="void",
            headers=self._headers(),
        )

    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> None:
        self.signer.verify(signature_header, raw_body)

    def parse_event(self, payload: dict[str, Any]) -> WebhookResult:
        event_type = payload.get("event_type") or ""
        event_id = payload.get("id")
        if event_type not in CHARGE_EVENTS:
            return self.unrecognized(event_type, event_id)
        charge = payload.get("content") or {}
        return LedgerEvent(
            kind=CHARGE_EVENTS[event_type],
            provider=self.provider,
            order_id=(charge.get("metadata") or {}).get("order_id"),
            external_id=charge.get("id"),
            event_id=event_id,
            amount=to_decimal(charge.get("price")),
            occurred_at=parse_timestamp(charge.get("updated_at") or charge.get("processed_at")),
            reason=charge.get("error") if event_type != "EVENT_TYPE_CHARGE_SUCCESS" else None,
        )
