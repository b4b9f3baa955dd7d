"""Mock utilities for testing external dependencies."""

from decimal import Decimal
from typing import Any

from app.models.order import Order, OrderStatus
from app.services.notifications import NotificationSender
from app.services.payments.adapters.base import ProviderAdapter, WebhookResult, to_decimal
from app.services.payments.errors import SignatureInvalid
from app.services.payments.events import LedgerEvent, LedgerEventKind, ProviderHandle
from app.services.payments.signer import VerificationPolicy

VALID_SIGNATURE = "valid-signature"


class FakeSMTP:
    """Mock SMTP server for email tests."""

    def __init__(self, host: str = "", port: int = 25, **kwargs):
        self.host = host
        self.port = port
        self.messages: list[tuple[str, str, str]] = []
        self.connected = True
        self.logged_in = False
        self.started_tls = False

    def starttls(self):
        self.started_tls = True

    def login(self, user: str, password: str):
        self.logged_in = True

    def sendmail(self, from_addr: str, to_addrs, msg: str):
        self.messages.append((from_addr, to_addrs, msg))

    def quit(self):
        self.connected = False

    def close(self):
        self.connected = False


class RecordingQueue:
    """Stands in for a Celery ``.delay`` hand-off and remembers what was queued."""

    def __init__(self):
        self.calls: list[Any] = []

    def __call__(self, value):
        self.calls.append(value)

    @property
    def items(self) -> list:
        flattened: list = []
        for call in self.calls:
            if isinstance(call, list):
                flattened.extend(call)
            else:
                flattened.append(call)
        return flattened


class FakeSender(NotificationSender):
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: list[tuple[str, str, dict]] = []

    def send(self, template, recipient, data) -> bool:
        self.sent.append((template, recipient, dict(data)))
        return self.ok


class FakeAdapter(ProviderAdapter):
    """Scriptable provider adapter.

    Webhook bodies are the JSON form of ``LedgerEvent`` fields and are only
    accepted with ``VALID_SIGNATURE``.
    """

    def __init__(self, provider: str, policy: VerificationPolicy = VerificationPolicy.always):
        super().__init__(http=None, policy=policy)
        self.provider = provider
        self.signature_header = "X-Test-Signature"
        self.initiated: list[str] = []
        self.voided: list[str] = []
        self.initiate_error: Exception | None = None
        self.void_error: Exception | None = None
        self.poll_error: Exception | None = None
        self.subscription_error: Exception | None = None
        self.subscription_updates: list[tuple[str, bool]] = []
        self.poll_kind = LedgerEventKind.pending
        self._counter = 0

    def initiate(self, order: Order, amount: Decimal) -> ProviderHandle:
        if self.initiate_error is not None:
            raise self.initiate_error
        self._counter += 1
        external_id = f"{self.provider}_ext_{self._counter}"
        self.initiated.append(str(order.id))
        return ProviderHandle(
            provider=self.provider,
            external_id=external_id,
            redirect_url=f"https://pay.example/{external_id}",
        )

    def poll_status(self, handle: ProviderHandle) -> LedgerEvent:
        if self.poll_error is not None:
            raise self.poll_error
        return LedgerEvent(
            kind=self.poll_kind, provider=self.provider, external_id=handle.external_id
        )

    def void(self, handle: ProviderHandle) -> None:
        if self.void_error is not None:
            raise self.void_error
        self.voided.append(handle.external_id)

    def capture(self, handle: ProviderHandle) -> LedgerEvent:
        return LedgerEvent(
            kind=LedgerEventKind.paid,
            provider=self.provider,
            external_id=handle.external_id,
            event_id=f"capture:{handle.external_id}",
        )

    def set_cancel_at_period_end(self, provider_subscription_id: str, flag: bool) -> bool:
        if self.subscription_error is not None:
            raise self.subscription_error
        self.subscription_updates.append((provider_subscription_id, flag))
        return flag

    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> None:
        if signature_header != VALID_SIGNATURE:
            raise SignatureInvalid("mac_mismatch")

    def parse_event(self, payload: dict[str, Any]) -> WebhookResult:
        kind = payload.get("kind")
        if kind not in {item.value for item in LedgerEventKind}:
            return self.unrecognized(kind, payload.get("event_id"))
        return LedgerEvent(
            kind=LedgerEventKind(kind),
            provider=self.provider,
            order_id=payload.get("order_id"),
            external_id=payload.get("external_id"),
            event_id=payload.get("event_id"),
            amount=to_decimal(payload.get("amount")),
            reason=payload.get("reason"),
        )


def make_order(
    db_session,
    status: OrderStatus = OrderStatus.pending,
    amount: str = "5000",
    owner_id: str = "user-1",
    recipient_email: str | None = "fan@example.com",
    **kwargs,
) -> Order:
    order = Order(
        owner_id=owner_id,
        status=status,
        amount=Decimal(amount),
        currency="JPY",
        line_items=[{"sku": "TICKET", "name": "Live ticket", "quantity": 1, "unit_price": amount}],
        recipient_email=recipient_email,
        **kwargs,
    )
    db_session.add(order)
    db_session.commit()
    db_session.refresh(order)
    return order
