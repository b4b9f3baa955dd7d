from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Union

from app.models.order import Order
from app.services.payments.errors import InvalidPayload
from app.services.payments.events import (
    LedgerEvent,
    ProviderHandle,
    SubscriptionBillingUpdate,
    Unrecognized,
)
from app.services.payments.http import ProviderHttpClient
from app.services.payments.signer import VerificationPolicy

logger = logging.getLogger(__name__)

WebhookResult = Union[LedgerEvent, SubscriptionBillingUpdate, Unrecognized]


def parse_timestamp(value: Any) -> datetime | None:
    """Accept epoch seconds or ISO-8601 strings as providers send them."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


class ProviderAdapter(ABC):
    """One payment provider behind the interface the reconciler consumes.

    ``translate_webhook`` always authenticates the raw body before parsing it.
    """

    provider: str
    signature_header: str

    def __init__(self, http: ProviderHttpClient, policy: VerificationPolicy):
        self.http = http
        self.policy = policy

    @abstractmethod
    def initiate(self, order: Order, amount: Decimal) -> ProviderHandle:
        raise NotImplementedError

    @abstractmethod
    def poll_status(self, handle: ProviderHandle) -> LedgerEvent:
        raise NotImplementedError

    @abstractmethod
    def void(self, handle: ProviderHandle) -> None:
        raise NotImplementedError

    @abstractmethod
    def verify_signature(self, raw_body: bytes, signature_header: str | None) -> None:
        raise NotImplementedError

    @abstractmethod
    def parse_event(self, payload: dict[str, Any]) -> WebhookResult:
        raise NotImplementedError

    def translate_webhook(
        self, raw_body: bytes, signature_header: str | None
    ) -> WebhookResult:
        if self.policy == VerificationPolicy.always:
            self.verify_signature(raw_body, signature_header)
        else:
            logger.warning("Signature verification disabled for %s webhook", self.provider)
        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise InvalidPayload(self.provider) from exc
        if not isinstance(payload, dict):
            raise InvalidPayload(self.provider)
        return self.parse_event(payload)

    def unrecognized(self, event_type: str | None, event_id: str | None = None) -> Unrecognized:
        return Unrecognized(
            provider=self.provider, event_type=event_type or "unknown", event_id=event_id
        )
