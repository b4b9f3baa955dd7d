"""Funnel from provider events and customer actions into the order ledger.

Every provider-originated mutation goes through the same sequence: claim the
event in the idempotency store, apply it through the ledger, record any side
effects it triggers (gated by their own idempotency keys), commit once, and
only then hand queued work to Celery.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable

from sqlalchemy.orm import Session

from app.metrics import observe_webhook
from app.models.order import Order, OrderStatus, PaymentProviderType, RemoteVoidStatus
from app.schemas.payments import OrderCreate
from app.services import subscriptions as subscriptions_service
from app.services.notifications import Notifications
from app.services.payments.adapters import AdapterRegistry
from app.services.payments.consumption import Consumption
from app.services.payments.errors import (
    InvalidPayload,
    OrderNotCancelable,
    OrderNotFound,
    ProviderError,
    ProviderUnavailable,
    SignatureInvalid,
    TransitionRejected,
    WebhookDeferred,
)
from app.services.payments.events import (
    LedgerEvent,
    LedgerEventKind,
    ProviderHandle,
    SubscriptionBillingUpdate,
    Unrecognized,
)
from app.services.payments.idempotency import (
    IdempotencyStore,
    consumption_key,
    event_key,
    notification_key,
)
from app.services.payments.ledger import PENDING_STATUSES, OrderLedger, TransitionResult

logger = logging.getLogger(__name__)

ORDER_CONFIRMATION = "order_confirmation"
SUBSCRIPTION_CONFIRMATION = "subscription_confirmation"
SUBSCRIPTION_CANCELED = "subscription_canceled"

STALE_VERSION_ATTEMPTS = 2

# Ledger rejections that are acknowledged; redelivery would be rejected again.
ACKNOWLEDGED_REJECTIONS = {"illegal_transition", "amount_mismatch"}


@dataclass
class WebhookOutcome:
    status: str
    order_id: str | None = None
    detail: str | None = None


@dataclass
class CheckoutResult:
    order: Order
    handle: ProviderHandle


@dataclass
class _Applied:
    outcome: WebhookOutcome
    result: TransitionResult | None = None
    notification_ids: list[str] = field(default_factory=list)


def _enqueue_capture(order_id: str) -> None:
    try:
        from app.tasks.payments import capture_deferred_payment

        capture_deferred_payment.delay(order_id)
    except Exception as exc:
        logger.error("Failed to queue capture for order %s: %s", order_id, exc)


class PaymentReconciler:
    def __init__(
        self,
        registry: AdapterRegistry,
        store: IdempotencyStore,
        enqueue_notifications: Callable[[list[str]], None] = Notifications.enqueue,
        enqueue_capture: Callable[[str], None] = _enqueue_capture,
    ):
        self.registry = registry
        self.store = store
        self.enqueue_notifications = enqueue_notifications
        self.enqueue_capture = enqueue_capture

    # Webhooks

    def process_webhook(
        self, db: Session, provider: str, body: bytes, signature: str | None
    ) -> WebhookOutcome:
        adapter = self.registry.get(provider)
        try:
            result = adapter.translate_webhook(body, signature)
        except SignatureInvalid as exc:
            logger.warning("Rejected %s webhook signature: %s", provider, exc.reason)
            observe_webhook(provider, "signature_invalid")
            raise
        except InvalidPayload as exc:
            # Authenticated but unparseable; redelivery would fail the same way.
            logger.warning("Acknowledged malformed %s webhook body: %s", provider, exc)
            observe_webhook(provider, "ignored")
            return WebhookOutcome(status="ignored", detail="invalid_payload")

        if isinstance(result, Unrecognized):
            logger.info(
                "Acknowledged unrecognized %s webhook event %s (%s)",
                provider,
                result.event_type,
                result.event_id,
            )
            observe_webhook(provider, "ignored")
            return WebhookOutcome(status="ignored", detail=result.event_type)

        try:
            if isinstance(result, SubscriptionBillingUpdate):
                outcome = self._apply_subscription_update(db, result)
            else:
                outcome = self.apply_event(db, result)
        except TransitionRejected as exc:
            logger.warning(
                "Deferring %s webhook after repeated concurrent updates: %s", provider, exc
            )
            observe_webhook(provider, "deferred")
            raise WebhookDeferred(provider, exc.reason) from exc
        observe_webhook(provider, outcome.status)
        return outcome

    def apply_event(self, db: Session, event: LedgerEvent, claim: bool = True) -> WebhookOutcome:
        """Claim, apply and commit one ledger event, retrying once on a version race."""
        for attempt in range(STALE_VERSION_ATTEMPTS):
            try:
                applied = self._apply_once(db, event, claim)
            except TransitionRejected as exc:
                db.rollback()
                if exc.reason == "stale_version" and attempt < STALE_VERSION_ATTEMPTS - 1:
                    logger.info("Retrying %s event after concurrent order update", event.provider)
                    continue
                raise
            except Exception:
                db.rollback()
                raise
            self.enqueue_notifications(applied.notification_ids)
            result = applied.result
            if (
                result is not None
                and result.changed
                and event.kind == LedgerEventKind.authorized
                and result.order.status == OrderStatus.pending_deferred
            ):
                self.enqueue_capture(str(result.order.id))
            return applied.outcome
        raise TransitionRejected("stale_version")

    def _apply_once(self, db: Session, event: LedgerEvent, claim: bool) -> _Applied:
        key = None
        if claim and event.idempotency_id:
            key = event_key(event.provider, event.idempotency_id)
            if not self.store.try_claim(db, key).claimed:
                db.rollback()
                return _Applied(WebhookOutcome(status="duplicate"))

        try:
            order = OrderLedger.resolve(db, event)
        except OrderNotFound:
            # Leave the key unclaimed so a later redelivery can still apply.
            logger.warning(
                "No order for %s event %s (order=%s external=%s)",
                event.provider,
                event.kind.value,
                event.order_id,
                event.external_id,
            )
            db.rollback()
            return _Applied(WebhookOutcome(status="ignored", detail="order_not_found"))

        try:
            result = OrderLedger.apply(db, order, event)
        except TransitionRejected as exc:
            if exc.reason not in ACKNOWLEDGED_REJECTIONS:
                raise
            logger.warning(
                "Rejected %s event %s for order %s (%s): %s -> %s",
                event.provider,
                event.kind.value,
                order.id,
                exc.reason,
                exc.from_status,
                exc.to_status,
            )
            if key:
                self.store.record_result(
                    db, key, f"rejected:{exc.reason}:{exc.from_status}->{exc.to_status}"
                )
            db.commit()
            return _Applied(
                WebhookOutcome(status="ignored", order_id=str(order.id), detail=exc.reason)
            )

        notification_ids: list[str] = []
        if result.entered_paid:
            self._record_consumption(db, result.order)
            notification_ids = self._record_order_confirmation(db, result.order)
        if key:
            self.store.record_result(
                db, key, f"{result.previous_status.value}->{result.order.status.value}"
            )
        db.commit()
        return _Applied(
            WebhookOutcome(status="ok", order_id=str(result.order.id)),
            result=result,
            notification_ids=notification_ids,
        )

    def _record_consumption(self, db: Session, order: Order) -> None:
        if not self.store.try_claim(db, consumption_key(order.id)).claimed:
            logger.info("Consumption for order %s already recorded", order.id)
            return
        Consumption.record(db, order)

    def _record_order_confirmation(self, db: Session, order: Order) -> list[str]:
        claim = self.store.try_claim(db, notification_key(ORDER_CONFIRMATION, order.id))
        if not claim.claimed:
            return []
        if not order.recipient_email:
            logger.info("Order %s paid without a recipient email", order.id)
            return []
        notification = Notifications.record(
            db,
            ORDER_CONFIRMATION,
            order.recipient_email,
            payload={
                "order_id": str(order.id),
                "amount": str(order.amount),
                "currency": order.currency,
                "provider": order.provider.value if order.provider else "",
            },
            order_id=order.id,
        )
        return [str(notification.id)]

    def _apply_subscription_update(
        self, db: Session, update: SubscriptionBillingUpdate
    ) -> WebhookOutcome:
        key = None
        if update.event_id:
            key = event_key(update.provider, update.event_id)
            if not self.store.try_claim(db, key).claimed:
                db.rollback()
                return WebhookOutcome(status="duplicate")
        try:
            applied = subscriptions_service.SubscriptionValidator.apply_billing_event(db, update)
            if applied is None:
                db.rollback()
                return WebhookOutcome(status="ignored", detail="subscription_not_found")
            sub = applied.subscription
            notification_ids: list[str] = []
            template = None
            active, canceled = subscriptions_service.ACTIVE, subscriptions_service.CANCELED
            if sub.cached_status == active and applied.previous_status != active:
                template = SUBSCRIPTION_CONFIRMATION
            elif sub.cached_status == canceled and applied.previous_status != canceled:
                template = SUBSCRIPTION_CANCELED
            if template and update.recipient_email:
                gate = notification_key(template, sub.provider_subscription_id)
                if self.store.try_claim(db, gate).claimed:
                    notification = Notifications.record(
                        db,
                        template,
                        update.recipient_email,
                        payload={
                            "group_id": sub.group_id,
                            "current_period_end": sub.current_period_end.isoformat(),
                        },
                    )
                    notification_ids.append(str(notification.id))
            if key:
                self.store.record_result(db, key, f"subscription:{sub.cached_status}")
            db.commit()
        except Exception:
            db.rollback()
            raise
        self.enqueue_notifications(notification_ids)
        return WebhookOutcome(status="ok", detail=f"subscription:{sub.cached_status}")

    # Customer-facing operations

    @staticmethod
    def get_owned_order(db: Session, order_id, owner_id: str | None) -> Order:
        order = OrderLedger.get(db, order_id)
        if owner_id is not None and order.owner_id != owner_id:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    def _handle_for(order: Order) -> ProviderHandle | None:
        if order.provider is None:
            return None
        external_id = order.external_ref_map.get(order.provider.value)
        if not external_id:
            return None
        return ProviderHandle(provider=order.provider.value, external_id=external_id)

    def checkout(self, db: Session, owner_id: str, payload: OrderCreate) -> CheckoutResult:
        adapter = self.registry.get(payload.provider.value)
        order = OrderLedger.create_order(db, owner_id, payload)
        return self._initiate(db, order, adapter)

    def initiate_payment(
        self, db: Session, order_id, owner_id: str, provider: PaymentProviderType
    ) -> CheckoutResult:
        """Start (or restart with another provider) payment for a pending order."""
        adapter = self.registry.get(provider.value)
        order = self.get_owned_order(db, order_id, owner_id)
        if order.status not in PENDING_STATUSES:
            raise TransitionRejected("illegal_transition", order.status.value, "pending")
        return self._initiate(db, order, adapter)

    def _initiate(self, db: Session, order: Order, adapter) -> CheckoutResult:
        try:
            handle = adapter.initiate(order, order.amount)
        except (ProviderUnavailable, ProviderError) as exc:
            logger.warning(
                "Initiating %s payment for order %s failed: %s", adapter.provider, order.id, exc
            )
            raise
        event = LedgerEvent(
            kind=LedgerEventKind.initiated,
            provider=adapter.provider,
            order_id=str(order.id),
            external_id=handle.external_id,
        )
        try:
            OrderLedger.apply(db, order, event)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(order)
        logger.info(
            "Order %s awaiting %s payment %s", order.id, adapter.provider, handle.external_id
        )
        return CheckoutResult(order=order, handle=handle)

    def refresh_status(self, db: Session, order_id, owner_id: str | None = None) -> tuple[Order, bool]:
        """Merge the provider's view of a pending order into the ledger.

        Returns the order and whether the provider was consulted successfully.
        Provider failures leave the local status as is.
        """
        order = self.get_owned_order(db, order_id, owner_id)
        if order.status not in PENDING_STATUSES:
            return order, False
        handle = self._handle_for(order)
        if handle is None:
            return order, False
        adapter = self.registry.get(handle.provider)
        try:
            event = adapter.poll_status(handle)
        except (ProviderUnavailable, ProviderError) as exc:
            logger.warning("Status lookup for order %s failed: %s", order.id, exc)
            return order, False
        if event.kind != LedgerEventKind.pending:
            if event.order_id is None:
                event = replace(event, order_id=str(order.id))
            try:
                self.apply_event(db, event, claim=False)
            except TransitionRejected as exc:
                logger.warning("Polled status for order %s not applied: %s", order.id, exc)
        db.refresh(order)
        return order, True

    def cancel_order(
        self, db: Session, order_id, owner_id: str | None, reason: str | None = None
    ) -> Order:
        """Cancel a pending order, voiding the provider payment when one exists.

        A failed or timed out void is flagged as unconfirmed; the local
        cancellation still commits.
        """
        order = self.get_owned_order(db, order_id, owner_id)
        if order.status not in PENDING_STATUSES:
            raise OrderNotCancelable(order.id, order.status.value)

        void_status = RemoteVoidStatus.not_required
        handle = self._handle_for(order)
        if handle is not None:
            void_status = self._void(handle, order)

        event = LedgerEvent(
            kind=LedgerEventKind.canceled,
            provider=order.provider.value if order.provider else "local",
            order_id=str(order.id),
            reason=reason or "customer_request",
        )
        try:
            OrderLedger.set_remote_void_status(db, order, void_status)
            OrderLedger.apply(db, order, event)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(order)
        return order

    def _void(self, handle: ProviderHandle, order: Order) -> RemoteVoidStatus:
        adapter = self.registry.get(handle.provider)
        try:
            adapter.void(handle)
        except (ProviderUnavailable, ProviderError) as exc:
            logger.warning(
                "Remote void of %s payment %s for order %s unconfirmed: %s",
                handle.provider,
                handle.external_id,
                order.id,
                exc,
            )
            return RemoteVoidStatus.unconfirmed
        return RemoteVoidStatus.confirmed

    def retry_unconfirmed_voids(self, db: Session, limit: int = 50) -> dict:
        orders = (
            db.query(Order)
            .filter(Order.status == OrderStatus.canceled)
            .filter(Order.remote_void_status == RemoteVoidStatus.unconfirmed)
            .order_by(Order.updated_at.asc())
            .limit(limit)
            .all()
        )
        confirmed = 0
        for order in orders:
            handle = self._handle_for(order)
            if handle is None:
                OrderLedger.set_remote_void_status(db, order, RemoteVoidStatus.not_required)
                db.commit()
                continue
            if self._void(handle, order) == RemoteVoidStatus.confirmed:
                OrderLedger.set_remote_void_status(db, order, RemoteVoidStatus.confirmed)
                db.commit()
                confirmed += 1
        return {"checked": len(orders), "confirmed": confirmed}

    def capture_authorized(self, db: Session, order_id) -> WebhookOutcome:
        order = OrderLedger.get(db, order_id)
        if order.status != OrderStatus.pending_deferred:
            return WebhookOutcome(status="ignored", order_id=str(order.id), detail=order.status.value)
        handle = self._handle_for(order)
        if handle is None:
            return WebhookOutcome(status="ignored", order_id=str(order.id), detail="no_handle")
        adapter = self.registry.get(handle.provider)
        capture = getattr(adapter, "capture", None)
        if capture is None:
            return WebhookOutcome(status="ignored", order_id=str(order.id), detail="not_capturable")
        event = capture(handle)
        if event.order_id is None:
            event = replace(event, order_id=str(order.id))
        return self.apply_event(db, event)

    def apply_fulfillment(
        self, db: Session, order_id, status: OrderStatus, expected_version: int | None = None
    ) -> Order:
        order = OrderLedger.get(db, order_id)
        event = LedgerEvent(
            kind=LedgerEventKind(status.value),
            provider=order.provider.value if order.provider else "local",
            order_id=str(order.id),
        )
        try:
            OrderLedger.apply(db, order, event, expected_version=expected_version)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(order)
        return order
