"""Order ledger: the only code path allowed to mutate an ``Order``.

Business status and payment status move independently but are checked
together. Business status follows ``VALID_TRANSITIONS``. Payment status only
moves forward along ``PAYMENT_STATUS_RANK``. A combination where the order
counts as paid while the provider reports a failed or expired payment is
never written.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.metrics import observe_transition
from app.models.order import (
    Order,
    OrderExternalRef,
    OrderStatus,
    PaymentProviderType,
    PaymentStatus,
    RemoteVoidStatus,
)
from app.schemas.payments import OrderCreate
from app.services.common import coerce_uuid
from app.services.payments.errors import OrderNotFound, TransitionRejected
from app.services.payments.events import LedgerEvent, LedgerEventKind

logger = logging.getLogger(__name__)


PENDING_STATUSES = {
    OrderStatus.pending,
    OrderStatus.pending_provider_a,
    OrderStatus.pending_provider_b,
    OrderStatus.pending_deferred,
}
PAID_FAMILY = {
    OrderStatus.paid,
    OrderStatus.processing,
    OrderStatus.shipped,
    OrderStatus.delivered,
}

PROVIDER_PENDING_STATUS = {
    PaymentProviderType.card: OrderStatus.pending,
    PaymentProviderType.qr_wallet_a: OrderStatus.pending_provider_a,
    PaymentProviderType.qr_wallet_b: OrderStatus.pending_provider_b,
    PaymentProviderType.deferred: OrderStatus.pending_deferred,
}

_EXITS = {OrderStatus.canceled, OrderStatus.failed}

PROVIDER_PENDING_SUBSTATES = PENDING_STATUSES - {OrderStatus.pending}

# Valid business status transitions (from -> allowed to states)
VALID_TRANSITIONS = {
    OrderStatus.pending: PROVIDER_PENDING_SUBSTATES | {OrderStatus.paid} | _EXITS,
    **{
        status: (PROVIDER_PENDING_SUBSTATES - {status}) | {OrderStatus.paid} | _EXITS
        for status in PROVIDER_PENDING_SUBSTATES
    },
    OrderStatus.paid: {OrderStatus.processing, OrderStatus.refunded} | _EXITS,
    OrderStatus.processing: {OrderStatus.shipped, OrderStatus.refunded} | _EXITS,
    OrderStatus.shipped: {OrderStatus.delivered, OrderStatus.refunded} | _EXITS,
    OrderStatus.delivered: {OrderStatus.refunded},
    OrderStatus.failed: {OrderStatus.paid, OrderStatus.canceled},
    OrderStatus.canceled: set(),
    OrderStatus.refunded: set(),
}

PAYMENT_STATUS_RANK = {
    None: 0,
    PaymentStatus.authorized: 1,
    PaymentStatus.failed: 2,
    PaymentStatus.expired: 2,
    PaymentStatus.captured: 3,
    PaymentStatus.refunded: 4,
}

FORBIDDEN_PAYMENT_STATUSES = {
    status: {PaymentStatus.failed, PaymentStatus.expired} for status in PAID_FAMILY
}

_EVENT_TARGETS = {
    LedgerEventKind.paid: (OrderStatus.paid, PaymentStatus.captured),
    LedgerEventKind.failed: (OrderStatus.failed, PaymentStatus.failed),
    LedgerEventKind.expired: (OrderStatus.failed, PaymentStatus.expired),
    LedgerEventKind.canceled: (OrderStatus.canceled, None),
    LedgerEventKind.refunded: (OrderStatus.refunded, PaymentStatus.refunded),
    LedgerEventKind.processing: (OrderStatus.processing, None),
    LedgerEventKind.shipped: (OrderStatus.shipped, None),
    LedgerEventKind.delivered: (OrderStatus.delivered, None),
}


@dataclass
class TransitionResult:
    order: Order
    previous_status: OrderStatus
    changed: bool
    entered_paid: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _round_amount(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _provider_type(value: str | None) -> PaymentProviderType | None:
    if value is None:
        return None
    try:
        return PaymentProviderType(value)
    except ValueError:
        return None


def is_allowed(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    if from_status == to_status:
        return True
    return to_status in VALID_TRANSITIONS.get(from_status, set())


def is_payment_forward(current: PaymentStatus | None, target: PaymentStatus | None) -> bool:
    if target is None or target == current:
        return True
    return PAYMENT_STATUS_RANK[target] > PAYMENT_STATUS_RANK[current]


class OrderLedger:
    @staticmethod
    def create_order(db: Session, owner_id: str, payload: OrderCreate) -> Order:
        amount = sum(
            (Decimal(str(item.unit_price)) * item.quantity for item in payload.line_items),
            Decimal("0"),
        )
        order = Order(
            owner_id=owner_id,
            status=OrderStatus.pending,
            amount=_round_amount(amount),
            currency=payload.currency.upper(),
            line_items=[item.model_dump(mode="json") for item in payload.line_items],
            recipient_email=payload.recipient_email,
            coupon_code=payload.coupon_code,
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        logger.info("Created order %s for %s amount=%s", order.id, owner_id, order.amount)
        return order

    @staticmethod
    def get(db: Session, order_id) -> Order:
        try:
            order = db.get(Order, coerce_uuid(order_id))
        except ValueError as exc:
            raise OrderNotFound(order_id) from exc
        if not order:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    def paid_summary(db: Session, owner_id: str) -> dict:
        """Count and total of the owner's orders that reached payment."""
        orders = db.scalars(
            select(Order).where(Order.owner_id == owner_id, Order.status.in_(PAID_FAMILY))
        ).all()
        total = sum((order.amount for order in orders), Decimal("0"))
        currency = orders[0].currency if orders else "JPY"
        return {"orders_paid": len(orders), "total_paid": total, "currency": currency}

    @staticmethod
    def find_by_external_ref(db: Session, provider: str, external_id: str) -> Order | None:
        ref = db.scalars(
            select(OrderExternalRef).where(
                OrderExternalRef.provider == _provider_type(provider),
                OrderExternalRef.external_id == external_id,
            )
        ).first()
        return ref.order if ref else None

    @staticmethod
    def resolve(db: Session, event: LedgerEvent) -> Order:
        """Locate the order an inbound event refers to."""
        if event.order_id:
            try:
                order = db.get(Order, coerce_uuid(event.order_id))
            except ValueError:
                order = None
            if order:
                return order
        if event.external_id:
            order = OrderLedger.find_by_external_ref(db, event.provider, event.external_id)
            if order:
                return order
        raise OrderNotFound(event.order_id or event.external_id)

    @staticmethod
    def record_external_ref(db: Session, order: Order, provider: str, external_id: str) -> None:
        provider_type = _provider_type(provider)
        if provider_type is None:
            return
        for ref in order.external_refs:
            if ref.provider == provider_type and ref.external_id == external_id:
                return
        order.external_refs.append(
            OrderExternalRef(provider=provider_type, external_id=external_id)
        )

    @staticmethod
    def set_remote_void_status(db: Session, order: Order, status: RemoteVoidStatus) -> None:
        if order.remote_void_status == status:
            return
        order.remote_void_status = status
        try:
            db.flush()
        except StaleDataError as exc:
            raise TransitionRejected("stale_version", order.status.value, None) from exc

    @staticmethod
    def _pending_target(
        order: Order, provider: PaymentProviderType | None, default: OrderStatus
    ) -> OrderStatus:
        target = PROVIDER_PENDING_STATUS.get(provider, default)
        # A provider-specific pending state never falls back to plain "pending".
        if target == OrderStatus.pending and order.status in PROVIDER_PENDING_SUBSTATES:
            return order.status
        return target

    @staticmethod
    def _targets(
        order: Order, event: LedgerEvent
    ) -> tuple[OrderStatus, PaymentStatus | None]:
        if event.kind in _EVENT_TARGETS:
            return _EVENT_TARGETS[event.kind]
        provider = _provider_type(event.provider)
        if event.kind == LedgerEventKind.initiated:
            return OrderLedger._pending_target(order, provider, OrderStatus.pending), None
        if event.kind == LedgerEventKind.authorized:
            if order.status in PENDING_STATUSES:
                target = OrderLedger._pending_target(order, provider, order.status)
                return target, PaymentStatus.authorized
            return order.status, PaymentStatus.authorized
        # Provider still waiting on the customer.
        return order.status, None

    @staticmethod
    def apply(
        db: Session,
        order_id,
        event: LedgerEvent,
        expected_version: int | None = None,
    ) -> TransitionResult:
        """Apply ``event`` to the order and flush.

        The caller owns the transaction. Raises ``TransitionRejected`` for an
        illegal move or when another writer got there first.
        """
        order = order_id if isinstance(order_id, Order) else OrderLedger.get(db, order_id)
        previous_status = order.status
        if expected_version is not None and order.version != expected_version:
            raise TransitionRejected("stale_version", previous_status.value, None)

        target_status, target_payment = OrderLedger._targets(order, event)
        if not is_allowed(order.status, target_status):
            raise TransitionRejected(
                "illegal_transition", order.status.value, target_status.value
            )
        if not is_payment_forward(order.payment_status, target_payment):
            raise TransitionRejected(
                "illegal_transition",
                getattr(order.payment_status, "value", None),
                target_payment.value,
            )
        new_payment = target_payment or order.payment_status
        if new_payment in FORBIDDEN_PAYMENT_STATUSES.get(target_status, set()):
            raise TransitionRejected(
                "illegal_transition", order.status.value, target_status.value
            )
        if (
            event.kind == LedgerEventKind.paid
            and event.amount is not None
            and _round_amount(event.amount) != order.amount
        ):
            logger.warning(
                "Order %s paid event amount %s does not match order amount %s (provider=%s)",
                order.id,
                event.amount,
                order.amount,
                event.provider,
            )
            raise TransitionRejected("amount_mismatch", str(order.amount), str(event.amount))

        if event.external_id:
            OrderLedger.record_external_ref(db, order, event.provider, event.external_id)

        provider = _provider_type(event.provider)
        status_changed = target_status != order.status
        payment_changed = new_payment != order.payment_status
        # Card checkout keeps the current pending state but still switches the active provider.
        provider_changed = (
            event.kind == LedgerEventKind.initiated
            and provider is not None
            and provider != order.provider
        )
        if not status_changed and not payment_changed and not provider_changed:
            db.flush()
            return TransitionResult(order=order, previous_status=previous_status, changed=False)

        now = _now()
        if provider and event.kind != LedgerEventKind.canceled:
            order.provider = provider
        order.status = target_status
        order.payment_status = new_payment
        if target_status == OrderStatus.paid and status_changed:
            order.paid_at = event.occurred_at or now
            order.failure_reason = None
        if target_status == OrderStatus.canceled and status_changed:
            order.canceled_at = now
            order.cancel_reason = order.cancel_reason or event.reason
        if target_status == OrderStatus.failed and event.reason:
            order.failure_reason = event.reason
        order.updated_at = now
        try:
            db.flush()
        except StaleDataError as exc:
            raise TransitionRejected(
                "stale_version", previous_status.value, target_status.value
            ) from exc

        entered_paid = target_status == OrderStatus.paid and status_changed
        if status_changed:
            observe_transition(previous_status.value, target_status.value)
            logger.info(
                "Order %s %s -> %s (payment=%s, event=%s)",
                order.id,
                previous_status.value,
                target_status.value,
                getattr(new_payment, "value", None),
                event.kind.value,
            )
        return TransitionResult(
            order=order,
            previous_status=previous_status,
            changed=True,
            entered_paid=entered_paid,
        )
