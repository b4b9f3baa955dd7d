"""Subscription access checks kept consistent with the billing period.

Reads never trust ``cached_status`` alone: a subscription whose period has
ended is expired on the spot (and the correction persisted). Only explicit
provider billing events may make a subscription active or extend its period.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.models.subscription import Subscription, SubscriptionPlanType
from app.services.common import as_utc
from app.services.payments.errors import ProviderError, SubscriptionNotFound, TransitionRejected
from app.services.payments.events import SubscriptionBillingUpdate

logger = logging.getLogger(__name__)

ACTIVE = "active"
EXPIRED = "expired"
CANCELED = "canceled"


@dataclass
class AccessDecision:
    owner_id: str
    group_id: str
    has_access: bool
    subscription: Subscription | None = None
    corrected: bool = False


@dataclass
class BillingEventResult:
    subscription: Subscription
    created: bool
    previous_status: str | None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_effectively_active(sub: Subscription, now: datetime) -> bool:
    if sub.cached_status != ACTIVE:
        return False
    period_end = as_utc(sub.current_period_end)
    return period_end is not None and as_utc(now) < period_end


def reconcile(sub: Subscription, now: datetime) -> Subscription | None:
    """Expire a cached-active subscription whose period has ended.

    Returns the subscription when it was corrected, otherwise None. Never
    upgrades a subscription.
    """
    if sub.cached_status != ACTIVE:
        return None
    period_end = as_utc(sub.current_period_end)
    if period_end is not None and as_utc(now) < period_end:
        return None
    sub.cached_status = EXPIRED
    sub.updated_at = as_utc(now)
    logger.info(
        "Subscription %s expired at period end %s", sub.provider_subscription_id, period_end
    )
    return sub


def _plan_type(value: str | None) -> SubscriptionPlanType | None:
    if not value:
        return None
    try:
        return SubscriptionPlanType(value)
    except ValueError:
        logger.warning("Ignoring unknown plan type %s", value)
        return None


class SubscriptionValidator:
    @staticmethod
    def check_access(
        db: Session, owner_id: str, group_id: str, now: datetime | None = None
    ) -> AccessDecision:
        now = now or _now()
        subs = (
            db.query(Subscription)
            .filter(Subscription.owner_id == owner_id)
            .filter(Subscription.group_id == group_id)
            .order_by(Subscription.current_period_end.desc())
            .all()
        )
        corrected = False
        for sub in subs:
            if reconcile(sub, now) is not None:
                corrected = True
        if corrected:
            db.commit()
        active = next((sub for sub in subs if is_effectively_active(sub, now)), None)
        return AccessDecision(
            owner_id=owner_id,
            group_id=group_id,
            has_access=active is not None,
            subscription=active or (subs[0] if subs else None),
            corrected=corrected,
        )

    @staticmethod
    def sweep(db: Session, group_id: str | None = None, now: datetime | None = None) -> dict:
        """Expire every cached-active subscription whose period has ended.

        Args:
            db: Database session
            group_id: Restrict the sweep to one group
            now: Reference time (defaults to now)

        Returns:
            Summary dict with counts
        """
        now = now or _now()
        query = db.query(Subscription).filter(Subscription.cached_status == ACTIVE)
        if group_id:
            query = query.filter(Subscription.group_id == group_id)
        checked = 0
        expired = 0
        for sub in query.all():
            checked += 1
            if reconcile(sub, now) is not None:
                expired += 1
        db.commit()
        logger.info("Subscription sweep checked=%d expired=%d", checked, expired)
        return {"run_at": now.isoformat(), "checked": checked, "expired": expired}

    @staticmethod
    def apply_billing_event(
        db: Session, update: SubscriptionBillingUpdate, now: datetime | None = None
    ) -> BillingEventResult | None:
        """Upsert a subscription from a provider billing event and flush.

        A canceled subscription stays canceled. ``current_period_end`` only
        moves forward, so a stale redelivery cannot shorten access.
        """
        now = now or _now()
        sub = (
            db.query(Subscription)
            .filter(Subscription.provider_subscription_id == update.provider_subscription_id)
            .first()
        )
        if sub is None:
            if not update.owner_id or not update.group_id:
                logger.warning(
                    "Billing event %s for unknown subscription %s lacks owner/group metadata",
                    update.event_type,
                    update.provider_subscription_id,
                )
                return None
            sub = Subscription(
                owner_id=update.owner_id,
                group_id=update.group_id,
                provider=update.provider,
                provider_subscription_id=update.provider_subscription_id,
                cached_status=update.status,
                current_period_end=update.current_period_end or now,
                cancel_at_period_end=update.cancel_at_period_end,
                plan_type=_plan_type(update.plan_type),
            )
            db.add(sub)
            reconcile(sub, now)
            db.flush()
            return BillingEventResult(subscription=sub, created=True, previous_status=None)

        previous_status = sub.cached_status
        if previous_status == CANCELED and update.status != CANCELED:
            logger.info(
                "Ignoring %s for canceled subscription %s",
                update.event_type,
                update.provider_subscription_id,
            )
            return BillingEventResult(subscription=sub, created=False, previous_status=previous_status)

        sub.cached_status = update.status
        sub.cancel_at_period_end = update.cancel_at_period_end
        new_end = as_utc(update.current_period_end)
        if new_end is not None and new_end > as_utc(sub.current_period_end):
            sub.current_period_end = new_end
        plan_type = _plan_type(update.plan_type)
        if plan_type is not None:
            sub.plan_type = plan_type
        sub.updated_at = now
        db.flush()
        # An update that leaves the period already over is expired immediately.
        reconcile(sub, now)
        return BillingEventResult(subscription=sub, created=False, previous_status=previous_status)

    @staticmethod
    def _set_cancel_at_period_end(
        db: Session, registry, owner_id: str, provider_subscription_id: str, flag: bool
    ) -> Subscription:
        sub = (
            db.query(Subscription)
            .filter(Subscription.provider_subscription_id == provider_subscription_id)
            .first()
        )
        if sub is None or sub.owner_id != owner_id:
            raise SubscriptionNotFound(provider_subscription_id)
        if sub.cached_status == CANCELED:
            raise TransitionRejected("illegal_transition", CANCELED, ACTIVE)
        adapter = registry.get(sub.provider)
        update = getattr(adapter, "set_cancel_at_period_end", None)
        if update is None:
            raise ProviderError(sub.provider, "Subscription changes are not supported")
        # Provider first; the local flag only mirrors what the provider accepted.
        sub.cancel_at_period_end = update(provider_subscription_id, flag)
        sub.updated_at = _now()
        db.commit()
        db.refresh(sub)
        logger.info(
            "Subscription %s cancel_at_period_end=%s for %s",
            provider_subscription_id,
            sub.cancel_at_period_end,
            owner_id,
        )
        return sub

    @staticmethod
    def cancel_at_period_end(
        db: Session, registry, owner_id: str, provider_subscription_id: str
    ) -> Subscription:
        """Stop renewal; access continues until ``current_period_end``."""
        return SubscriptionValidator._set_cancel_at_period_end(
            db, registry, owner_id, provider_subscription_id, True
        )

    @staticmethod
    def reactivate(
        db: Session, registry, owner_id: str, provider_subscription_id: str
    ) -> Subscription:
        return SubscriptionValidator._set_cancel_at_period_end(
            db, registry, owner_id, provider_subscription_id, False
        )


subscription_validator = SubscriptionValidator()
