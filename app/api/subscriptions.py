from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_reconciler, require_role, require_user_auth
from app.schemas.subscriptions import AccessRead, SubscriptionRead, SweepRequest, SweepResult
from app.services.payments.reconciler import PaymentReconciler
from app.services.subscriptions import subscription_validator

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/{group_id}/access", response_model=AccessRead)
def check_access(
    group_id: str,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
):
    decision = subscription_validator.check_access(db, auth["subject_id"], group_id)
    return AccessRead(
        group_id=group_id,
        has_access=decision.has_access,
        subscription=(
            SubscriptionRead.model_validate(decision.subscription)
            if decision.subscription
            else None
        ),
    )


@router.post("/sweep", response_model=SweepResult)
def sweep_subscriptions(
    payload: SweepRequest | None = None,
    auth=Depends(require_role("admin")),
    db: Session = Depends(get_db),
):
    group_id = payload.group_id if payload else None
    return subscription_validator.sweep(db, group_id=group_id)


@router.post("/{provider_subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_at_period_end(
    provider_subscription_id: str,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """Stop renewal at the end of the current period; access is unchanged until then."""
    sub = subscription_validator.cancel_at_period_end(
        db, reconciler.registry, auth["subject_id"], provider_subscription_id
    )
    return SubscriptionRead.model_validate(sub)


@router.post("/{provider_subscription_id}/reactivate", response_model=SubscriptionRead)
def reactivate_subscription(
    provider_subscription_id: str,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    sub = subscription_validator.reactivate(
        db, reconciler.registry, auth["subject_id"], provider_subscription_id
    )
    return SubscriptionRead.model_validate(sub)
