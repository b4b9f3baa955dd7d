from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_reconciler, require_role, require_user_auth
from app.schemas.payments import (
    CancelRequest,
    CheckoutResponse,
    FulfillmentRequest,
    OrderCreate,
    OrderRead,
    OrderStatusRead,
    PaymentRetryRequest,
)
from app.services.payments.reconciler import CheckoutResult, PaymentReconciler

router = APIRouter(tags=["orders"])


def _checkout_response(result: CheckoutResult) -> CheckoutResponse:
    return CheckoutResponse(
        order=OrderRead.model_validate(result.order),
        provider=result.handle.provider,
        external_id=result.handle.external_id,
        redirect_url=result.handle.redirect_url,
    )


@router.post("/orders", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def checkout(
    payload: OrderCreate,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    return _checkout_response(reconciler.checkout(db, auth["subject_id"], payload))


@router.post("/orders/{order_id}/payment", response_model=CheckoutResponse)
def retry_payment(
    order_id: str,
    payload: PaymentRetryRequest,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    result = reconciler.initiate_payment(db, order_id, auth["subject_id"], payload.provider)
    return _checkout_response(result)


@router.get("/orders/{order_id}", response_model=OrderRead)
def get_order(
    order_id: str,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    return reconciler.get_owned_order(db, order_id, auth["subject_id"])


@router.get("/orders/{order_id}/status", response_model=OrderStatusRead)
def order_status(
    order_id: str,
    refresh: bool = Query(default=False),
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    if refresh:
        order, refreshed = reconciler.refresh_status(db, order_id, auth["subject_id"])
    else:
        order, refreshed = reconciler.get_owned_order(db, order_id, auth["subject_id"]), False
    return OrderStatusRead(
        order_id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        version=order.version,
        refreshed=refreshed,
    )


@router.post("/orders/{order_id}/cancel", response_model=OrderRead)
def cancel_order(
    order_id: str,
    payload: CancelRequest | None = None,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    reason = payload.reason if payload else None
    return reconciler.cancel_order(db, order_id, auth["subject_id"], reason)


@router.post(
    "/admin/orders/{order_id}/fulfillment",
    response_model=OrderRead,
    tags=["admin"],
)
def update_fulfillment(
    order_id: str,
    payload: FulfillmentRequest,
    auth=Depends(require_role("admin")),
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    return reconciler.apply_fulfillment(db, order_id, payload.status, payload.expected_version)
