from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_db, get_reconciler
from app.schemas.payments import WebhookAck
from app.services.payments.reconciler import PaymentReconciler

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhooks/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """Authenticate and apply one provider webhook delivery.

    Duplicates and events that change nothing are acknowledged so the
    provider stops retrying; only signature failures and server errors are
    reported as failures.
    """
    adapter = reconciler.registry.get(provider)
    body = await request.body()
    signature = request.headers.get(adapter.signature_header)
    outcome = await run_in_threadpool(
        reconciler.process_webhook, db, provider, body, signature
    )
    return WebhookAck(status=outcome.status)
