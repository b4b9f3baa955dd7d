"""Payment and order reconciliation services.

Import patterns:
    from app.services import payments as payments_service
    payments_service.reconciler.process_webhook(db, "card", body, signature)

    from app.services.payments import OrderLedger, PaymentReconciler
"""

from app.config import settings
from app.services.payments.adapters import AdapterRegistry
from app.services.payments.idempotency import IdempotencyStore
from app.services.payments.ledger import OrderLedger, TransitionResult
from app.services.payments.reconciler import (
    CheckoutResult,
    PaymentReconciler,
    WebhookOutcome,
)
from app.services.payments.signer import VerificationPolicy

idempotency_store = IdempotencyStore(settings.idempotency_retention_days)
adapter_registry = AdapterRegistry.from_settings(
    settings, VerificationPolicy.from_setting(settings.webhook_verification)
)
reconciler = PaymentReconciler(adapter_registry, idempotency_store)

__all__ = [
    "AdapterRegistry",
    "CheckoutResult",
    "IdempotencyStore",
    "OrderLedger",
    "PaymentReconciler",
    "TransitionResult",
    "VerificationPolicy",
    "WebhookOutcome",
    "adapter_registry",
    "idempotency_store",
    "reconciler",
]
