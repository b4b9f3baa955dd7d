from app.tasks.notifications import redeliver_queued_notifications, send_notification
from app.tasks.payments import (
    capture_deferred_payment,
    purge_idempotency_records,
    retry_unconfirmed_voids,
)
from app.tasks.subscriptions import sweep_subscriptions

__all__ = [
    "capture_deferred_payment",
    "purge_idempotency_records",
    "redeliver_queued_notifications",
    "retry_unconfirmed_voids",
    "send_notification",
    "sweep_subscriptions",
]
