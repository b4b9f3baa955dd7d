import time
from datetime import datetime, timedelta, timezone

from app.celery_app import celery_app
from app.db import SessionLocal
from app.logging import get_logger
from app.metrics import observe_job
from app.models.notification import NotificationStatus
from app.services.notifications import SmtpNotificationSender, notifications

# Rows queued longer than this were missed by the broker and are re-sent.
REDELIVERY_AFTER_MINUTES = 5


@celery_app.task(
    name="app.tasks.notifications.send_notification",
    autoretry_for=(ConnectionError,),
    retry_backoff=True,
    max_retries=3,
)
def send_notification(notification_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    logger = get_logger(__name__)
    try:
        notification = notifications.deliver(session, notification_id, SmtpNotificationSender())
        if notification is None or notification.status != NotificationStatus.sent:
            status = "failed"
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Notification %s delivery errored", notification_id)
        raise
    finally:
        session.close()
        observe_job("send_notification", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.notifications.redeliver_queued_notifications")
def redeliver_queued_notifications(batch_size: int = 100):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        older_than = datetime.now(timezone.utc) - timedelta(minutes=REDELIVERY_AFTER_MINUTES)
        ids = notifications.pending_ids(session, older_than, limit=batch_size)
        notifications.enqueue(ids)
        return len(ids)
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("redeliver_notifications", status, time.monotonic() - start)
