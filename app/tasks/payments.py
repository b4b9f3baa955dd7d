import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.logging import get_logger
from app.metrics import observe_job
from app.services import payments as payments_service
from app.services.payments.errors import ProviderUnavailable


@celery_app.task(name="app.tasks.payments.retry_unconfirmed_voids")
def retry_unconfirmed_voids(limit: int = 50):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    logger = get_logger(__name__)
    try:
        result = payments_service.reconciler.retry_unconfirmed_voids(session, limit=limit)
        logger.info(
            "Void retry checked=%s confirmed=%s", result["checked"], result["confirmed"]
        )
        return result
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("retry_unconfirmed_voids", status, time.monotonic() - start)


@celery_app.task(
    name="app.tasks.payments.capture_deferred_payment",
    autoretry_for=(ProviderUnavailable,),
    retry_backoff=True,
    max_retries=5,
)
def capture_deferred_payment(order_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        outcome = payments_service.reconciler.capture_authorized(session, order_id)
        return outcome.status
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("capture_deferred_payment", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.payments.purge_idempotency_records")
def purge_idempotency_records():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return payments_service.idempotency_store.purge_expired(session)
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("purge_idempotency_records", status, time.monotonic() - start)
