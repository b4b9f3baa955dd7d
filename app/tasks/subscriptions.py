import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services.subscriptions import subscription_validator


@celery_app.task(name="app.tasks.subscriptions.sweep_subscriptions")
def sweep_subscriptions(group_id: str | None = None):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return subscription_validator.sweep(session, group_id=group_id)
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("subscription_sweep", status, time.monotonic() - start)
