import logging
import os
from datetime import timedelta

from app.config import settings

logger = logging.getLogger(__name__)


def _env_value(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value


def _env_bool(name: str) -> bool | None:
    raw = _env_value(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str) -> int | None:
    raw = _env_value(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r", name, raw)
        return None


def _enabled(env_key: str, default: bool = True) -> bool:
    value = _env_bool(env_key)
    return default if value is None else value


def get_celery_config() -> dict:
    broker = _env_value("CELERY_BROKER_URL") or _env_value("REDIS_URL") or "redis://localhost:6379/0"
    backend = (
        _env_value("CELERY_RESULT_BACKEND")
        or _env_value("REDIS_URL")
        or "redis://localhost:6379/1"
    )
    config: dict[str, object] = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": _env_value("CELERY_TIMEZONE") or "UTC",
        "task_acks_late": True,
        "task_always_eager": bool(_env_bool("CELERY_TASK_ALWAYS_EAGER")),
    }
    config["beat_max_loop_interval"] = _env_int("CELERY_BEAT_MAX_LOOP_INTERVAL") or 5
    return config


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    if _enabled("SUBSCRIPTION_SWEEP_ENABLED"):
        schedule["subscription_sweep"] = {
            "task": "app.tasks.subscriptions.sweep_subscriptions",
            "schedule": timedelta(seconds=max(settings.subscription_sweep_interval_seconds, 60)),
        }
    if _enabled("VOID_RETRY_ENABLED"):
        schedule["retry_unconfirmed_voids"] = {
            "task": "app.tasks.payments.retry_unconfirmed_voids",
            "schedule": timedelta(seconds=max(settings.void_retry_interval_seconds, 60)),
        }
    if settings.idempotency_retention_days:
        schedule["purge_idempotency_records"] = {
            "task": "app.tasks.payments.purge_idempotency_records",
            "schedule": timedelta(hours=24),
        }
    redelivery_minutes = _env_int("NOTIFICATION_REDELIVERY_INTERVAL_MINUTES") or 5
    schedule["redeliver_notifications"] = {
        "task": "app.tasks.notifications.redeliver_queued_notifications",
        "schedule": timedelta(minutes=max(redelivery_minutes, 1)),
    }
    return schedule
