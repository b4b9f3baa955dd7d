"""Idempotency store backed by the ``idempotency_records`` table."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.idempotency import IdempotencyRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    key: str
    claimed: bool


def event_key(provider: str, event_id: str) -> str:
    return f"{provider}:{event_id}"


def notification_key(template: str, order_id) -> str:
    return f"notify:{template}:{order_id}"


def consumption_key(order_id) -> str:
    return f"consume:{order_id}"


class IdempotencyStore:
    def __init__(self, retention_days: int | None = 30):
        self.retention_days = retention_days

    def _expires_at(self, now: datetime) -> datetime | None:
        if not self.retention_days:
            return None
        return now + timedelta(days=self.retention_days)

    def try_claim(
        self,
        db: Session,
        key: str,
        result_summary: str | None = None,
        now: datetime | None = None,
    ) -> ClaimResult:
        """Insert ``key`` or report that someone already holds it.

        The insert runs inside a SAVEPOINT so a losing claim leaves the outer
        transaction usable. The caller owns the commit; a rolled back outer
        transaction releases the claim again.
        """
        if db.get(IdempotencyRecord, key) is not None:
            return ClaimResult(key=key, claimed=False)
        now = now or datetime.now(timezone.utc)
        record = IdempotencyRecord(
            key=key,
            applied_at=now,
            result_summary=result_summary,
            expires_at=self._expires_at(now),
        )
        try:
            with db.begin_nested():
                db.add(record)
                db.flush()
        except IntegrityError:
            logger.info("Idempotency key already claimed: %s", key)
            return ClaimResult(key=key, claimed=False)
        return ClaimResult(key=key, claimed=True)

    @staticmethod
    def record_result(db: Session, key: str, summary: str) -> None:
        record = db.get(IdempotencyRecord, key)
        if record is None:
            return
        record.result_summary = summary[:255]
        db.flush()

    @staticmethod
    def get(db: Session, key: str) -> IdempotencyRecord | None:
        return db.get(IdempotencyRecord, key)

    @staticmethod
    def purge_expired(db: Session, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        result = db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.expires_at.is_not(None),
                IdempotencyRecord.expires_at < now,
            )
        )
        db.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d expired idempotency records", purged)
        return purged
