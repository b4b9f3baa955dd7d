"""One-time access codes guarding privileged reads.

A code is bound to the session and device it was issued for. Only a salted,
peppered hash is stored. A successful verification deletes the record and
returns a short-lived grant token that is independent of the code's expiry.
"""

import hashlib
import hmac
import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, cast

from jose import JWTError, jwt
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.config import Settings, settings
from app.metrics import STEP_UP_EVENTS
from app.models.access_code import AccessCode
from app.services.common import as_utc

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
GRANT_TYPE = "step_up"
_USER_AGENT_MAX = 256


class Cooldown(Exception):
    """A code was issued too recently for this subject."""

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Retry after {retry_after} seconds")


@dataclass(frozen=True)
class SessionBinding:
    session_id: str | None
    device_hash: str | None

    @property
    def complete(self) -> bool:
        return bool(self.session_id and self.device_hash)


@dataclass(frozen=True)
class IssuedCode:
    subject_id: str
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class Granted:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class Denied:
    reason: str


def _now() -> datetime:
    return datetime.now(timezone.utc)


def device_fingerprint(user_agent: str | None) -> str | None:
    if not user_agent:
        return None
    return hashlib.sha256(user_agent[:_USER_AGENT_MAX].encode("utf-8")).hexdigest()


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _record(action: str, outcome: str) -> None:
    STEP_UP_EVENTS.labels(action=action, outcome=outcome).inc()


class StepUpGate:
    def __init__(
        self,
        pepper: str,
        grant_secret: str,
        grant_algorithm: str = "HS256",
        code_ttl_seconds: int = 600,
        cooldown_seconds: int = 60,
        max_attempts: int = 5,
        grant_ttl_seconds: int = 600,
    ):
        self.pepper = pepper
        self.grant_secret = grant_secret
        self.grant_algorithm = grant_algorithm
        self.code_ttl_seconds = code_ttl_seconds
        self.cooldown_seconds = cooldown_seconds
        self.max_attempts = max_attempts
        self.grant_ttl_seconds = grant_ttl_seconds

    @classmethod
    def from_settings(cls, config: Settings) -> "StepUpGate":
        return cls(
            pepper=config.step_up_code_pepper,
            grant_secret=config.jwt_secret,
            grant_algorithm=config.jwt_algorithm,
            code_ttl_seconds=config.step_up_code_ttl_seconds,
            cooldown_seconds=config.step_up_cooldown_seconds,
            max_attempts=config.step_up_max_attempts,
            grant_ttl_seconds=config.step_up_grant_ttl_seconds,
        )

    def hash_code(self, code: str, salt: str) -> str:
        return hashlib.sha256(f"{salt}{code}{self.pepper}".encode("utf-8")).hexdigest()

    def issue(
        self,
        db: Session,
        subject_id: str,
        binding: SessionBinding,
        now: datetime | None = None,
    ) -> IssuedCode:
        """Create (or replace) the subject's code and commit.

        Raises ``Cooldown`` when a live code was issued within the cooldown
        window. The returned plaintext must only go to the notification
        sender.
        """
        now = as_utc(now) or _now()
        record = db.get(AccessCode, subject_id)
        if record is not None and as_utc(record.expires_at) > now:
            elapsed = (now - as_utc(record.issued_at)).total_seconds()
            if elapsed < self.cooldown_seconds:
                _record("issue", "cooldown")
                raise Cooldown(int(self.cooldown_seconds - elapsed) + 1)

        code = generate_code()
        salt = secrets.token_hex(16)
        expires_at = now + timedelta(seconds=self.code_ttl_seconds)
        if record is None:
            record = AccessCode(subject_id=subject_id)
            db.add(record)
        record.code_hash = self.hash_code(code, salt)
        record.salt = salt
        record.expires_at = expires_at
        record.attempts = 0
        record.max_attempts = self.max_attempts
        record.session_id = binding.session_id
        record.device_hash = binding.device_hash
        record.issued_at = now
        db.commit()
        _record("issue", "issued")
        logger.info("Issued step-up code for %s", subject_id)
        return IssuedCode(subject_id=subject_id, code=code, expires_at=expires_at)

    def _consume_attempt(self, db: Session, record: AccessCode, reason: str) -> Denied:
        subject_id = record.subject_id
        # Counted in SQL so concurrent wrong guesses cannot overwrite each other.
        result = db.execute(
            update(AccessCode)
            .where(
                AccessCode.subject_id == subject_id,
                AccessCode.attempts < AccessCode.max_attempts,
            )
            .values(attempts=AccessCode.attempts + 1)
        )
        db.commit()
        if result.rowcount == 0:
            return self._deny(subject_id, "exhausted")
        return self._deny(subject_id, reason)

    def _delete(self, db: Session, record: AccessCode, reason: str) -> Denied:
        subject_id = record.subject_id
        db.delete(record)
        db.commit()
        return self._deny(subject_id, reason)

    @staticmethod
    def _deny(subject_id: str, reason: str) -> Denied:
        _record("verify", reason)
        logger.info("Step-up verification denied for %s: %s", subject_id, reason)
        return Denied(reason)

    def verify(
        self,
        db: Session,
        subject_id: str,
        candidate: str,
        binding: SessionBinding | None,
        now: datetime | None = None,
    ) -> Granted | Denied:
        now = as_utc(now) or _now()
        record = db.get(AccessCode, subject_id)
        if record is None:
            return self._deny(subject_id, "not_found")
        if as_utc(record.expires_at) <= now:
            return self._delete(db, record, "expired")
        if record.attempts >= record.max_attempts:
            return self._delete(db, record, "exhausted")
        if binding is None or not binding.complete:
            return self._deny(subject_id, "binding_missing")
        session_ok = hmac.compare_digest(record.session_id or "", binding.session_id or "")
        device_ok = hmac.compare_digest(record.device_hash or "", binding.device_hash or "")
        if not (session_ok and device_ok):
            return self._consume_attempt(db, record, "binding_mismatch")

        candidate_hash = self.hash_code((candidate or "").strip().upper(), record.salt)
        if not hmac.compare_digest(candidate_hash, record.code_hash):
            return self._consume_attempt(db, record, "invalid")

        db.delete(record)
        db.commit()
        granted = self.issue_grant(subject_id, now)
        _record("verify", "granted")
        logger.info("Step-up verification granted for %s", subject_id)
        return granted

    def issue_grant(self, subject_id: str, now: datetime | None = None) -> Granted:
        now = as_utc(now) or _now()
        expires_at = now + timedelta(seconds=self.grant_ttl_seconds)
        payload = {
            "sub": subject_id,
            "typ": GRANT_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = cast(str, jwt.encode(payload, self.grant_secret, algorithm=self.grant_algorithm))
        return Granted(token=token, expires_at=expires_at)

    def verify_grant(self, token: str | None, subject_id: str, now: datetime | None = None) -> bool:
        if not token:
            return False
        now = as_utc(now) or _now()
        try:
            payload = cast(
                dict[Any, Any],
                jwt.decode(
                    token,
                    self.grant_secret,
                    algorithms=[self.grant_algorithm],
                    options={"verify_exp": False},
                ),
            )
        except JWTError:
            return False
        if payload.get("typ") != GRANT_TYPE or payload.get("sub") != subject_id:
            return False
        exp = payload.get("exp")
        return isinstance(exp, int) and now.timestamp() < exp


step_up_gate = StepUpGate.from_settings(settings)
