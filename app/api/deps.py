from typing import Any, cast

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt

from app.config import settings
from app.db import get_db
from app.services.notifications import NotificationSender, SmtpNotificationSender
from app.services.payments import reconciler
from app.services.payments.reconciler import PaymentReconciler
from app.services.step_up import StepUpGate, step_up_gate


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        payload = cast(
            dict[Any, Any],
            jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]),
        )
    except JWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    if payload.get("typ", "access") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")
    return payload


def require_user_auth(
    authorization: str | None = Header(default=None),
    request: Request = None,
):
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    payload = decode_access_token(token)
    subject_id = payload.get("sub")
    if not subject_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    roles_value = payload.get("roles")
    roles = [str(role) for role in roles_value] if isinstance(roles_value, list) else []
    session_id = payload.get("session_id")
    if request is not None:
        request.state.actor_id = str(subject_id)
    return {
        "subject_id": str(subject_id),
        "session_id": str(session_id) if session_id else None,
        "roles": roles,
        "email": payload.get("email"),
    }


def require_role(role_name: str):
    def _require_role(auth=Depends(require_user_auth)):
        if role_name not in set(auth.get("roles") or []):
            raise HTTPException(status_code=403, detail="Forbidden")
        return auth

    return _require_role


def get_reconciler() -> PaymentReconciler:
    return reconciler


def get_step_up_gate() -> StepUpGate:
    return step_up_gate


def get_notification_sender() -> NotificationSender:
    return SmtpNotificationSender()


__all__ = [
    "get_db",
    "get_notification_sender",
    "get_reconciler",
    "get_step_up_gate",
    "require_role",
    "require_user_auth",
]
