import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from app.api.deps import (
    get_db,
    get_notification_sender,
    get_step_up_gate,
    require_user_auth,
)
from app.config import settings
from app.schemas.step_up import (
    StepUpIssueResponse,
    StepUpVerifyRequest,
    StepUpVerifyResponse,
    WalletRead,
)
from app.services.notifications import NotificationSender
from app.services.payments.ledger import OrderLedger
from app.services.step_up import (
    Cooldown,
    Denied,
    SessionBinding,
    StepUpGate,
    device_fingerprint,
)

logger = logging.getLogger(__name__)

GRANT_COOKIE = "step_up_grant"

limiter = Limiter(key_func=get_remote_address)
router = APIRouter(tags=["step-up"])


def _binding(request: Request, auth: dict) -> SessionBinding:
    return SessionBinding(
        session_id=auth.get("session_id"),
        device_hash=device_fingerprint(request.headers.get("user-agent")),
    )


def _send_code(sender: NotificationSender, recipient: str, code: str, ttl_minutes: int) -> None:
    ok = sender.send("step_up_code", recipient, {"code": code, "ttl_minutes": ttl_minutes})
    if not ok:
        logger.warning("Step-up code delivery failed for %s", recipient)


@router.post(
    "/step-up/issue",
    response_model=StepUpIssueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
@limiter.limit(settings.step_up_rate_limit)
def issue_code(
    request: Request,
    background_tasks: BackgroundTasks,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    gate: StepUpGate = Depends(get_step_up_gate),
    sender: NotificationSender = Depends(get_notification_sender),
):
    """Send a one-time code to the signed-in user.

    The response is identical whether or not a code went out.
    """
    subject_id = auth["subject_id"]
    recipient = auth.get("email")
    binding = _binding(request, auth)
    if not recipient or not binding.complete:
        logger.info("Step-up issue skipped for %s: no recipient or session binding", subject_id)
        return StepUpIssueResponse()
    try:
        issued = gate.issue(db, subject_id, binding)
    except Cooldown as exc:
        logger.info("Step-up issue for %s in cooldown (%ss)", subject_id, exc.retry_after)
        return StepUpIssueResponse()
    background_tasks.add_task(
        _send_code, sender, recipient, issued.code, max(gate.code_ttl_seconds // 60, 1)
    )
    return StepUpIssueResponse()


@router.post("/step-up/verify", response_model=StepUpVerifyResponse)
@limiter.limit(settings.step_up_rate_limit)
def verify_code(
    request: Request,
    response: Response,
    payload: StepUpVerifyRequest,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    gate: StepUpGate = Depends(get_step_up_gate),
):
    result = gate.verify(db, auth["subject_id"], payload.code, _binding(request, auth))
    if isinstance(result, Denied):
        raise HTTPException(
            status_code=400,
            detail={"code": "verification_failed", "message": "Verification failed"},
        )
    response.set_cookie(
        key=GRANT_COOKIE,
        value=result.token,
        max_age=gate.grant_ttl_seconds,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
    )
    return StepUpVerifyResponse(verified=True, expires_at=result.expires_at)


@router.get("/wallet", response_model=WalletRead)
def read_wallet(
    request: Request,
    auth=Depends(require_user_auth),
    db: Session = Depends(get_db),
    gate: StepUpGate = Depends(get_step_up_gate),
):
    subject_id = auth["subject_id"]
    if not gate.verify_grant(request.cookies.get(GRANT_COOKIE), subject_id):
        raise HTTPException(
            status_code=403,
            detail={"code": "step_up_required", "message": "Additional verification required"},
        )
    summary = OrderLedger.paid_summary(db, subject_id)
    return WalletRead(
        owner_id=subject_id,
        orders_paid=summary["orders_paid"],
        total_paid=str(summary["total_paid"]),
        currency=summary["currency"],
    )
