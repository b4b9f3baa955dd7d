"""Outbound customer notifications.

Services record a ``Notification`` row (the side-effect intent) inside their
own transaction and hand its id to the Celery queue after commit. The
``send_notification`` task renders the template and delivers it through a
``NotificationSender``.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.models.notification import Notification, NotificationStatus
from app.services import email as email_service
from app.services.common import coerce_uuid

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-zA-Z0-9_]+)\s*\}\}")

TEMPLATES: dict[str, dict[str, str]] = {
    "order_confirmation": {
        "subject": "Order confirmation #{{order_id}}",
        "text": (
            "Thank you for your order.\n\n"
            "Order: {{order_id}}\n"
            "Total: {{amount}} {{currency}}\n"
            "Payment: {{provider}}\n"
        ),
        "html": (
            "<p>Thank you for your order.</p>"
            "<p>Order: {{order_id}}<br>Total: {{amount}} {{currency}}<br>"
            "Payment: {{provider}}</p>"
        ),
    },
    "subscription_confirmation": {
        "subject": "Your membership is active",
        "text": "Your membership for {{group_id}} is active until {{current_period_end}}.\n",
        "html": "<p>Your membership for {{group_id}} is active until {{current_period_end}}.</p>",
    },
    "subscription_canceled": {
        "subject": "Your membership has been canceled",
        "text": "Your membership for {{group_id}} has been canceled.\n",
        "html": "<p>Your membership for {{group_id}} has been canceled.</p>",
    },
    "step_up_code": {
        "subject": "Your verification code",
        "text": "Your verification code is {{code}}. It expires in {{ttl_minutes}} minutes.\n",
        "html": (
            "<p>Your verification code is <strong>{{code}}</strong>.</p>"
            "<p>It expires in {{ttl_minutes}} minutes.</p>"
        ),
    },
}


def render_template_text(text: str | None, variables: Mapping[str, object] | None = None) -> str:
    """Replace ``{{variable}}`` tokens; unknown placeholders are left unchanged."""
    if not text:
        return ""
    values = {str(key): "" if value is None else str(value) for key, value in (variables or {}).items()}

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return values[key]
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, text)


def render(template: str, data: Mapping[str, object] | None) -> tuple[str, str, str]:
    entry = TEMPLATES.get(template)
    if entry is None:
        raise ValueError(f"Unknown notification template: {template}")
    return (
        render_template_text(entry["subject"], data),
        render_template_text(entry["html"], data),
        render_template_text(entry["text"], data),
    )


class NotificationSender(ABC):
    @abstractmethod
    def send(self, template: str, recipient: str, data: Mapping[str, object]) -> bool:
        raise NotImplementedError


class SmtpNotificationSender(NotificationSender):
    def __init__(self, config: dict | None = None):
        self.config = config

    def send(self, template: str, recipient: str, data: Mapping[str, object]) -> bool:
        subject, body_html, body_text = render(template, data)
        return email_service.send_email(
            recipient, subject, body_html, body_text, config=self.config
        )


class Notifications:
    @staticmethod
    def record(
        db: Session,
        template: str,
        recipient: str,
        payload: dict | None = None,
        order_id=None,
    ) -> Notification:
        """Record a queued notification; the caller commits and enqueues."""
        notification = Notification(
            template=template,
            recipient=recipient,
            payload=payload or {},
            order_id=coerce_uuid(order_id),
            status=NotificationStatus.queued,
        )
        db.add(notification)
        db.flush()
        return notification

    @staticmethod
    def enqueue(notification_ids: list[str]) -> None:
        """Hand committed notifications to the Celery queue."""
        if not notification_ids:
            return
        try:
            from app.tasks.notifications import send_notification

            for notification_id in notification_ids:
                send_notification.delay(notification_id)
        except Exception as exc:
            # Rows stay queued; the periodic redelivery task picks them up.
            logger.error("Failed to queue notification tasks: %s", exc)

    @staticmethod
    def deliver(db: Session, notification_id, sender: NotificationSender) -> Notification | None:
        notification = db.get(Notification, coerce_uuid(notification_id))
        if not notification:
            logger.warning("Notification %s not found", notification_id)
            return None
        if notification.status == NotificationStatus.sent:
            return notification
        try:
            ok = sender.send(notification.template, notification.recipient, notification.payload or {})
            error = None if ok else "send returned failure"
        except ValueError as exc:
            ok = False
            error = str(exc)
        if ok:
            notification.status = NotificationStatus.sent
            notification.sent_at = datetime.now(timezone.utc)
            notification.last_error = None
        else:
            notification.status = NotificationStatus.failed
            notification.last_error = error
            logger.warning(
                "Notification %s (%s) failed: %s", notification.id, notification.template, error
            )
        db.commit()
        return notification

    @staticmethod
    def pending_ids(db: Session, older_than: datetime, limit: int = 100) -> list[str]:
        rows = (
            db.query(Notification.id)
            .filter(Notification.status == NotificationStatus.queued)
            .filter(Notification.created_at < older_than)
            .order_by(Notification.created_at.asc())
            .limit(limit)
            .all()
        )
        return [str(row.id) for row in rows]


notifications = Notifications()
