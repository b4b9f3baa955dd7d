"""Tests for Celery tasks."""

from unittest.mock import MagicMock, patch

import pytest

from app.models.notification import NotificationStatus
from app.services.payments.reconciler import WebhookOutcome


# =============================================================================
# Payment Task Tests
# =============================================================================


class TestPaymentTasks:
    """Tests for the payment maintenance tasks."""

    def test_retry_unconfirmed_voids_success(self):
        mock_session = MagicMock()

        with patch("app.tasks.payments.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.payments.payments_service.reconciler.retry_unconfirmed_voids",
                return_value={"checked": 2, "confirmed": 1},
            ) as mock_retry:
                from app.tasks.payments import retry_unconfirmed_voids

                result = retry_unconfirmed_voids(limit=10)

                mock_retry.assert_called_once_with(mock_session, limit=10)
                assert result == {"checked": 2, "confirmed": 1}
                mock_session.close.assert_called_once()

    def test_retry_unconfirmed_voids_exception_rollback(self):
        mock_session = MagicMock()

        with patch("app.tasks.payments.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.payments.payments_service.reconciler.retry_unconfirmed_voids",
                side_effect=Exception("DB error"),
            ):
                from app.tasks.payments import retry_unconfirmed_voids

                with pytest.raises(Exception, match="DB error"):
                    retry_unconfirmed_voids()

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()

    def test_capture_deferred_payment(self):
        mock_session = MagicMock()

        with patch("app.tasks.payments.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.payments.payments_service.reconciler.capture_authorized",
                return_value=WebhookOutcome(status="ok", order_id="o-1"),
            ) as mock_capture:
                from app.tasks.payments import capture_deferred_payment

                assert capture_deferred_payment("o-1") == "ok"
                mock_capture.assert_called_once_with(mock_session, "o-1")
                mock_session.close.assert_called_once()

    def test_purge_idempotency_records(self):
        mock_session = MagicMock()

        with patch("app.tasks.payments.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.payments.payments_service.idempotency_store.purge_expired",
                return_value=3,
            ):
                from app.tasks.payments import purge_idempotency_records

                assert purge_idempotency_records() == 3
                mock_session.close.assert_called_once()


# =============================================================================
# Subscription Task Tests
# =============================================================================


class TestSubscriptionTasks:
    def test_sweep_subscriptions(self):
        mock_session = MagicMock()

        with patch("app.tasks.subscriptions.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.subscriptions.subscription_validator.sweep",
                return_value={"checked": 1, "expired": 1},
            ) as mock_sweep:
                from app.tasks.subscriptions import sweep_subscriptions

                sweep_subscriptions("group-1")

                mock_sweep.assert_called_once_with(mock_session, group_id="group-1")
                mock_session.close.assert_called_once()

    def test_sweep_exception_closes_session(self):
        mock_session = MagicMock()

        with patch("app.tasks.subscriptions.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.subscriptions.subscription_validator.sweep",
                side_effect=Exception("Sweep error"),
            ):
                from app.tasks.subscriptions import sweep_subscriptions

                with pytest.raises(Exception, match="Sweep error"):
                    sweep_subscriptions()

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()


# =============================================================================
# Notification Task Tests
# =============================================================================


class TestNotificationTasks:
    def test_send_notification_delivers(self):
        mock_session = MagicMock()
        delivered = MagicMock(status=NotificationStatus.sent)

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.notifications.notifications.deliver", return_value=delivered
            ) as mock_deliver:
                from app.tasks.notifications import send_notification

                send_notification("n-1")

                args = mock_deliver.call_args
                assert args[0][0] == mock_session
                assert args[0][1] == "n-1"
                mock_session.close.assert_called_once()

    def test_send_notification_error_rolls_back(self):
        mock_session = MagicMock()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.notifications.notifications.deliver",
                side_effect=RuntimeError("render failed"),
            ):
                from app.tasks.notifications import send_notification

                with pytest.raises(RuntimeError, match="render failed"):
                    send_notification("n-1")

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()

    def test_redeliver_queued_notifications(self):
        mock_session = MagicMock()

        with patch("app.tasks.notifications.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.notifications.notifications.pending_ids",
                return_value=["n-1", "n-2"],
            ):
                with patch("app.tasks.notifications.notifications.enqueue") as mock_enqueue:
                    from app.tasks.notifications import redeliver_queued_notifications

                    assert redeliver_queued_notifications(batch_size=10) == 2
                    mock_enqueue.assert_called_once_with(["n-1", "n-2"])
                    mock_session.close.assert_called_once()


# =============================================================================
# Scheduler Config Tests
# =============================================================================


class TestSchedulerConfig:
    def test_beat_schedule_contains_maintenance_jobs(self, monkeypatch):
        monkeypatch.delenv("SUBSCRIPTION_SWEEP_ENABLED", raising=False)
        monkeypatch.delenv("VOID_RETRY_ENABLED", raising=False)
        from app.services.scheduler_config import build_beat_schedule

        schedule = build_beat_schedule()

        assert schedule["subscription_sweep"]["task"] == (
            "app.tasks.subscriptions.sweep_subscriptions"
        )
        assert "retry_unconfirmed_voids" in schedule
        assert "redeliver_notifications" in schedule

    def test_celery_config_prefers_broker_url(self, monkeypatch):
        monkeypatch.setenv("CELERY_BROKER_URL", "redis://broker:6379/1")
        from app.services.scheduler_config import get_celery_config

        assert get_celery_config()["broker_url"] == "redis://broker:6379/1"
