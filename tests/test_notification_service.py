"""Tests for notification rendering, queueing and delivery."""

from unittest.mock import AsyncMock, patch

import pytest

from kentra.constants import NOTIFICATION_JOB
from kentra.services.notification_service import (
    NotificationDispatcher,
    NotificationType,
    render_notification,
    send_subscription_notification,
)


def test_every_type_has_a_template():
    for kind in NotificationType:
        subject, body = render_notification(kind, "Ana", {})
        assert subject
        assert "Ana" in body


def test_names_are_escaped():
    _, body = render_notification(NotificationType.SUBSCRIPTION_CANCELED, "<b>Ana</b>", {"plan_name": "Pro"})
    assert "<b>Ana</b>" not in body
    assert "&lt;b&gt;" in body


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_enqueues_job(self):
        redis = AsyncMock()
        dispatcher = NotificationDispatcher(redis)

        queued = await dispatcher.dispatch(3, NotificationType.TRIAL_EXPIRED, {"trial_days": 14})

        assert queued is True
        redis.enqueue_job.assert_awaited_once_with(NOTIFICATION_JOB, 3, "trial_expired", {"trial_days": 14})

    @pytest.mark.asyncio
    async def test_without_queue_drops_notification(self):
        assert await NotificationDispatcher(None).dispatch(3, NotificationType.TRIAL_EXPIRED) is False


class TestSendSubscriptionNotification:
    @pytest.mark.asyncio
    async def test_sends_rendered_email(self, db_session, make_user):
        user = await make_user(email="ana@example.com", full_name="Ana")
        send = AsyncMock(return_value=True)

        with patch("kentra.services.notification_service.send_email", new=send):
            sent = await send_subscription_notification(
                db_session, user.id, "payment_failed", {"plan_name": "Agente Pro", "grace_days": 7}
            )

        assert sent is True
        to, subject, html = send.await_args.args
        assert to == "ana@example.com"
        assert subject == "No pudimos procesar tu pago"
        assert "7 días" in html

    @pytest.mark.asyncio
    async def test_unknown_type_is_not_sent(self, db_session, make_user):
        user = await make_user()
        send = AsyncMock()

        with patch("kentra.services.notification_service.send_email", new=send):
            sent = await send_subscription_notification(db_session, user.id, "bogus", {})

        assert sent is False
        send.assert_not_awaited()
