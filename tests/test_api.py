"""Tests for the HTTP surface: subscription, billing, webhook and job routes."""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import stripe

from kentra.services.auth_service import create_jwt
from kentra.subscription_states import SubscriptionStatus
from kentra.utils import now_utc

RETRIEVE = "kentra.services.billing_provider.retrieve_subscription"
UPDATE = "kentra.services.billing_provider.update_subscription"
PREVIEW = "kentra.services.billing_provider.preview_upcoming_invoice"


class TestAuth:
    @pytest.mark.asyncio
    async def test_requires_token(self, async_client):
        response = await async_client.post("/api/subscription/cancel")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_rejects_bad_token(self, async_client):
        response = await async_client.post(
            "/api/subscription/cancel", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_accepts_session_cookie(self, async_client, test_user, plans):
        async_client.cookies.set("kentra_session", create_jwt(test_user.id))

        response = await async_client.post("/api/subscription/sync-status")

        assert response.status_code == 200
        assert response.json()["updated"] is False


class TestSubscriptionRoutes:
    @pytest.mark.asyncio
    async def test_cancel(self, async_client, auth_headers, test_user, make_subscription, stripe_sub):
        await make_subscription(test_user, stripe_subscription_id="sub_1")

        with patch(RETRIEVE, new=AsyncMock(return_value=stripe_sub("sub_1"))), \
                patch(UPDATE, new=AsyncMock(return_value=stripe_sub("sub_1", cancel_at_period_end=True))):
            response = await async_client.post("/api/subscription/cancel", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "cancelAt" in body

    @pytest.mark.asyncio
    async def test_cancel_without_subscription_returns_structured_error(
        self, async_client, auth_headers, plans
    ):
        response = await async_client.post("/api/subscription/cancel", headers=auth_headers)

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "NO_ACTIVE_SUBSCRIPTION"
        assert body["error"]

    @pytest.mark.asyncio
    async def test_provider_failure_returns_500_with_details(
        self, async_client, auth_headers, test_user, make_subscription
    ):
        await make_subscription(test_user, stripe_subscription_id="sub_1")

        with patch(RETRIEVE, new=AsyncMock(side_effect=stripe.APIConnectionError("connection reset"))):
            response = await async_client.post("/api/subscription/cancel", headers=auth_headers)

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Error interno del servidor"
        assert "connection reset" in body["details"]

    @pytest.mark.asyncio
    async def test_reactivate_already_canceled(
        self, async_client, auth_headers, test_user, make_subscription, stripe_sub
    ):
        await make_subscription(test_user, stripe_subscription_id="sub_1", cancel_at_period_end=True)

        with patch(RETRIEVE, new=AsyncMock(return_value=stripe_sub("sub_1", status="canceled"))):
            response = await async_client.post("/api/subscription/reactivate", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body == {
            "success": False,
            "code": "SUBSCRIPTION_ALREADY_CANCELED",
            "error": body["error"],
        }

    @pytest.mark.asyncio
    async def test_reactivate_success_uses_camel_case(
        self, async_client, auth_headers, test_user, make_subscription, stripe_sub
    ):
        await make_subscription(test_user, stripe_subscription_id="sub_1", cancel_at_period_end=True)

        with patch(RETRIEVE, new=AsyncMock(return_value=stripe_sub("sub_1", cancel_at_period_end=True))), \
                patch(UPDATE, new=AsyncMock(return_value=stripe_sub("sub_1"))):
            response = await async_client.post("/api/subscription/reactivate", headers=auth_headers)

        body = response.json()
        assert body["success"] is True
        assert "nextBillingDate" in body

    @pytest.mark.asyncio
    async def test_change_plan(
        self, async_client, auth_headers, test_user, make_subscription, stripe_sub
    ):
        await make_subscription(test_user, stripe_subscription_id="sub_1")
        update = AsyncMock(return_value=stripe_sub("sub_1", price_id="price_basic_monthly"))

        with patch(RETRIEVE, new=AsyncMock(return_value=stripe_sub("sub_1"))), \
                patch(UPDATE, new=update), \
                patch(PREVIEW, new=AsyncMock(return_value={"amount_due": 990, "currency": "mxn"})):
            response = await async_client.post(
                "/api/subscription/change-plan",
                headers=auth_headers,
                json={"planName": "agente_basico", "billingCycle": "monthly"},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["planName"] == "Agente Básico"
        assert body["proratedAmount"] == 990
        assert body["proratedCurrency"] == "mxn"
        assert update.await_args.kwargs["proration_behavior"] == "create_prorations"

    @pytest.mark.asyncio
    async def test_change_plan_unknown_plan(
        self, async_client, auth_headers, test_user, make_subscription
    ):
        await make_subscription(test_user, stripe_subscription_id="sub_1")

        response = await async_client.post(
            "/api/subscription/change-plan", headers=auth_headers, json={"planName": "platino"}
        )

        assert response.status_code == 404
        assert response.json()["code"] == "PLAN_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_portal(self, async_client, auth_headers):
        with patch(
            "kentra.services.billing_provider.create_portal_session",
            new=AsyncMock(return_value="https://billing.stripe.com/p/1"),
        ):
            response = await async_client.post("/api/subscription/portal", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"url": "https://billing.stripe.com/p/1"}

    @pytest.mark.asyncio
    async def test_trial(self, async_client, auth_headers, plans):
        response = await async_client.post("/api/subscription/trial", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "expiryDate" in body

        again = await async_client.post("/api/subscription/trial", headers=auth_headers)
        assert again.status_code == 400
        assert again.json()["code"] == "ALREADY_SUBSCRIBED"


class TestBillingRoutes:
    @pytest.mark.asyncio
    async def test_checkout(self, async_client, auth_headers, plans):
        with patch(
            "kentra.services.billing_provider.create_checkout_session",
            new=AsyncMock(return_value=SimpleNamespace(url="https://checkout.stripe.com/c/1")),
        ):
            response = await async_client.post(
                "/api/billing/checkout",
                headers=auth_headers,
                json={"planName": "agente_pro", "billingCycle": "monthly"},
            )

        assert response.status_code == 200
        assert response.json() == {"url": "https://checkout.stripe.com/c/1"}

    @pytest.mark.asyncio
    async def test_checkout_rate_limit(self, async_client, auth_headers, test_user, rate_limiter, plans):
        for _ in range(10):
            await rate_limiter.check(f"checkout:user:{test_user.id}", 10, 3_600_000)

        response = await async_client.post(
            "/api/billing/checkout", headers=auth_headers, json={"planName": "agente_pro"}
        )

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "10"


class TestWebhookRoute:
    @pytest.mark.asyncio
    async def test_bad_signature(self, async_client):
        with patch(
            "kentra.routers.webhooks.construct_event",
            side_effect=stripe.SignatureVerificationError("bad", "sig"),
        ):
            response = await async_client.post(
                "/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"}
            )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_subscription_deleted_event(
        self, async_client, db_session, test_user, make_subscription
    ):
        sub = await make_subscription(test_user, stripe_subscription_id="sub_1")
        event = {"type": "customer.subscription.deleted", "data": {"object": {"id": "sub_1"}}}

        with patch("kentra.routers.webhooks.construct_event", return_value=event):
            response = await async_client.post(
                "/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"}
            )

        assert response.status_code == 200
        assert sub.status == SubscriptionStatus.CANCELED


class TestJobRoutes:
    @pytest.mark.asyncio
    async def test_requires_cron_secret(self, async_client):
        response = await async_client.post("/internal/jobs/sync-subscriptions")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_job(self, async_client):
        response = await async_client.post(
            "/internal/jobs/nope", headers={"X-Cron-Secret": "test-cron-secret"}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_runs_job_and_returns_summary(self, async_client, session_factory, plans):
        with patch("kentra.scheduler_tasks.async_session_factory", new=session_factory):
            response = await async_client.post(
                "/internal/jobs/expire-trials", headers={"X-Cron-Secret": "test-cron-secret"}
            )

        assert response.status_code == 200
        body = response.json()
        assert body["job"] == "expire-trials"
        assert body["summary"]["expired"] == 0

    @pytest.mark.asyncio
    async def test_runs_renewal_reminders(
        self, async_client, session_factory, test_user, make_subscription
    ):
        await make_subscription(test_user, current_period_end=now_utc() + timedelta(days=3, hours=12))

        with patch("kentra.scheduler_tasks.async_session_factory", new=session_factory):
            response = await async_client.post(
                "/internal/jobs/renewal-reminders", headers={"X-Cron-Secret": "test-cron-secret"}
            )

        assert response.status_code == 200
        # No job queue in tests, so the reminder is found but not queued
        assert response.json()["summary"] == {"reminders": 0, "errors": 0}
