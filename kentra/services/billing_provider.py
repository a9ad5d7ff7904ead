"""Thin async wrapper over the Stripe SDK.

The SDK is synchronous, so each call runs in a worker thread and is bounded by
``stripe_timeout``. A hung call raises ``asyncio.TimeoutError`` to the caller
instead of stalling a whole batch.
"""

import asyncio
import logging
from typing import Any

import stripe

from kentra.config import get_settings

logger = logging.getLogger(__name__)


def init_stripe() -> None:
    """Set the Stripe API key from settings. Call once at startup."""
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key
    stripe.api_version = settings.stripe_api_version
    stripe.max_network_retries = settings.stripe_max_network_retries


async def _call(fn, *args, **kwargs):
    settings = get_settings()
    return await asyncio.wait_for(
        asyncio.to_thread(fn, *args, **kwargs), timeout=settings.stripe_timeout
    )


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or plain dict, with a default."""
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError, AttributeError):
        return default
    return default if value is None else value


def get_period_timestamps(stripe_sub) -> tuple[int | None, int | None]:
    """Extract current_period_start/end, handling Stripe API version differences.

    Newer API versions (2024-06-20+) moved these fields to items.data[0].
    """
    start, end = field(stripe_sub, "current_period_start"), field(stripe_sub, "current_period_end")
    if start or end:
        return start, end
    try:
        item = stripe_sub["items"]["data"][0]
        return item["current_period_start"], item["current_period_end"]
    except (KeyError, TypeError, IndexError):
        pass
    return None, None


def get_price(stripe_sub) -> tuple[str | None, str | None]:
    """Return (price_id, recurring interval) of the first subscription item."""
    try:
        price = stripe_sub["items"]["data"][0]["price"]
    except (KeyError, TypeError, IndexError):
        return None, None
    return field(price, "id"), field(field(price, "recurring", {}), "interval")


def get_item_id(stripe_sub) -> str | None:
    """Id of the first subscription item (the one carrying the plan price)."""
    try:
        return stripe_sub["items"]["data"][0]["id"]
    except (KeyError, TypeError, IndexError):
        return None


async def retrieve_subscription(subscription_id: str):
    return await _call(stripe.Subscription.retrieve, subscription_id)


async def update_subscription(subscription_id: str, **params):
    return await _call(stripe.Subscription.modify, subscription_id, **params)


async def preview_upcoming_invoice(customer_id: str, subscription_id: str):
    """Next invoice for the subscription, including pending prorations."""
    return await _call(stripe.Invoice.create_preview, customer=customer_id, subscription=subscription_id)


async def create_customer(email: str | None, metadata: dict[str, str]):
    return await _call(stripe.Customer.create, email=email, metadata=metadata)


async def create_checkout_session(**params):
    return await _call(stripe.checkout.Session.create, **params)


async def create_portal_session(customer_id: str, return_url: str) -> str:
    session = await _call(
        stripe.billing_portal.Session.create, customer=customer_id, return_url=return_url
    )
    logger.info("Portal session %s created for customer %s", session.id, customer_id)
    return session.url


def construct_event(payload: bytes, signature: str):
    settings = get_settings()
    return stripe.Webhook.construct_event(payload, signature, settings.stripe_webhook_secret)
