"""Scheduled subscription jobs — each opens its own session and returns a summary."""

import logging

from arq import ArqRedis
from pydantic import BaseModel

from kentra.db.session import async_session_factory
from kentra.services.dunning_service import expire_incomplete_payments, suspend_past_due_subscriptions
from kentra.services.notification_service import NotificationDispatcher
from kentra.services.renewal_service import send_renewal_reminders
from kentra.services.subscription_sync import sync_subscriptions
from kentra.services.trial_service import expire_trials, send_trial_expiring_reminders

logger = logging.getLogger(__name__)


async def run_subscription_sync(redis: ArqRedis | None = None) -> BaseModel:
    async with async_session_factory() as db:
        return await sync_subscriptions(db)


async def run_trial_expiration(redis: ArqRedis | None = None) -> BaseModel:
    async with async_session_factory() as db:
        return await expire_trials(db, NotificationDispatcher(redis))


async def run_trial_reminders(redis: ArqRedis | None = None) -> BaseModel:
    async with async_session_factory() as db:
        return await send_trial_expiring_reminders(db, NotificationDispatcher(redis))


async def run_past_due_suspension(redis: ArqRedis | None = None) -> BaseModel:
    async with async_session_factory() as db:
        return await suspend_past_due_subscriptions(db, NotificationDispatcher(redis))


async def run_incomplete_payment_expiry(redis: ArqRedis | None = None) -> BaseModel:
    async with async_session_factory() as db:
        return await expire_incomplete_payments(db, NotificationDispatcher(redis))


async def run_renewal_reminders(redis: ArqRedis | None = None) -> BaseModel:
    async with async_session_factory() as db:
        return await send_renewal_reminders(db, NotificationDispatcher(redis))


# Name used by the internal trigger endpoint -> runner
SCHEDULED_JOBS = {
    "sync-subscriptions": run_subscription_sync,
    "expire-trials": run_trial_expiration,
    "trial-reminders": run_trial_reminders,
    "suspend-past-due": run_past_due_suspension,
    "expire-incomplete-payments": run_incomplete_payment_expiry,
    "renewal-reminders": run_renewal_reminders,
}


async def run_scheduled_job(name: str, redis: ArqRedis | None = None) -> dict:
    """Run one scheduled job by name. Raises KeyError for unknown names."""
    runner = SCHEDULED_JOBS[name]
    logger.info("Running scheduled job %s", name)
    summary = await runner(redis)
    return summary.model_dump(mode="json")
