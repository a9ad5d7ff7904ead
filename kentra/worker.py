"""ARQ worker — notification delivery and the daily subscription jobs."""

import logging

from arq import cron
from arq.connections import RedisSettings

from kentra.config import get_settings
from kentra.constants import ARQ_JOB_TIMEOUT, ARQ_MAX_JOBS
from kentra.services.billing_provider import init_stripe
from kentra.utils import setup_logging

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    setup_logging(get_settings().debug)
    init_stripe()


async def send_subscription_notification(
    ctx: dict, user_id: int, notification_type: str, metadata: dict
) -> bool:
    """ARQ job: email a queued subscription notification."""
    from kentra.db.session import async_session_factory
    from kentra.services.notification_service import send_subscription_notification as send_notification

    async with async_session_factory() as db:
        sent = await send_notification(db, user_id, notification_type, metadata)
    if not sent:
        logger.warning("Notification %s for user %s was not sent", notification_type, user_id)
    return sent


async def daily_subscription_sync(ctx: dict) -> dict:
    """Cron job: reconcile subscriptions with Stripe."""
    from kentra.scheduler_tasks import run_scheduled_job

    return await run_scheduled_job("sync-subscriptions", ctx.get("redis"))


async def daily_trial_expiration(ctx: dict) -> dict:
    from kentra.scheduler_tasks import run_scheduled_job

    return await run_scheduled_job("expire-trials", ctx.get("redis"))


async def daily_trial_reminders(ctx: dict) -> dict:
    from kentra.scheduler_tasks import run_scheduled_job

    return await run_scheduled_job("trial-reminders", ctx.get("redis"))


async def daily_past_due_suspension(ctx: dict) -> dict:
    from kentra.scheduler_tasks import run_scheduled_job

    return await run_scheduled_job("suspend-past-due", ctx.get("redis"))


async def daily_renewal_reminders(ctx: dict) -> dict:
    from kentra.scheduler_tasks import run_scheduled_job

    return await run_scheduled_job("renewal-reminders", ctx.get("redis"))


async def incomplete_payment_expiry(ctx: dict) -> dict:
    from kentra.scheduler_tasks import run_scheduled_job

    return await run_scheduled_job("expire-incomplete-payments", ctx.get("redis"))


class WorkerSettings:
    """ARQ worker configuration. Cron times are UTC."""

    functions = [send_subscription_notification]
    cron_jobs = [
        cron(daily_subscription_sync, hour=3, minute=0),
        cron(daily_trial_expiration, hour=4, minute=0),
        cron(daily_past_due_suspension, hour=5, minute=0),
        cron(daily_trial_reminders, hour=9, minute=0),
        cron(daily_renewal_reminders, hour=10, minute=0),
        cron(incomplete_payment_expiry, hour={0, 4, 8, 12, 16, 20}, minute=0),
    ]
    on_startup = startup

    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)

    max_jobs = ARQ_MAX_JOBS
    job_timeout = ARQ_JOB_TIMEOUT
