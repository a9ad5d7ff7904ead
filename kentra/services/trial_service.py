"""Free trial lifecycle: start, remind, expire.

Trials never touch Stripe. A trial is an ``active`` row on the trial plan and
its length is enforced purely by ``created_at``.
"""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.config import get_settings
from kentra.constants import TRIAL_PLAN_NAME
from kentra.models.subscription import Subscription
from kentra.models.subscription_plan import SubscriptionPlan
from kentra.models.user import User
from kentra.schemas.subscription import ReminderSummary, TrialExpirySummary, TrialStarted
from kentra.services.listing_service import pause_active_listings
from kentra.services.notification_service import NotificationDispatcher, NotificationType
from kentra.services.subscription_service import SubscriptionActionError, get_live_subscription
from kentra.subscription_states import SubscriptionStatus
from kentra.utils import as_utc, format_date_es, now_utc

logger = logging.getLogger(__name__)


def _trial_query():
    return (
        select(Subscription.id)
        .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
        .where(
            SubscriptionPlan.name == TRIAL_PLAN_NAME,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(Subscription.id)
    )


async def start_trial(
    db: AsyncSession, user: User, notifier: NotificationDispatcher
) -> TrialStarted:
    """Give the user a one-time trial on the trial plan."""
    settings = get_settings()

    if await get_live_subscription(db, user.id):
        raise SubscriptionActionError(
            "Ya tienes una suscripción activa", status_code=400, code="ALREADY_SUBSCRIBED"
        )

    plan = await db.scalar(select(SubscriptionPlan).where(SubscriptionPlan.name == TRIAL_PLAN_NAME))
    if not plan:
        logger.error("Trial plan %s is not configured", TRIAL_PLAN_NAME)
        raise SubscriptionActionError("El plan de prueba no está configurado", status_code=500)

    previous = await db.scalar(
        select(Subscription.id).where(Subscription.user_id == user.id, Subscription.plan_id == plan.id).limit(1)
    )
    if previous:
        raise SubscriptionActionError(
            "Ya utilizaste tu periodo de prueba gratuito", status_code=403, code="TRIAL_ALREADY_USED"
        )

    now = now_utc()
    expiry = now + timedelta(days=settings.trial_duration_days)
    db.add(
        Subscription(
            user_id=user.id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle="monthly",
            current_period_start=now,
            current_period_end=expiry,
            created_at=now,
        )
    )
    await db.commit()
    logger.info("Started %d-day trial for user %s", settings.trial_duration_days, user.id)

    try:
        await notifier.dispatch(
            user.id,
            NotificationType.TRIAL_STARTED,
            {"trial_days": settings.trial_duration_days, "expiry_date": format_date_es(expiry)},
        )
    except Exception as e:
        logger.error("Error sending trial welcome to user %s: %s", user.id, e)

    return TrialStarted(message="Tu prueba gratuita ha comenzado", expiry_date=expiry)


async def expire_trials(db: AsyncSession, notifier: NotificationDispatcher) -> TrialExpirySummary:
    """Expire trials older than the trial length and pause their listings."""
    settings = get_settings()
    logger.info("Starting trial expiration check...")
    summary = TrialExpirySummary()

    cutoff = now_utc() - timedelta(days=settings.trial_duration_days)
    result = await db.execute(_trial_query().where(Subscription.created_at <= cutoff))
    sub_ids = list(result.scalars().all())
    if not sub_ids:
        logger.info("No expired trials found")
        return summary
    logger.info("Found %d expired trial(s)", len(sub_ids))

    for sub_id in sub_ids:
        try:
            sub = await db.get(Subscription, sub_id)
            user_id = sub.user_id
            sub.status = SubscriptionStatus.EXPIRED
            sub.status_reason = "trial_ended"
            paused = await pause_active_listings(db, user_id)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Error processing trial %s", sub_id)
            summary.errors += 1
            continue

        summary.expired += 1
        summary.listings_paused += paused

        try:
            if await notifier.dispatch(
                user_id,
                NotificationType.TRIAL_EXPIRED,
                {"trial_days": settings.trial_duration_days, "expired_date": format_date_es(now_utc())},
            ):
                summary.notifications_sent += 1
        except Exception as e:
            logger.error("Error sending trial expiry notice to user %s: %s", user_id, e)

    logger.info("Trial expiration check completed: %s", summary.model_dump())
    return summary


async def send_trial_expiring_reminders(
    db: AsyncSession, notifier: NotificationDispatcher
) -> ReminderSummary:
    """Warn trial users a couple of days before their trial ends. No state changes."""
    settings = get_settings()
    logger.info("Starting trial expiring reminder check...")
    summary = ReminderSummary()

    days_before = settings.trial_reminder_days_before
    now = now_utc()
    window_end = now - timedelta(days=settings.trial_duration_days - days_before)
    window_start = window_end - timedelta(days=1)

    result = await db.execute(
        _trial_query().where(
            Subscription.created_at >= window_start,
            Subscription.created_at < window_end,
        )
    )
    sub_ids = list(result.scalars().all())
    if not sub_ids:
        logger.info("No trials expiring in %d days", days_before)
        return summary

    for sub_id in sub_ids:
        try:
            sub = await db.get(Subscription, sub_id)
            expiry = as_utc(sub.created_at) + timedelta(days=settings.trial_duration_days)
            if await notifier.dispatch(
                sub.user_id,
                NotificationType.TRIAL_EXPIRING,
                {"days_remaining": days_before, "expiry_date": format_date_es(expiry)},
            ):
                summary.reminders += 1
        except Exception:
            logger.exception("Error sending trial reminder for subscription %s", sub_id)
            summary.errors += 1

    logger.info("Trial expiring reminder check completed: %s", summary.model_dump())
    return summary
