"""Renewal reminders for paid subscriptions about to auto-renew."""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.config import get_settings
from kentra.constants import TRIAL_PLAN_NAME
from kentra.models.subscription import Subscription
from kentra.models.subscription_plan import SubscriptionPlan
from kentra.schemas.subscription import ReminderSummary
from kentra.services.notification_service import NotificationDispatcher, NotificationType
from kentra.services.subscription_service import get_plan_display_name
from kentra.subscription_states import SubscriptionStatus
from kentra.utils import as_utc, format_date_es, now_utc

logger = logging.getLogger(__name__)


async def send_renewal_reminders(
    db: AsyncSession, notifier: NotificationDispatcher
) -> ReminderSummary:
    """Remind agents whose paid period renews in a few days. No state changes.

    Runs daily over a one-day window, so each renewal is reminded once.
    Subscriptions set to cancel at period end will not renew and are skipped.
    """
    settings = get_settings()
    days_before = settings.renewal_reminder_days_before
    window_start = now_utc() + timedelta(days=days_before)
    window_end = window_start + timedelta(days=1)
    logger.info("Looking for subscriptions renewing between %s and %s", window_start, window_end)
    summary = ReminderSummary()

    result = await db.execute(
        select(Subscription.id)
        .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
        .where(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.cancel_at_period_end == False,
            SubscriptionPlan.name != TRIAL_PLAN_NAME,
            Subscription.current_period_end >= window_start,
            Subscription.current_period_end < window_end,
        )
        .order_by(Subscription.id)
    )
    sub_ids = list(result.scalars().all())
    if not sub_ids:
        logger.info("No subscriptions renewing in %d days", days_before)
        return summary

    for sub_id in sub_ids:
        try:
            sub = await db.get(Subscription, sub_id)
            if await notifier.dispatch(
                sub.user_id,
                NotificationType.RENEWAL_REMINDER,
                {
                    "plan_name": await get_plan_display_name(db, sub),
                    "days_remaining": days_before,
                    "renewal_date": format_date_es(as_utc(sub.current_period_end)),
                    "billing_cycle": "anual" if sub.billing_cycle == "yearly" else "mensual",
                },
            ):
                summary.reminders += 1
        except Exception:
            logger.exception("Error sending renewal reminder for subscription %s", sub_id)
            summary.errors += 1

    logger.info("Renewal reminder check completed: %s", summary.model_dump())
    return summary
