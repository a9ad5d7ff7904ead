"""Dunning jobs — suspend unpaid subscriptions, expire abandoned payments."""

import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.config import get_settings
from kentra.models.subscription import Subscription
from kentra.schemas.subscription import IncompleteExpirySummary, SuspensionSummary
from kentra.services.listing_service import pause_active_listings
from kentra.services.notification_service import NotificationDispatcher, NotificationType
from kentra.services.subscription_service import get_plan_display_name
from kentra.subscription_states import SubscriptionStatus
from kentra.utils import as_utc, format_date_es, now_utc

logger = logging.getLogger(__name__)


async def suspend_past_due_subscriptions(
    db: AsyncSession, notifier: NotificationDispatcher
) -> SuspensionSummary:
    """Suspend past_due subscriptions whose grace period has run out."""
    settings = get_settings()
    grace = timedelta(days=settings.grace_period_days)
    logger.info("Starting past_due suspension check (grace period: %d days)...", settings.grace_period_days)
    summary = SuspensionSummary()

    result = await db.execute(
        select(Subscription.id)
        .where(Subscription.status == SubscriptionStatus.PAST_DUE)
        .order_by(Subscription.id)
    )
    for sub_id in list(result.scalars().all()):
        try:
            sub = await db.get(Subscription, sub_id)
            if not sub.first_payment_failed_at:
                logger.info("Subscription %s missing first_payment_failed_at, skipping", sub_id)
                summary.skipped += 1
                continue

            now = now_utc()
            failed_for = now - as_utc(sub.first_payment_failed_at)
            if failed_for < grace:
                summary.still_in_grace += 1
                continue

            user_id = sub.user_id
            plan_name = await get_plan_display_name(db, sub)
            sub.status = SubscriptionStatus.SUSPENDED
            sub.status_reason = "payment_failed_grace_period_expired"
            paused = await pause_active_listings(db, user_id)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Error processing subscription %s", sub_id)
            summary.errors += 1
            continue

        logger.info("Suspended subscription %s for user %s (%d days past due)", sub_id, user_id, failed_for.days)
        summary.suspended += 1
        summary.listings_paused += paused

        try:
            await notifier.dispatch(
                user_id,
                NotificationType.SUBSCRIPTION_SUSPENDED,
                {
                    "plan_name": plan_name,
                    "days_past_due": failed_for.days,
                    "suspended_date": format_date_es(now),
                },
            )
        except Exception as e:
            logger.error("Error sending suspension notice to user %s: %s", user_id, e)

    logger.info("Suspension check completed: %s", summary.model_dump())
    return summary


async def expire_incomplete_payments(
    db: AsyncSession, notifier: NotificationDispatcher
) -> IncompleteExpirySummary:
    """Expire checkouts whose cash / bank-transfer payment never arrived."""
    settings = get_settings()
    cutoff = now_utc() - timedelta(hours=settings.max_pending_payment_hours)
    logger.info("Looking for incomplete subscriptions created before %s", cutoff.isoformat())
    summary = IncompleteExpirySummary(cutoff=cutoff)

    result = await db.execute(
        select(Subscription.id)
        .where(
            Subscription.status == SubscriptionStatus.INCOMPLETE,
            Subscription.created_at < cutoff,
        )
        .order_by(Subscription.id)
    )
    for sub_id in list(result.scalars().all()):
        try:
            sub = await db.get(Subscription, sub_id)
            user_id = sub.user_id
            plan_name = await get_plan_display_name(db, sub)
            sub.status = SubscriptionStatus.EXPIRED
            sub.status_reason = "payment_timeout"
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Error expiring subscription %s", sub_id)
            summary.errors += 1
            continue

        summary.expired += 1
        logger.info("Expired incomplete subscription %s for user %s", sub_id, user_id)

        try:
            await notifier.dispatch(
                user_id,
                NotificationType.PAYMENT_EXPIRED,
                {"plan_name": plan_name, "hours": settings.max_pending_payment_hours},
            )
        except Exception as e:
            logger.error("Error sending payment expiry notice for %s: %s", sub_id, e)

    logger.info("Incomplete payment expiry complete: %d expired, %d errors", summary.expired, summary.errors)
    return summary
