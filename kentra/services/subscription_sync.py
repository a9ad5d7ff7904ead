"""Daily reconciliation of local subscriptions against Stripe.

Stripe is the source of truth for paid subscriptions. For every operational
row the job fetches the Stripe subscription and either marks it canceled
(pausing the agent's listings in the same transaction) or copies over status,
plan, billing cycle and period. Rows are independent: one failure is logged
and counted, and the rest of the batch still runs.

After the per-row pass the job re-derives listing state from subscription
state, pausing listings of agents left with only blocked subscriptions. A
crash between the two writes anywhere else in the system is repaired here on
the next run.
"""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.models.subscription import Subscription
from kentra.models.subscription_plan import SubscriptionPlan
from kentra.models.user import User
from kentra.schemas.subscription import StatusSyncResult, SyncSummary
from kentra.services import billing_provider
from kentra.services.billing_provider import field, get_period_timestamps, get_price
from kentra.services.listing_service import find_users_with_orphaned_listings, pause_active_listings
from kentra.subscription_states import (
    OPERATIONAL_STATUSES,
    ProviderStatus,
    SubscriptionStatus,
    local_status_for,
    parse_provider_status,
)
from kentra.utils import as_utc, from_timestamp, now_utc

logger = logging.getLogger(__name__)

_SYNCED = "synced"
_EXPIRED = "expired"


async def load_price_index(db: AsyncSession) -> dict[str, int]:
    """Map every monthly/yearly Stripe price id to its plan id."""
    result = await db.execute(select(SubscriptionPlan))
    index: dict[str, int] = {}
    for plan in result.scalars().all():
        for price_id in (plan.stripe_price_id_monthly, plan.stripe_price_id_yearly):
            if price_id:
                index[price_id] = plan.id
    return index


def is_provider_expired(stripe_sub, now: datetime) -> bool:
    """Canceled at Stripe, or a scheduled cancellation date already passed."""
    if field(stripe_sub, "status") == ProviderStatus.CANCELED:
        return True
    cancel_at = field(stripe_sub, "cancel_at")
    return bool(cancel_at) and cancel_at < int(now.timestamp())


def apply_provider_state(
    sub: Subscription,
    stripe_sub,
    provider_status: ProviderStatus,
    price_index: dict[str, int],
    fallback_plan_id: int | None = None,
) -> dict[str, str]:
    """Copy Stripe's view onto the local row. Returns the fields that changed.

    A price that is not in the plan catalogue resolves to ``fallback_plan_id``
    when given, else the row keeps its current plan.
    """
    price_id, interval = get_price(stripe_sub)
    default_plan_id = fallback_plan_id or sub.plan_id
    period_start, period_end = get_period_timestamps(stripe_sub)

    wanted = {
        "status": local_status_for(provider_status),
        "cancel_at_period_end": bool(field(stripe_sub, "cancel_at_period_end", False)),
        "plan_id": price_index.get(price_id, default_plan_id) if price_id else default_plan_id,
        "billing_cycle": "yearly" if interval == "year" else "monthly",
    }
    if period_start:
        wanted["current_period_start"] = from_timestamp(period_start)
    if period_end:
        wanted["current_period_end"] = from_timestamp(period_end)

    changes = {}
    for name, new_value in wanted.items():
        old_value = getattr(sub, name)
        if isinstance(old_value, datetime):
            old_value = as_utc(old_value)
        if old_value != new_value:
            changes[name] = f"{old_value} -> {new_value}"
            setattr(sub, name, new_value)
    return changes


async def _reconcile(
    db: AsyncSession, sub: Subscription, price_index: dict[str, int]
) -> tuple[str, int]:
    stripe_sub = await billing_provider.retrieve_subscription(sub.stripe_subscription_id)
    provider_status = parse_provider_status(field(stripe_sub, "status"))

    if is_provider_expired(stripe_sub, now_utc()):
        logger.info("Expiring subscription %s for user %s", sub.id, sub.user_id)
        sub.status = SubscriptionStatus.CANCELED
        sub.cancel_at_period_end = False
        sub.status_reason = "provider_canceled"
        paused = await pause_active_listings(db, sub.user_id)
        return _EXPIRED, paused

    changes = apply_provider_state(sub, stripe_sub, provider_status, price_index)
    if changes:
        logger.info("Syncing subscription %s: %s", sub.id, changes)
    return _SYNCED, 0


async def heal_orphaned_listings(db: AsyncSession) -> int:
    """Pause listings still active under agents with no live subscription."""
    healed = 0
    for user_id in await find_users_with_orphaned_listings(db):
        healed += await pause_active_listings(db, user_id)
    if healed:
        logger.warning("Paused %d listings left active after their subscription ended", healed)
    return healed


async def sync_subscriptions(db: AsyncSession) -> SyncSummary:
    """Reconcile every active/trialing subscription with Stripe."""
    logger.info("Starting daily subscription sync...")
    summary = SyncSummary()

    result = await db.execute(
        select(Subscription.id)
        .where(Subscription.status.in_(OPERATIONAL_STATUSES))
        .order_by(Subscription.id)
    )
    sub_ids = list(result.scalars().all())
    price_index = await load_price_index(db)

    for sub_id in sub_ids:
        try:
            sub = await db.get(Subscription, sub_id)
            if sub is None:
                continue
            if not sub.stripe_subscription_id:
                logger.debug("Skipping subscription %s - no Stripe ID", sub_id)
                summary.skipped += 1
                continue

            outcome, paused = await _reconcile(db, sub, price_index)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Error syncing subscription %s", sub_id)
            summary.errors += 1
            continue

        if outcome == _EXPIRED:
            summary.expired += 1
            summary.listings_paused += paused
        else:
            summary.synced += 1

    try:
        summary.listings_healed = await heal_orphaned_listings(db)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Error pausing orphaned listings")
        summary.errors += 1

    logger.info("Sync complete: %s", summary.model_dump())
    return summary


async def sync_user_subscription_status(db: AsyncSession, user: User) -> StatusSyncResult:
    """Clear a stale scheduled-cancellation flag once Stripe has fully canceled."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user.id,
            Subscription.status == SubscriptionStatus.CANCELED,
            Subscription.stripe_subscription_id.is_not(None),
            Subscription.cancel_at_period_end == True,
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    sub = result.scalars().first()
    if not sub:
        return StatusSyncResult(message="No hay suscripción que sincronizar")

    stripe_sub = await billing_provider.retrieve_subscription(sub.stripe_subscription_id)
    provider_status = parse_provider_status(field(stripe_sub, "status"))
    logger.info(
        "Status sync for user %s: stripe=%s local cancel_at_period_end=%s",
        user.id, provider_status, sub.cancel_at_period_end,
    )

    if provider_status == ProviderStatus.CANCELED:
        sub.cancel_at_period_end = False
        await db.commit()
        return StatusSyncResult(updated=True, message="Estado de suscripción sincronizado con Stripe")

    return StatusSyncResult(message="La suscripción ya está sincronizada")
