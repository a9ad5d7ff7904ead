"""Listing operations the subscription lifecycle needs: count and pause.

These helpers only stage changes on the session; the caller commits so the
subscription update and the listing pause land in one transaction.
"""

import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.constants import LISTING_ACTIVE, LISTING_PAUSED
from kentra.models.property import Property
from kentra.models.subscription import Subscription
from kentra.subscription_states import BLOCKED_STATUSES, LIVE_STATUSES

logger = logging.getLogger(__name__)


async def get_active_listing_ids(db: AsyncSession, user_id: int) -> list[int]:
    result = await db.execute(
        select(Property.id).where(Property.agent_id == user_id, Property.status == LISTING_ACTIVE)
    )
    return list(result.scalars().all())


async def count_active_listings(db: AsyncSession, user_id: int) -> int:
    return await db.scalar(
        select(func.count())
        .select_from(Property)
        .where(Property.agent_id == user_id, Property.status == LISTING_ACTIVE)
    ) or 0


async def set_listing_status(db: AsyncSession, listing_ids: list[int], status: str) -> None:
    if not listing_ids:
        return
    await db.execute(
        update(Property)
        .where(Property.id.in_(listing_ids))
        .values(status=status)
        .execution_options(synchronize_session=False)
    )


async def pause_active_listings(db: AsyncSession, user_id: int) -> int:
    """Move every 'activa' listing of the user to 'pausada'. Returns the number paused."""
    listing_ids = await get_active_listing_ids(db, user_id)
    if not listing_ids:
        return 0
    await set_listing_status(db, listing_ids, LISTING_PAUSED)
    logger.info("Paused %d listings for user %s", len(listing_ids), user_id)
    return len(listing_ids)


async def find_users_with_orphaned_listings(db: AsyncSession) -> list[int]:
    """Users with active listings, a blocked subscription and no live one.

    A crash between writing a terminal subscription status and pausing the
    listings leaves exactly this shape behind.
    """
    live_users = select(Subscription.user_id).where(Subscription.status.in_(LIVE_STATUSES))
    blocked_users = select(Subscription.user_id).where(Subscription.status.in_(BLOCKED_STATUSES))
    result = await db.execute(
        select(Property.agent_id)
        .where(
            Property.status == LISTING_ACTIVE,
            Property.agent_id.in_(blocked_users),
            Property.agent_id.not_in(live_users),
        )
        .distinct()
    )
    return list(result.scalars().all())
