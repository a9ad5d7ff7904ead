"""Stripe subscription management — cancel, reactivate, plan change, portal, checkout, webhooks."""

import logging

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.config import get_settings
from kentra.constants import STRIPE_ALREADY_CANCELED_FRAGMENT
from kentra.models.subscription import Subscription
from kentra.models.subscription_plan import SubscriptionPlan
from kentra.models.user import User
from kentra.schemas.subscription import CancelResult, PlanChangeResult, PortalSession, ReactivateResult
from kentra.services import billing_provider
from kentra.services.billing_provider import field, get_period_timestamps
from kentra.services.listing_service import pause_active_listings
from kentra.services.notification_service import NotificationDispatcher, NotificationType
from kentra.services.subscription_sync import apply_provider_state, load_price_index
from kentra.subscription_states import (
    LIVE_STATUSES,
    OPERATIONAL_STATUSES,
    PROVIDER_CANCELABLE,
    PROVIDER_FULLY_CANCELED,
    PROVIDER_TERMINAL_STATUSES,
    SubscriptionStatus,
    is_blocked,
    parse_provider_status,
)
from kentra.utils import as_utc, from_timestamp, now_utc

logger = logging.getLogger(__name__)


class SubscriptionActionError(Exception):
    """A user-triggered action cannot proceed (missing row, wrong state)."""

    def __init__(self, message: str, status_code: int = 400, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class DuplicateSubscriptionError(RuntimeError):
    """More than one live subscription row exists for a user and needs repair."""

    def __init__(self, user_id: int, subscription_ids: list[int]):
        super().__init__(
            f"User {user_id} has {len(subscription_ids)} live subscriptions: {subscription_ids}"
        )
        self.user_id = user_id
        self.subscription_ids = subscription_ids


async def get_live_subscription(db: AsyncSession, user_id: int) -> Subscription | None:
    """Return the user's single non-terminal subscription, if any."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_STATUSES),
        )
    )
    rows = list(result.scalars().all())
    if len(rows) > 1:
        logger.error("Duplicate live subscriptions for user %s: %s", user_id, [r.id for r in rows])
        raise DuplicateSubscriptionError(user_id, [r.id for r in rows])
    return rows[0] if rows else None


async def get_plan_display_name(db: AsyncSession, sub: Subscription) -> str:
    return await db.scalar(select(SubscriptionPlan.display_name).where(SubscriptionPlan.id == sub.plan_id))


async def _get_cancelable_subscription(db: AsyncSession, user_id: int) -> Subscription | None:
    sub = await get_live_subscription(db, user_id)
    if sub:
        return sub
    # With no live row, a previously canceled one can still be reconciled by a repeat cancel
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.CANCELED,
            Subscription.stripe_subscription_id.is_not(None),
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def _mark_fully_canceled(db: AsyncSession, sub: Subscription) -> int:
    sub.status = SubscriptionStatus.CANCELED
    sub.cancel_at_period_end = False
    paused = await pause_active_listings(db, sub.user_id)
    await db.commit()
    return paused


async def cancel_subscription(db: AsyncSession, user: User) -> CancelResult:
    """Schedule cancellation at the end of the paid period.

    Repeat calls are safe: if Stripe already reports the subscription as
    canceled the local row is synced and the call succeeds without another
    update request.
    """
    sub = await _get_cancelable_subscription(db, user.id)
    if not sub:
        raise SubscriptionActionError(
            "No se encontró una suscripción activa", status_code=404, code="NO_ACTIVE_SUBSCRIPTION"
        )
    if not sub.stripe_subscription_id:
        raise SubscriptionActionError(
            "Tu suscripción no tiene un cobro registrado en Stripe", code="NO_STRIPE_SUBSCRIPTION"
        )

    logger.info("Canceling subscription %s for user %s", sub.id, user.id)
    stripe_sub = await billing_provider.retrieve_subscription(sub.stripe_subscription_id)
    provider_status = parse_provider_status(field(stripe_sub, "status"))

    if provider_status in PROVIDER_FULLY_CANCELED:
        logger.info("Subscription %s already %s at Stripe, syncing", sub.id, provider_status)
        await _mark_fully_canceled(db, sub)
        return CancelResult(message="Tu suscripción ya estaba cancelada", status=SubscriptionStatus.CANCELED)

    if provider_status not in PROVIDER_CANCELABLE:
        raise SubscriptionActionError(
            f"No se puede cancelar una suscripción en estado '{provider_status}'",
            code="INVALID_STATE",
        )

    try:
        updated = await billing_provider.update_subscription(
            sub.stripe_subscription_id, cancel_at_period_end=True
        )
    except stripe.InvalidRequestError as e:
        message = (e.user_message or str(e)).lower()
        if STRIPE_ALREADY_CANCELED_FRAGMENT not in message:
            raise
        logger.info("Stripe reports subscription %s already canceled, syncing", sub.id)
        await _mark_fully_canceled(db, sub)
        return CancelResult(message="Tu suscripción ya estaba cancelada", status=SubscriptionStatus.CANCELED)

    sub.cancel_at_period_end = True
    _, period_end = get_period_timestamps(updated)
    if period_end:
        sub.current_period_end = from_timestamp(period_end)
    await db.commit()
    logger.info("Subscription %s will cancel at period end", sub.id)

    return CancelResult(
        message="Tu suscripción se cancelará al final del periodo actual",
        status=sub.status,
        cancel_at=as_utc(sub.current_period_end),
    )


async def reactivate_subscription(db: AsyncSession, user: User) -> ReactivateResult:
    """Undo a scheduled cancellation while the paid period is still running."""
    sub = await get_live_subscription(db, user.id)
    if (
        not sub
        or sub.status not in OPERATIONAL_STATUSES
        or not sub.cancel_at_period_end
        or not sub.stripe_subscription_id
    ):
        raise SubscriptionActionError(
            "No tienes una cancelación programada que revertir",
            status_code=404,
            code="NO_SCHEDULED_CANCELLATION",
        )

    stripe_sub = await billing_provider.retrieve_subscription(sub.stripe_subscription_id)
    provider_status = parse_provider_status(field(stripe_sub, "status"))

    if provider_status in PROVIDER_TERMINAL_STATUSES:
        logger.info("Subscription %s is %s at Stripe, cannot reactivate", sub.id, provider_status)
        await _mark_fully_canceled(db, sub)
        return ReactivateResult(
            success=False,
            code="SUBSCRIPTION_ALREADY_CANCELED",
            error="Tu suscripción ya fue cancelada por completo. Por favor contrata un nuevo plan.",
        )

    if provider_status in PROVIDER_CANCELABLE and field(stripe_sub, "cancel_at_period_end", False):
        updated = await billing_provider.update_subscription(
            sub.stripe_subscription_id, cancel_at_period_end=False
        )
        sub.cancel_at_period_end = False
        _, period_end = get_period_timestamps(updated)
        if period_end:
            sub.current_period_end = from_timestamp(period_end)
        await db.commit()
        logger.info("Subscription %s reactivated for user %s", sub.id, user.id)
        return ReactivateResult(
            success=True,
            message="Tu suscripción ha sido reactivada",
            next_billing_date=as_utc(sub.current_period_end),
        )

    return ReactivateResult(
        success=False,
        code="CANNOT_REACTIVATE",
        error="No es posible reactivar tu suscripción en este momento.",
    )


async def change_subscription_plan(
    db: AsyncSession, user: User, plan_name: str, billing_cycle: str = "monthly"
) -> PlanChangeResult:
    """Swap the subscription's price at Stripe, prorating the current period.

    The local row takes the new plan and cycle as soon as Stripe accepts the
    change. The proration preview is informational: if Stripe cannot produce
    it the change still stands and the amount is left empty.
    """
    sub = await get_live_subscription(db, user.id)
    if not sub or sub.status != SubscriptionStatus.ACTIVE or not sub.stripe_subscription_id:
        raise SubscriptionActionError(
            "No se encontró una suscripción activa", status_code=404, code="NO_ACTIVE_SUBSCRIPTION"
        )

    plan = await db.scalar(select(SubscriptionPlan).where(SubscriptionPlan.name == plan_name))
    if not plan or plan.is_trial:
        raise SubscriptionActionError("Plan no encontrado", status_code=404, code="PLAN_NOT_FOUND")
    if plan.id == sub.plan_id and billing_cycle == sub.billing_cycle:
        raise SubscriptionActionError("Ya tienes este plan", code="SAME_PLAN")
    price_id = plan.stripe_price_id_yearly if billing_cycle == "yearly" else plan.stripe_price_id_monthly
    if not price_id:
        raise SubscriptionActionError(
            "El plan no tiene precio configurado para este ciclo", code="PRICE_NOT_CONFIGURED"
        )

    stripe_sub = await billing_provider.retrieve_subscription(sub.stripe_subscription_id)
    provider_status = parse_provider_status(field(stripe_sub, "status"))
    if provider_status not in PROVIDER_CANCELABLE:
        raise SubscriptionActionError(
            f"No se puede cambiar el plan de una suscripción en estado '{provider_status}'",
            code="INVALID_STATE",
        )

    logger.info(
        "Changing subscription %s for user %s to plan %s (%s)", sub.id, user.id, plan.name, billing_cycle
    )
    updated = await billing_provider.update_subscription(
        sub.stripe_subscription_id,
        items=[{"id": billing_provider.get_item_id(stripe_sub), "price": price_id}],
        proration_behavior="create_prorations",
        metadata={"plan_id": str(plan.id), "user_id": str(user.id), "billing_cycle": billing_cycle},
    )

    sub.plan_id = plan.id
    sub.billing_cycle = billing_cycle
    period_start, period_end = get_period_timestamps(updated)
    if period_start:
        sub.current_period_start = from_timestamp(period_start)
    if period_end:
        sub.current_period_end = from_timestamp(period_end)
    await db.commit()

    result = PlanChangeResult(
        message=f"Tu plan cambió a {plan.display_name}",
        plan_name=plan.display_name,
        billing_cycle=billing_cycle,
    )
    customer_id = sub.stripe_customer_id or user.stripe_customer_id
    if customer_id:
        try:
            invoice = await billing_provider.preview_upcoming_invoice(customer_id, sub.stripe_subscription_id)
            result.prorated_amount = field(invoice, "amount_due")
            result.prorated_currency = field(invoice, "currency")
        except stripe.StripeError as e:
            logger.warning("Could not preview proration for subscription %s: %s", sub.id, e)
    return result


async def create_portal_session(db: AsyncSession, user: User, return_url: str | None = None) -> PortalSession:
    """Create a Stripe Customer Portal session and return its URL."""
    settings = get_settings()
    customer_id = user.stripe_customer_id
    if not customer_id:
        customer_id = await db.scalar(
            select(Subscription.stripe_customer_id)
            .where(Subscription.user_id == user.id, Subscription.stripe_customer_id.is_not(None))
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
    if not customer_id:
        raise SubscriptionActionError(
            "No tienes una suscripción activa con método de pago registrado", code="NO_CUSTOMER"
        )

    url = await billing_provider.create_portal_session(
        customer_id, return_url or f"{settings.frontend_url}/panel-agente?tab=subscription"
    )
    return PortalSession(url=url)


async def create_checkout_session(
    db: AsyncSession, user: User, plan_name: str, billing_cycle: str = "monthly"
) -> str:
    """Create a Stripe Checkout session for a plan and return the URL."""
    settings = get_settings()

    plan = await db.scalar(select(SubscriptionPlan).where(SubscriptionPlan.name == plan_name))
    if not plan or plan.is_trial:
        raise SubscriptionActionError("Plan no encontrado", status_code=404, code="PLAN_NOT_FOUND")
    price_id = plan.stripe_price_id_yearly if billing_cycle == "yearly" else plan.stripe_price_id_monthly
    price_id = price_id or settings.stripe_price_id
    if not price_id:
        raise SubscriptionActionError("El plan no tiene precio configurado", code="PRICE_NOT_CONFIGURED")

    # Ensure user has a Stripe customer
    if not user.stripe_customer_id:
        customer = await billing_provider.create_customer(user.email, {"user_id": str(user.id)})
        user.stripe_customer_id = customer.id
        await db.commit()

    session = await billing_provider.create_checkout_session(
        customer=user.stripe_customer_id,
        mode="subscription",
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=f"{settings.frontend_url}/panel-agente?tab=subscription&success=true",
        cancel_url=f"{settings.frontend_url}/pricing?canceled=true",
        metadata={"user_id": str(user.id), "plan_id": str(plan.id), "billing_cycle": billing_cycle},
    )
    return session.url


# --- Webhook handlers ---


async def _find_by_stripe_id(db: AsyncSession, subscription_id: str | None) -> Subscription | None:
    if not subscription_id:
        return None
    result = await db.execute(
        select(Subscription).where(Subscription.stripe_subscription_id == subscription_id)
    )
    return result.scalar_one_or_none()


async def handle_checkout_completed(session_data, db: AsyncSession) -> None:
    """Handle checkout.session.completed webhook event (idempotent)."""
    metadata = field(session_data, "metadata", {})
    user_id = int(metadata["user_id"])
    subscription_id = field(session_data, "subscription")
    if not subscription_id:
        return

    stripe_sub = await billing_provider.retrieve_subscription(subscription_id)
    provider_status = parse_provider_status(field(stripe_sub, "status"))
    price_index = await load_price_index(db)

    plan_id = int(metadata["plan_id"]) if metadata.get("plan_id") else None

    # Check by stripe_subscription_id first for idempotency, then replace
    # whatever live row (e.g. a trial) the user had
    sub = await _find_by_stripe_id(db, subscription_id)
    if not sub:
        sub = await get_live_subscription(db, user_id)
        if sub:
            logger.info("Subscription %s moves from %s to %s", sub.id, sub.stripe_subscription_id, subscription_id)
            # Job windows count from the start of the new subscription, not the replaced one
            sub.created_at = now_utc()
        elif plan_id:
            sub = Subscription(user_id=user_id, plan_id=plan_id)
            db.add(sub)
        else:
            logger.error("Checkout %s has no plan metadata", field(session_data, "id"))
            return

    sub.stripe_subscription_id = subscription_id
    sub.stripe_customer_id = field(session_data, "customer")
    sub.first_payment_failed_at = None
    sub.status_reason = None
    apply_provider_state(sub, stripe_sub, provider_status, price_index, fallback_plan_id=plan_id)
    await db.commit()
    logger.info("Checkout completed for user %s, subscription %s", user_id, subscription_id)


async def handle_invoice_paid(
    invoice_data, db: AsyncSession, notifier: NotificationDispatcher
) -> None:
    """Handle invoice.paid webhook — update period and ensure active."""
    sub = await _find_by_stripe_id(db, field(invoice_data, "subscription"))
    if not sub:
        return

    stripe_sub = await billing_provider.retrieve_subscription(sub.stripe_subscription_id)
    period_start, period_end = get_period_timestamps(stripe_sub)
    was_renewal = field(invoice_data, "billing_reason") == "subscription_cycle"
    sub.status = SubscriptionStatus.ACTIVE
    sub.first_payment_failed_at = None
    if period_start:
        sub.current_period_start = from_timestamp(period_start)
    if period_end:
        sub.current_period_end = from_timestamp(period_end)
    await db.commit()

    if was_renewal:
        try:
            await notifier.dispatch(
                sub.user_id,
                NotificationType.RENEWAL_SUCCESS,
                {"plan_name": await get_plan_display_name(db, sub)},
            )
        except Exception as e:
            logger.error("Error queueing renewal notice for user %s: %s", sub.user_id, e)


async def handle_invoice_payment_failed(
    invoice_data, db: AsyncSession, notifier: NotificationDispatcher
) -> None:
    sub = await _find_by_stripe_id(db, field(invoice_data, "subscription"))
    if not sub:
        return

    first_failure = sub.first_payment_failed_at is None
    sub.status = SubscriptionStatus.PAST_DUE
    if first_failure:
        sub.first_payment_failed_at = now_utc()
    await db.commit()

    if first_failure:
        try:
            await notifier.dispatch(
                sub.user_id,
                NotificationType.PAYMENT_FAILED,
                {"plan_name": await get_plan_display_name(db, sub), "grace_days": get_settings().grace_period_days},
            )
        except Exception as e:
            logger.error("Error queueing payment failure notice for user %s: %s", sub.user_id, e)


async def handle_subscription_updated(sub_data, db: AsyncSession) -> None:
    sub = await _find_by_stripe_id(db, field(sub_data, "id"))
    if not sub:
        return

    provider_status = parse_provider_status(field(sub_data, "status"))
    price_index = await load_price_index(db)
    changes = apply_provider_state(sub, sub_data, provider_status, price_index)
    if is_blocked(sub.status):
        await pause_active_listings(db, sub.user_id)
    await db.commit()
    if changes:
        logger.info("Subscription %s updated from webhook: %s", sub.id, changes)


async def handle_subscription_deleted(
    sub_data, db: AsyncSession, notifier: NotificationDispatcher
) -> None:
    sub = await _find_by_stripe_id(db, field(sub_data, "id"))
    if not sub or sub.status == SubscriptionStatus.CANCELED:
        return

    await _mark_fully_canceled(db, sub)
    logger.info("Subscription %s deleted at Stripe, marked canceled", sub.id)
    try:
        await notifier.dispatch(
            sub.user_id, NotificationType.SUBSCRIPTION_CANCELED, {"plan_name": await get_plan_display_name(db, sub)}
        )
    except Exception as e:
        logger.error("Error queueing cancellation notice for user %s: %s", sub.user_id, e)
