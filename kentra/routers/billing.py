"""Billing routes — Stripe Checkout."""

from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.db.session import get_db
from kentra.models.user import User
from kentra.routers.subscriptions import action_error_response, internal_error_response
from kentra.services.auth_service import get_current_user, user_rate_limit_key
from kentra.services.rate_limiter import rate_limit
from kentra.services.subscription_service import SubscriptionActionError, create_checkout_session

router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    plan_name: str
    billing_cycle: Literal["monthly", "yearly"] = "monthly"


@router.post("/checkout", dependencies=[Depends(rate_limit("checkout", key_func=user_rate_limit_key))])
async def checkout(
    body: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        url = await create_checkout_session(db, user, body.plan_name, body.billing_cycle)
    except SubscriptionActionError as e:
        return action_error_response(e)
    except Exception as e:
        return internal_error_response("create-checkout-session", e)
    return {"url": url}
