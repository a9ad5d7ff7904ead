"""Subscription self-service routes — cancel, reactivate, change plan, portal, status sync, trial."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.db.session import get_db
from kentra.models.user import User
from kentra.schemas.subscription import ErrorResponse
from kentra.services.auth_service import get_current_user, user_rate_limit_key
from kentra.services.notification_service import NotificationDispatcher, get_notifier
from kentra.services.rate_limiter import rate_limit
from kentra.services.subscription_service import (
    SubscriptionActionError,
    cancel_subscription,
    change_subscription_plan,
    create_portal_session,
    reactivate_subscription,
)
from kentra.services.subscription_sync import sync_user_subscription_status
from kentra.services.trial_service import start_trial

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/subscription",
    tags=["subscription"],
    dependencies=[Depends(rate_limit("general", key_func=user_rate_limit_key))],
)


class PortalRequest(BaseModel):
    return_url: str | None = None


class ChangePlanRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    plan_name: str
    billing_cycle: Literal["monthly", "yearly"] = "monthly"


def action_error_response(exc: SubscriptionActionError) -> JSONResponse:
    body = ErrorResponse(error=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(by_alias=True, exclude_none=True))


def internal_error_response(action: str, exc: Exception) -> JSONResponse:
    logger.exception("Error in %s", action)
    body = ErrorResponse(error="Error interno del servidor", details=str(exc))
    return JSONResponse(status_code=500, content=body.model_dump(by_alias=True, exclude_none=True))


def _ok(result: BaseModel) -> JSONResponse:
    return JSONResponse(content=result.model_dump(mode="json", by_alias=True, exclude_none=True))


@router.post("/cancel")
async def cancel(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await cancel_subscription(db, user)
    except SubscriptionActionError as e:
        return action_error_response(e)
    except Exception as e:
        return internal_error_response("cancel-subscription", e)
    return _ok(result)


@router.post("/reactivate")
async def reactivate(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await reactivate_subscription(db, user)
    except SubscriptionActionError as e:
        return action_error_response(e)
    except Exception as e:
        return internal_error_response("reactivate-subscription", e)
    return _ok(result)


@router.post("/change-plan")
async def change_plan(
    body: ChangePlanRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await change_subscription_plan(db, user, body.plan_name, body.billing_cycle)
    except SubscriptionActionError as e:
        return action_error_response(e)
    except Exception as e:
        return internal_error_response("change-subscription-plan", e)
    return _ok(result)


@router.post("/portal")
async def portal(
    body: PortalRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await create_portal_session(db, user, body.return_url if body else None)
    except SubscriptionActionError as e:
        return action_error_response(e)
    except Exception as e:
        return internal_error_response("create-portal-session", e)
    return _ok(result)


@router.post("/sync-status")
async def sync_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await sync_user_subscription_status(db, user)
    except Exception as e:
        return internal_error_response("sync-subscription-status", e)
    return _ok(result)


@router.post("/trial")
async def trial(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    try:
        result = await start_trial(db, user, notifier)
    except SubscriptionActionError as e:
        return action_error_response(e)
    except Exception as e:
        return internal_error_response("start-trial", e)
    return _ok(result)
