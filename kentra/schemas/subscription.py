"""Subscription action and job summary schemas.

API payloads use camelCase keys (``nextBillingDate``, ``cancelAt``) to match
what the web client already reads.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CancelResult(_ApiModel):
    success: bool = True
    message: str | None = None
    status: str | None = None
    cancel_at: datetime | None = None


class ReactivateResult(_ApiModel):
    success: bool
    message: str | None = None
    next_billing_date: datetime | None = None
    code: Literal["SUBSCRIPTION_ALREADY_CANCELED", "CANNOT_REACTIVATE"] | None = None
    error: str | None = None


class PortalSession(_ApiModel):
    url: str


class StatusSyncResult(_ApiModel):
    success: bool = True
    updated: bool = False
    message: str


class TrialStarted(_ApiModel):
    success: bool = True
    message: str
    expiry_date: datetime


class PlanChangeResult(_ApiModel):
    success: bool = True
    message: str
    plan_name: str
    billing_cycle: str
    # Amount due on the next invoice, in the smallest currency unit
    prorated_amount: int | None = None
    prorated_currency: str | None = None


class ErrorResponse(_ApiModel):
    success: bool = False
    error: str
    code: str | None = None
    details: str | None = None


# --- Scheduled job summaries ---


class SyncSummary(BaseModel):
    synced: int = 0
    expired: int = 0
    errors: int = 0
    skipped: int = 0
    listings_paused: int = 0
    listings_healed: int = 0


class TrialExpirySummary(BaseModel):
    expired: int = 0
    listings_paused: int = 0
    notifications_sent: int = 0
    errors: int = 0


class ReminderSummary(BaseModel):
    reminders: int = 0
    errors: int = 0


class SuspensionSummary(BaseModel):
    suspended: int = 0
    listings_paused: int = 0
    still_in_grace: int = 0
    skipped: int = 0
    errors: int = 0


class IncompleteExpirySummary(BaseModel):
    expired: int = 0
    errors: int = 0
    cutoff: datetime
