"""Subscription status types shared by the API, webhooks and scheduled jobs.

Local statuses and billing-provider statuses are separate closed sets. Provider
values are mapped onto local ones; anything the provider sends that is not in
``ProviderStatus`` is rejected instead of being stored.
"""

from enum import StrEnum


class UnknownStatusError(ValueError):
    """Raised when a status string is outside the known set."""


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    # Cash / bank-transfer checkout still waiting for the payment to land
    INCOMPLETE = "incomplete"


class ProviderStatus(StrEnum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


OPERATIONAL_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
REQUIRES_ACTION_STATUSES = frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.INCOMPLETE})
BLOCKED_STATUSES = frozenset({
    SubscriptionStatus.SUSPENDED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.CANCELED,
})
# At most one row per user may be in one of these
LIVE_STATUSES = OPERATIONAL_STATUSES | REQUIRES_ACTION_STATUSES

# Provider states from which a scheduled cancellation can no longer be undone
PROVIDER_TERMINAL_STATUSES = frozenset({
    ProviderStatus.CANCELED,
    ProviderStatus.INCOMPLETE,
    ProviderStatus.INCOMPLETE_EXPIRED,
    ProviderStatus.UNPAID,
})
PROVIDER_FULLY_CANCELED = frozenset({ProviderStatus.CANCELED, ProviderStatus.INCOMPLETE_EXPIRED})
PROVIDER_CANCELABLE = frozenset({ProviderStatus.ACTIVE, ProviderStatus.TRIALING})

_PROVIDER_TO_LOCAL = {
    ProviderStatus.ACTIVE: SubscriptionStatus.ACTIVE,
    ProviderStatus.TRIALING: SubscriptionStatus.TRIALING,
    ProviderStatus.PAST_DUE: SubscriptionStatus.PAST_DUE,
    ProviderStatus.UNPAID: SubscriptionStatus.PAST_DUE,
    ProviderStatus.CANCELED: SubscriptionStatus.CANCELED,
    ProviderStatus.INCOMPLETE: SubscriptionStatus.INCOMPLETE,
    ProviderStatus.INCOMPLETE_EXPIRED: SubscriptionStatus.EXPIRED,
    ProviderStatus.PAUSED: SubscriptionStatus.SUSPENDED,
}


def parse_status(value: str) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value)
    except ValueError:
        raise UnknownStatusError(f"Unknown subscription status: {value!r}") from None


def parse_provider_status(value: str) -> ProviderStatus:
    try:
        return ProviderStatus(value)
    except ValueError:
        raise UnknownStatusError(f"Unknown billing provider status: {value!r}") from None


def local_status_for(provider_status: ProviderStatus) -> SubscriptionStatus:
    """Map a provider status onto the local status it is stored as."""
    return _PROVIDER_TO_LOCAL[provider_status]


def is_operational(status: SubscriptionStatus) -> bool:
    return status in OPERATIONAL_STATUSES


def requires_user_action(status: SubscriptionStatus) -> bool:
    return status in REQUIRES_ACTION_STATUSES


def is_blocked(status: SubscriptionStatus) -> bool:
    return status in BLOCKED_STATUSES
