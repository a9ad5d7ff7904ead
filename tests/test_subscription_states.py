"""Tests for subscription status parsing and grouping."""

import pytest

from kentra.subscription_states import (
    BLOCKED_STATUSES,
    LIVE_STATUSES,
    ProviderStatus,
    SubscriptionStatus,
    UnknownStatusError,
    is_blocked,
    is_operational,
    local_status_for,
    parse_provider_status,
    parse_status,
    requires_user_action,
)


def test_every_provider_status_maps_to_a_local_status():
    for provider_status in ProviderStatus:
        assert isinstance(local_status_for(provider_status), SubscriptionStatus)


@pytest.mark.parametrize(
    "provider,local",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("unpaid", SubscriptionStatus.PAST_DUE),
        ("incomplete_expired", SubscriptionStatus.EXPIRED),
        ("paused", SubscriptionStatus.SUSPENDED),
    ],
)
def test_provider_mapping(provider, local):
    assert local_status_for(parse_provider_status(provider)) == local


def test_unknown_provider_status_is_rejected():
    with pytest.raises(UnknownStatusError):
        parse_provider_status("on_hold")


def test_unknown_local_status_is_rejected():
    with pytest.raises(ValueError):
        parse_status("Active")


def test_groups_partition_local_statuses():
    assert LIVE_STATUSES.isdisjoint(BLOCKED_STATUSES)
    assert LIVE_STATUSES | BLOCKED_STATUSES == set(SubscriptionStatus)


def test_predicates():
    assert is_operational(SubscriptionStatus.TRIALING)
    assert requires_user_action(SubscriptionStatus.INCOMPLETE)
    assert is_blocked(SubscriptionStatus.SUSPENDED)
    assert not is_blocked(SubscriptionStatus.PAST_DUE)
