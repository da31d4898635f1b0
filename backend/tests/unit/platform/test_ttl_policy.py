"""Unit tests for the snapshot cache lifetime policy."""

from datetime import timedelta

import pytest

from subsync.platform.billing.ttl_policy import (
    IMMINENT_TTL,
    LONG_TTL,
    MEDIUM_TTL,
    SHORT_TTL,
    TRANSITION_TTL,
    ttl_for,
)
from subsync.schemas.subscription import (
    PlanId,
    RenewalKind,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from tests.fixtures.common import NOW


def _snapshot(
    renewal_kind: RenewalKind = RenewalKind.MONTHLY,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    days_until_renewal=None,
) -> SubscriptionSnapshot:
    period_end = None
    if days_until_renewal is not None:
        period_end = NOW + timedelta(days=days_until_renewal)
    return SubscriptionSnapshot(
        subscription_id="sub_1",
        status=status,
        plan_id=PlanId.PLUS,
        renewal_kind=renewal_kind,
        current_period_end=period_end,
        cached_at=NOW,
    )


class TestTransitionStates:
    """Snapshots about to change are trusted for a short time only."""

    def test_canceled_renewal(self):
        """A subscription canceling at period end gets the transition TTL."""
        snapshot = _snapshot(RenewalKind.CANCELED, days_until_renewal=20)
        assert ttl_for(snapshot, NOW) == TRANSITION_TTL == timedelta(hours=1)

    def test_trial(self):
        """A trial gets the transition TTL regardless of its end date."""
        snapshot = _snapshot(
            RenewalKind.TRIAL, SubscriptionStatus.TRIALING, days_until_renewal=30
        )
        assert ttl_for(snapshot, NOW) == TRANSITION_TTL


class TestWithoutRenewal:
    """Snapshots without anything to renew are trusted for a day."""

    def test_no_subscription(self):
        snapshot = SubscriptionSnapshot.without_subscription(now=NOW)
        assert ttl_for(snapshot, NOW) == LONG_TTL == timedelta(hours=24)

    def test_unknown_period_end(self):
        snapshot = _snapshot(days_until_renewal=None)
        assert ttl_for(snapshot, NOW) == LONG_TTL


class TestDistanceToRenewal:
    """The TTL shrinks as the renewal date approaches."""

    @pytest.mark.parametrize(
        "days,expected",
        [
            (30, LONG_TTL),
            (7.5, LONG_TTL),
            (7, MEDIUM_TTL),
            (5, MEDIUM_TTL),
            (3, SHORT_TTL),
            (2, SHORT_TTL),
            (1, IMMINENT_TTL),
            (0.25, IMMINENT_TTL),
            (-1, IMMINENT_TTL),
        ],
    )
    def test_bands(self, days, expected):
        """Band boundaries are exclusive: exactly 7 days out is no longer 'long'."""
        assert ttl_for(_snapshot(days_until_renewal=days), NOW) == expected

    def test_bands_values(self):
        assert MEDIUM_TTL == timedelta(hours=6)
        assert SHORT_TTL == timedelta(hours=1)
        assert IMMINENT_TTL == timedelta(minutes=15)

    def test_never_grows_as_renewal_approaches(self):
        """The TTL is monotonically non-increasing as the renewal date gets closer."""
        hours = range(24 * 12, -24, -1)
        ttls = [ttl_for(_snapshot(days_until_renewal=h / 24), NOW) for h in hours]
        assert all(later <= earlier for earlier, later in zip(ttls, ttls[1:]))

    def test_defaults_to_current_time(self):
        """Without an explicit instant the current time is used."""
        snapshot = SubscriptionSnapshot(
            subscription_id="sub_1",
            status=SubscriptionStatus.ACTIVE,
            renewal_kind=RenewalKind.YEARLY,
            current_period_end=NOW + timedelta(days=36500),
        )
        assert ttl_for(snapshot) == LONG_TTL
