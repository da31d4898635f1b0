"""Cache lifetime policy for subscription snapshots.

Snapshots are trusted for a long time while nothing is about to change and
for progressively shorter windows as the renewal date approaches, so a
renewal or trial end is picked up quickly without a Stripe read on every
request.
"""

from datetime import datetime, timedelta
from typing import Optional

from subsync.core.datetime_utils import utc_now
from subsync.schemas.subscription import RenewalKind, SubscriptionSnapshot, SubscriptionStatus

TRANSITION_TTL = timedelta(hours=1)
LONG_TTL = timedelta(hours=24)
MEDIUM_TTL = timedelta(hours=6)
SHORT_TTL = timedelta(hours=1)
IMMINENT_TTL = timedelta(minutes=15)


def ttl_for(snapshot: SubscriptionSnapshot, now: Optional[datetime] = None) -> timedelta:
    """Compute how long a snapshot may be served from the cache.

    Must be evaluated for the snapshot being written, never a previous one.

    Args:
    ----
        snapshot (SubscriptionSnapshot): The snapshot about to be cached.
        now (Optional[datetime]): Reference instant, defaults to the current UTC time.

    Returns:
    -------
        timedelta: The cache lifetime.

    """
    if snapshot.renewal_kind in (RenewalKind.CANCELED, RenewalKind.TRIAL):
        return TRANSITION_TTL

    if snapshot.status is SubscriptionStatus.NONE or snapshot.current_period_end is None:
        return LONG_TTL

    days_until_renewal = (snapshot.current_period_end - (now or utc_now())) / timedelta(days=1)

    if days_until_renewal > 7:
        return LONG_TTL
    if days_until_renewal > 3:
        return MEDIUM_TTL
    if days_until_renewal > 1:
        return SHORT_TTL
    return IMMINENT_TTL
