"""Cache-first resolution of a user's subscription snapshot."""

from datetime import datetime
from typing import Any, Callable, Optional

from subsync.core.datetime_utils import utc_now
from subsync.core.exceptions import ExternalServiceError
from subsync.core.logging import logger
from subsync.integrations.stripe_client import (
    StripeClient,
    customer_id_of,
    first_line_item,
    item_price,
    price_id_of,
    recurring_interval_of,
    subscription_period,
)
from subsync.platform.billing.billing_data_access import BillingRepository
from subsync.platform.billing.plan_logic import PlanCatalog
from subsync.platform.billing.reconciliation import resolve_effective_plan
from subsync.platform.billing.subscription_cache import SubscriptionCache
from subsync.schemas.subscription import (
    BillingInterval,
    RenewalKind,
    SubscriptionSnapshot,
    SubscriptionStatus,
)


class SnapshotResolver:
    """Resolve subscription snapshots: from the cache, or from Stripe on a miss.

    Failed Stripe reads degrade to an uncached lowest-tier snapshot, so a
    Stripe outage never gets memoized and the next read retries.
    """

    def __init__(
        self,
        stripe_client: StripeClient,
        cache: SubscriptionCache,
        repository: BillingRepository,
        catalog: PlanCatalog,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the resolver with its collaborators."""
        self.stripe = stripe_client
        self.cache = cache
        self.repository = repository
        self.catalog = catalog
        self.clock = clock

    async def resolve(self, user_id: str) -> SubscriptionSnapshot:
        """Return a trusted snapshot of the user's subscription."""
        cached = await self.cache.get(user_id)
        if cached is not None:
            return cached

        log = logger.with_context(user_id=user_id)
        now = self.clock()
        refs = await self.repository.get_refs(user_id)

        if refs is None or not refs.subscription_id:
            snapshot = SubscriptionSnapshot.without_subscription(
                customer_id=refs.customer_id if refs else None, now=now
            )
            await self.cache.set(user_id, snapshot, now)
            return snapshot

        try:
            subscription = await self.stripe.get_subscription(refs.subscription_id)
        except ExternalServiceError as e:
            log.with_context(customer_id=refs.customer_id).warning(
                f"Serving lowest tier, subscription {refs.subscription_id} unreadable: {e}"
            )
            return SubscriptionSnapshot.without_subscription(customer_id=refs.customer_id, now=now)

        snapshot = self.to_snapshot(subscription, now, customer_id=refs.customer_id)
        await self.cache.set(user_id, snapshot, now)
        return snapshot

    async def invalidate(self, user_id: str) -> None:
        """Drop the cached snapshot so the next read re-resolves from Stripe."""
        await self.cache.invalidate(user_id)

    def to_snapshot(
        self, subscription: Any, now: datetime, customer_id: Optional[str] = None
    ) -> SubscriptionSnapshot:
        """Normalize a Stripe subscription into a snapshot."""
        status = SubscriptionStatus.from_stripe(subscription.get("status"))
        if status is SubscriptionStatus.NONE:
            return SubscriptionSnapshot.without_subscription(customer_id=customer_id, now=now)

        effective = resolve_effective_plan(subscription, self.catalog, now)
        price = item_price(first_line_item(subscription))
        period_start, period_end = subscription_period(subscription)
        cancel_at_period_end = bool(subscription.get("cancel_at_period_end")) and (
            period_end is not None
        )

        scheduled_next_plan = None
        plan_expires_at = None
        pending = effective.pending_change
        if pending is not None:
            renewal_kind = RenewalKind.CANCELED
            plan_expires_at = pending.previous_plan_expires_at
            if pending.scheduled_product_id:
                scheduled_next_plan = self.catalog.plan_for_product(pending.scheduled_product_id)
        elif status is SubscriptionStatus.CANCELED or cancel_at_period_end:
            renewal_kind = RenewalKind.CANCELED
        elif status is SubscriptionStatus.TRIALING:
            renewal_kind = RenewalKind.TRIAL
        elif BillingInterval.from_stripe(recurring_interval_of(price)) is BillingInterval.YEARLY:
            renewal_kind = RenewalKind.YEARLY
        else:
            renewal_kind = RenewalKind.MONTHLY

        return SubscriptionSnapshot(
            subscription_id=subscription.get("id"),
            customer_id=customer_id_of(subscription) or customer_id,
            status=status,
            plan_id=effective.plan_id,
            renewal_kind=renewal_kind,
            product_id=effective.product_id,
            price_id=price_id_of(price),
            cancel_at_period_end=cancel_at_period_end,
            current_period_start=period_start,
            current_period_end=period_end,
            scheduled_next_plan=scheduled_next_plan,
            plan_expires_at=plan_expires_at,
            cached_at=now,
        )
