"""Reconciliation rules: which plan is in effect right now.

Pure functions over Stripe subscription objects and deferred change metadata,
shared by the snapshot resolver, the webhook processor and the manual sync.

A scheduled downgrade replaces the line item price at once, but the user paid
for the previous tier until the end of the period. While the change has not
matured the previous product stays in effect, even though the line item
already points at the new price.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

from subsync.integrations.stripe_client import first_line_item, item_price, product_id_of
from subsync.platform.billing.plan_logic import PlanCatalog
from subsync.schemas.subscription import DeferredChangeMetadata, PlanId, SubscriptionStatus

CURRENT_STATUSES = {
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
}

# Statuses a subscription never leaves; they end the entitlement like a deletion.
TERMINAL_STATUSES = {
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.INCOMPLETE_EXPIRED,
}


@dataclass
class EffectivePlan:
    """Result of reconciling a subscription with its deferred change metadata."""

    product_id: Optional[str]
    plan_id: PlanId
    clear_metadata: bool
    pending_change: Optional[DeferredChangeMetadata] = None


def line_item_product_id(subscription: Any) -> Optional[str]:
    """Product of the subscription's current line item."""
    return product_id_of(item_price(first_line_item(subscription)))


def resolve_effective_plan(
    subscription: Any, catalog: PlanCatalog, now: datetime
) -> EffectivePlan:
    """Derive the plan a subscription entitles its owner to at `now`.

    - A matured deferred change: the current line item is in effect and the
      metadata must be cleared.
    - A pending deferred change: the previous product is still in effect.
    - Otherwise the current line item is in effect.
    """
    deferred = DeferredChangeMetadata.from_metadata(subscription.get("metadata"))

    if deferred.is_pending and not deferred.has_matured(now):
        product_id = deferred.previous_plan_product_id
        return EffectivePlan(
            product_id=product_id,
            plan_id=catalog.plan_for_product(product_id),
            clear_metadata=False,
            pending_change=deferred,
        )

    product_id = line_item_product_id(subscription)
    return EffectivePlan(
        product_id=product_id,
        plan_id=catalog.plan_for_product(product_id),
        clear_metadata=deferred.is_pending,
    )


def needs_duplicate_retirement(
    stored_subscription_id: Optional[str],
    incoming_subscription_id: str,
    incoming_status: SubscriptionStatus,
) -> bool:
    """Whether the previously stored subscription must be cancelled.

    Only an active incoming subscription that differs from the stored one
    replaces it.
    """
    return (
        stored_subscription_id is not None
        and stored_subscription_id != incoming_subscription_id
        and incoming_status is SubscriptionStatus.ACTIVE
    )


def should_adopt_subscription(
    stored_subscription_id: Optional[str],
    incoming_subscription_id: str,
    incoming_status: SubscriptionStatus,
) -> bool:
    """Whether an incoming subscription becomes the user's stored subscription.

    A late event about some other subscription that is no longer in force must
    not replace the stored one.
    """
    return (
        stored_subscription_id is None
        or stored_subscription_id == incoming_subscription_id
        or incoming_status in CURRENT_STATUSES
    )


def is_newer_subscription(candidate: Any, other: Any) -> bool:
    """Whether `candidate` was created strictly after `other`."""
    return (candidate.get("created") or 0) > (other.get("created") or 0)


def should_reset_on_deletion(
    stored_subscription_id: Optional[str], deleted_subscription_id: str
) -> bool:
    """Whether a deleted subscription moves the user back to the lowest tier.

    A deleted subscription that is not the stored one is a retired duplicate;
    the user keeps the subscription that replaced it.
    """
    return stored_subscription_id is None or stored_subscription_id == deleted_subscription_id


def select_current_subscription(subscriptions: Iterable[Any]) -> Optional[Any]:
    """Pick the most recently created subscription that is still in force."""
    candidates = [
        subscription
        for subscription in subscriptions
        if SubscriptionStatus.from_stripe(subscription.get("status")) in CURRENT_STATUSES
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda subscription: subscription.get("created") or 0)
