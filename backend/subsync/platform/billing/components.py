"""Wiring of the billing components.

Exactly one Stripe client, one snapshot cache and one repository are built per
process at startup and shared by the resolver, the orchestrator and the
webhook processor.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import redis.asyncio as redis

from subsync.core.datetime_utils import utc_now
from subsync.integrations.stripe_client import StripeClient
from subsync.platform.billing.billing_data_access import BillingRepository
from subsync.platform.billing.plan_change import PlanChangeOrchestrator
from subsync.platform.billing.plan_logic import PlanCatalog
from subsync.platform.billing.snapshot_resolver import SnapshotResolver
from subsync.platform.billing.subscription_cache import SubscriptionCache
from subsync.platform.billing.webhook_handler import BillingWebhookProcessor


@dataclass
class BillingComponents:
    """The billing services exposed to the API layer."""

    stripe: StripeClient
    cache: SubscriptionCache
    resolver: SnapshotResolver
    orchestrator: PlanChangeOrchestrator
    webhook_processor: BillingWebhookProcessor


def create_billing_components(
    stripe_client: StripeClient,
    redis_connection: redis.Redis,
    repository: BillingRepository,
    catalog: PlanCatalog,
    clock: Callable[[], datetime] = utc_now,
) -> BillingComponents:
    """Build the billing services around one shared client, cache and repository."""
    cache = SubscriptionCache(redis_connection)
    resolver = SnapshotResolver(stripe_client, cache, repository, catalog, clock=clock)
    return BillingComponents(
        stripe=stripe_client,
        cache=cache,
        resolver=resolver,
        orchestrator=PlanChangeOrchestrator(
            stripe_client, resolver, repository, catalog, clock=clock
        ),
        webhook_processor=BillingWebhookProcessor(
            stripe_client, cache, repository, catalog, clock=clock
        ),
    )
