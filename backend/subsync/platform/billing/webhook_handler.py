"""Webhook processor for Stripe subscription events.

Events arrive after the endpoint has verified and acknowledged them, and are
processed here in the background. Processing is idempotent: each handler
derives the local state from the subscription object, re-read from Stripe
when the event concerns a subscription other than the stored one, and every
handler ends by deleting the cached snapshots of the user and the customer.
Redeliveries of an event id are additionally skipped through a short-lived
claim in Redis.
"""

from datetime import datetime
from typing import Any, Callable, Optional

from subsync.core.datetime_utils import from_unix, utc_now
from subsync.core.exceptions import ExternalServiceError
from subsync.core.logging import ContextualLogger, logger
from subsync.integrations.stripe_client import StripeClient, customer_id_of
from subsync.platform.billing.billing_data_access import BillingRepository
from subsync.platform.billing.plan_logic import PlanCatalog, lowest_plan
from subsync.platform.billing.reconciliation import (
    CURRENT_STATUSES,
    TERMINAL_STATUSES,
    is_newer_subscription,
    needs_duplicate_retirement,
    resolve_effective_plan,
    should_adopt_subscription,
    should_reset_on_deletion,
)
from subsync.platform.billing.subscription_cache import SubscriptionCache
from subsync.schemas.subscription import (
    DeferredChangeMetadata,
    SubscriptionStatus,
    UserBillingRefs,
)


class BillingWebhookProcessor:
    """Process Stripe webhook events for subscriptions."""

    def __init__(
        self,
        stripe_client: StripeClient,
        cache: SubscriptionCache,
        repository: BillingRepository,
        catalog: PlanCatalog,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize webhook processor."""
        self.stripe = stripe_client
        self.cache = cache
        self.repository = repository
        self.catalog = catalog
        self.clock = clock

        # Event handler mapping
        self.handlers = {
            "customer.subscription.created": self._handle_subscription_changed,
            "customer.subscription.updated": self._handle_subscription_changed,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "customer.subscription.trial_will_end": self._handle_trial_will_end,
        }

    async def process_event(self, event: Any) -> None:
        """Process a verified Stripe webhook event.

        Raises whatever the handler raised, after releasing the event claim so
        a redelivery gets another chance.
        """
        event_type = event["type"]
        event_id = event["id"]
        log = logger.with_context(
            auth_method="stripe_webhook", event_type=event_type, stripe_event_id=event_id
        )

        handler = self.handlers.get(event_type)
        if handler is None:
            log.info(f"Unhandled webhook event type: {event_type}")
            return

        if not await self.cache.claim_event(event_id):
            log.info(f"Skipping already processed webhook event {event_id}")
            return

        try:
            log.info(f"Processing webhook event: {event_type}")
            await handler(event, log)
        except Exception as e:
            await self.cache.release_event(event_id)
            log.error(f"Error handling {event_type}: {e}", exc_info=True)
            raise

    async def _find_user(
        self, subscription: Any
    ) -> tuple[Optional[str], Optional[UserBillingRefs]]:
        """Find the owning user: local record by customer first, then subscription metadata."""
        customer_id = customer_id_of(subscription)
        refs = await self.repository.get_by_customer(customer_id) if customer_id else None
        if refs is not None:
            return refs.user_id, refs

        metadata = subscription.get("metadata") or {}
        user_id = metadata.get("user_id") or None
        if user_id:
            refs = await self.repository.get_refs(user_id)
        return user_id, refs

    async def _handle_subscription_changed(self, event: Any, log: ContextualLogger) -> None:
        """Reconcile a created or updated subscription into the local store."""
        subscription = event["data"]["object"]
        subscription_id = subscription["id"]
        customer_id = customer_id_of(subscription)

        user_id, refs = await self._find_user(subscription)
        if not user_id:
            log.error(f"No user found for customer {customer_id}, subscription {subscription_id}")
            return

        log = log.with_context(
            user_id=user_id, customer_id=customer_id, subscription_id=subscription_id
        )
        stored_subscription_id = refs.subscription_id if refs else None

        if stored_subscription_id and stored_subscription_id != subscription_id:
            # Events are unordered: replacing the stored subscription goes by live state.
            subscription = await self.stripe.get_subscription(subscription_id)
        status = SubscriptionStatus.from_stripe(subscription.get("status"))

        if status in TERMINAL_STATUSES:
            await self._reset_after_end(
                user_id, customer_id, stored_subscription_id, subscription_id, log
            )
            return

        if not should_adopt_subscription(stored_subscription_id, subscription_id, status):
            log.info(
                f"Ignoring {status.value} subscription, keeping {stored_subscription_id}"
            )
            await self._invalidate(user_id, customer_id)
            return

        retire = needs_duplicate_retirement(stored_subscription_id, subscription_id, status)
        if retire and await self._stored_is_newer(stored_subscription_id, subscription, log):
            await self._retire(subscription_id, log)
            await self._invalidate(user_id, customer_id)
            return

        effective = resolve_effective_plan(subscription, self.catalog, self.clock())

        if effective.clear_metadata:
            try:
                await self.stripe.update_subscription(
                    subscription_id, metadata=DeferredChangeMetadata.cleared()
                )
                log.info(f"Scheduled downgrade matured, now on {effective.plan_id.value}")
            except ExternalServiceError as e:
                log.warning(f"Failed to clear matured downgrade metadata: {e}")

        if retire:
            await self._retire(stored_subscription_id, log)

        await self.repository.update_subscription(
            user_id, subscription_id, effective.plan_id, customer_id=customer_id
        )
        await self._invalidate(user_id, customer_id)

        log.info(f"Reconciled subscription ({status.value}, plan {effective.plan_id.value})")

    async def _stored_is_newer(
        self, stored_subscription_id: str, incoming: Any, log: ContextualLogger
    ) -> bool:
        """Whether the stored subscription is in force and newer than the incoming one."""
        try:
            stored = await self.stripe.get_subscription(stored_subscription_id)
        except ExternalServiceError as e:
            log.warning(f"Could not read stored subscription {stored_subscription_id}: {e}")
            return False

        status = SubscriptionStatus.from_stripe(stored.get("status"))
        return status in CURRENT_STATUSES and is_newer_subscription(stored, incoming)

    async def _retire(self, subscription_id: str, log: ContextualLogger) -> None:
        """Cancel a duplicate subscription right away. Best effort."""
        try:
            await self.stripe.cancel_subscription(subscription_id, at_period_end=False)
            log.info(f"Canceled duplicate subscription {subscription_id}")
        except ExternalServiceError as e:
            log.warning(f"Failed to cancel duplicate subscription {subscription_id}: {e}")

    async def _invalidate(self, user_id: str, customer_id: Optional[str]) -> None:
        await self.cache.invalidate(user_id)
        if customer_id:
            await self.cache.invalidate_by_customer(customer_id)

    async def _handle_subscription_deleted(self, event: Any, log: ContextualLogger) -> None:
        """Move the user back to the lowest tier once their subscription is gone."""
        subscription = event["data"]["object"]
        subscription_id = subscription["id"]
        customer_id = customer_id_of(subscription)

        user_id, refs = await self._find_user(subscription)
        if not user_id:
            log.error(f"No user found for customer {customer_id}, subscription {subscription_id}")
            if customer_id:
                await self.cache.invalidate_by_customer(customer_id)
            return

        log = log.with_context(
            user_id=user_id, customer_id=customer_id, subscription_id=subscription_id
        )
        await self._reset_after_end(
            user_id, customer_id, refs.subscription_id if refs else None, subscription_id, log
        )

    async def _reset_after_end(
        self,
        user_id: str,
        customer_id: Optional[str],
        stored_subscription_id: Optional[str],
        ended_subscription_id: str,
        log: ContextualLogger,
    ) -> None:
        if should_reset_on_deletion(stored_subscription_id, ended_subscription_id):
            await self.repository.update_subscription(
                user_id, None, lowest_plan(), customer_id=customer_id
            )
            log.info(f"Subscription ended, reset to {lowest_plan().value}")
        else:
            log.info(f"Retired subscription ended, keeping {stored_subscription_id}")

        await self._invalidate(user_id, customer_id)

    async def _handle_trial_will_end(self, event: Any, log: ContextualLogger) -> None:
        subscription = event["data"]["object"]
        trial_end = from_unix(subscription.get("trial_end"))
        log.with_context(customer_id=customer_id_of(subscription)).info(
            f"Trial of subscription {subscription['id']} ends at "
            f"{trial_end.isoformat() if trial_end else 'an unknown date'}"
        )
