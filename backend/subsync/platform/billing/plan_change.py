"""Plan change orchestration: upgrade, downgrade, cancel and reactivate.

Every action talks to Stripe first and only touches the local store and the
cache after Stripe accepted the change. Every successful action ends with a
cache delete for the user, never a cache write of a computed value; the next
read re-resolves from Stripe. Failures come back as PlanChangeResult instead
of exceptions, the API layer decides how to present them.
"""

from datetime import datetime
from typing import Any, Callable, Optional

from subsync.core.datetime_utils import utc_now
from subsync.core.exceptions import ExternalServiceError, InvalidStateError, NotFoundException
from subsync.core.logging import ContextualLogger, logger
from subsync.integrations.stripe_client import (
    StripeClient,
    first_line_item,
    item_price,
    price_id_of,
    recurring_interval_of,
    subscription_period,
)
from subsync.platform.billing.billing_data_access import BillingRepository
from subsync.platform.billing.plan_logic import (
    ChangeType,
    PlanCatalog,
    calculate_proration,
    compare_plans,
    lowest_plan,
)
from subsync.platform.billing.reconciliation import (
    resolve_effective_plan,
    select_current_subscription,
)
from subsync.platform.billing.snapshot_resolver import SnapshotResolver
from subsync.schemas.subscription import (
    BillingInterval,
    DeferredChangeMetadata,
    PlanChangeResult,
    PlanId,
    ProrationPreview,
    SubscriptionSnapshot,
    UserBillingRefs,
)

NO_SUBSCRIPTION_MESSAGE = "No active subscription found"

# Stripe proration modes
INVOICE_IMMEDIATELY = "always_invoice"
CREATE_PRORATIONS = "create_prorations"
NO_PRORATION = "none"


class PlanChangeOrchestrator:
    """Execute plan changes against Stripe and keep the local view consistent."""

    def __init__(
        self,
        stripe_client: StripeClient,
        resolver: SnapshotResolver,
        repository: BillingRepository,
        catalog: PlanCatalog,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the orchestrator with its collaborators."""
        self.stripe = stripe_client
        self.resolver = resolver
        self.repository = repository
        self.catalog = catalog
        self.clock = clock

    async def upgrade(
        self,
        user_id: str,
        target_plan: PlanId,
        interval: BillingInterval = BillingInterval.MONTHLY,
    ) -> PlanChangeResult:
        """Move to a higher tier right away, invoicing the prorated difference now.

        The billing cycle anchor is kept, so the renewal date does not move.
        """
        log = logger.with_context(user_id=user_id, operation="upgrade", target=target_plan.value)

        refs = await self.repository.get_refs(user_id)
        if not _has_subscription(refs):
            return PlanChangeResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)

        try:
            subscription = await self.stripe.get_subscription(refs.subscription_id)
            now = self.clock()
            current = resolve_effective_plan(subscription, self.catalog, now)
            if compare_plans(current.plan_id, target_plan) is not ChangeType.UPGRADE:
                return PlanChangeResult(
                    success=False,
                    message=(
                        f"Cannot upgrade from {current.plan_id.value} to {target_plan.value}"
                    ),
                )

            price_id = await self._resolve_price_id(target_plan, interval)
            credit = self._estimate_credit(subscription, now)
            await self.stripe.update_subscription(
                refs.subscription_id,
                item_id=_line_item_id(subscription),
                price_id=price_id,
                proration_behavior=INVOICE_IMMEDIATELY,
                billing_cycle_anchor="unchanged",
                metadata=DeferredChangeMetadata.cleared() if current.pending_change else None,
            )
        except (ExternalServiceError, InvalidStateError) as e:
            log.error(f"Upgrade failed: {e}")
            return PlanChangeResult(success=False, message=f"Upgrade failed: {e}")

        # Effective now: the local plan follows as soon as Stripe accepted the change.
        effective_date = self.clock()
        await self._record_plan(user_id, refs, target_plan, log)

        log.info(f"Upgraded {current.plan_id.value} -> {target_plan.value}")
        return PlanChangeResult(
            success=True,
            message=f"Upgraded to {target_plan.value}",
            effective_date=effective_date,
            proration_amount=credit,
        )

    async def downgrade(
        self,
        user_id: str,
        target_plan: PlanId,
        interval: BillingInterval = BillingInterval.MONTHLY,
        immediate: bool = False,
    ) -> PlanChangeResult:
        """Move to a lower tier, by default at the end of the current period.

        The scheduled path swaps the line item price without proration and records
        the paid-for tier in the subscription metadata; the local plan only
        changes once reconciliation sees the change mature. With `immediate` the
        new price applies now and Stripe credits the unused time.
        """
        log = logger.with_context(
            user_id=user_id, operation="downgrade", target=target_plan.value, immediate=immediate
        )

        refs = await self.repository.get_refs(user_id)
        if not _has_subscription(refs):
            return PlanChangeResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)

        if target_plan is lowest_plan():
            # The free tier has no paid price: downgrading to it is a cancellation.
            return await self.cancel(user_id)

        try:
            subscription = await self.stripe.get_subscription(refs.subscription_id)
            now = self.clock()
            current = resolve_effective_plan(subscription, self.catalog, now)
            if compare_plans(current.plan_id, target_plan) is not ChangeType.DOWNGRADE:
                return PlanChangeResult(
                    success=False,
                    message=(
                        f"Cannot downgrade from {current.plan_id.value} to {target_plan.value}"
                    ),
                )

            price_id = await self._resolve_price_id(target_plan, interval)

            if immediate:
                credit = self._estimate_credit(subscription, now)
                await self.stripe.update_subscription(
                    refs.subscription_id,
                    item_id=_line_item_id(subscription),
                    price_id=price_id,
                    proration_behavior=CREATE_PRORATIONS,
                    metadata=DeferredChangeMetadata.cleared(),
                )
            else:
                credit = None
                _, period_end = subscription_period(subscription)
                if period_end is None:
                    raise InvalidStateError("Subscription has no current period end")

                # An unexpired earlier downgrade keeps its paid-for tier and expiry.
                pending = current.pending_change
                deferred = DeferredChangeMetadata(
                    previous_plan_product_id=current.product_id,
                    previous_plan_expires_at=(
                        pending.previous_plan_expires_at if pending else period_end
                    ),
                    scheduled_product_id=self.catalog.product_for_plan(target_plan),
                )
                await self.stripe.update_subscription(
                    refs.subscription_id,
                    item_id=_line_item_id(subscription),
                    price_id=price_id,
                    proration_behavior=NO_PRORATION,
                    metadata=deferred.to_metadata(),
                )
        except (ExternalServiceError, InvalidStateError) as e:
            log.error(f"Downgrade failed: {e}")
            return PlanChangeResult(success=False, message=f"Downgrade failed: {e}")

        if immediate:
            await self._record_plan(user_id, refs, target_plan, log)
            log.info(f"Downgraded {current.plan_id.value} -> {target_plan.value} immediately")
            return PlanChangeResult(
                success=True,
                message=f"Downgraded to {target_plan.value}",
                effective_date=self.clock(),
                proration_amount=credit,
            )

        await self.resolver.invalidate(user_id)
        log.info(
            f"Scheduled downgrade {current.plan_id.value} -> {target_plan.value} "
            f"at {deferred.previous_plan_expires_at.isoformat()}"
        )
        return PlanChangeResult(
            success=True,
            message=(
                f"Your plan will change to {target_plan.value} at the end of the current period"
            ),
            effective_date=deferred.previous_plan_expires_at,
        )

    async def cancel(self, user_id: str) -> PlanChangeResult:
        """Cancel at the end of the current period.

        The subscription is not deleted; the user moves to the lowest tier when
        Stripe reports the deletion through the webhook.
        """
        log = logger.with_context(user_id=user_id, operation="cancel")

        refs = await self.repository.get_refs(user_id)
        if not _has_subscription(refs):
            return PlanChangeResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)

        try:
            updated = await self.stripe.cancel_subscription(
                refs.subscription_id, at_period_end=True
            )
        except ExternalServiceError as e:
            log.error(f"Cancel failed: {e}")
            return PlanChangeResult(success=False, message=f"Cancel failed: {e}")

        await self.resolver.invalidate(user_id)

        _, period_end = subscription_period(updated)
        log.info("Subscription set to cancel at period end")
        return PlanChangeResult(
            success=True,
            message="Your subscription will be canceled at the end of the current period",
            effective_date=period_end,
        )

    async def reactivate(self, user_id: str) -> PlanChangeResult:
        """Undo a pending cancellation and refresh the cached snapshot."""
        log = logger.with_context(user_id=user_id, operation="reactivate")

        refs = await self.repository.get_refs(user_id)
        if not _has_subscription(refs):
            return PlanChangeResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)

        try:
            await self.stripe.update_subscription(refs.subscription_id, cancel_at_period_end=False)
        except ExternalServiceError as e:
            log.error(f"Reactivation failed: {e}")
            return PlanChangeResult(success=False, message=f"Reactivation failed: {e}")

        await self.resolver.invalidate(user_id)
        snapshot = await self.resolver.resolve(user_id)

        log.info("Subscription reactivated")
        return PlanChangeResult(
            success=True,
            message="Subscription reactivated",
            effective_date=snapshot.current_period_end,
        )

    async def cancel_scheduled_change(self, user_id: str) -> PlanChangeResult:
        """Withdraw a pending downgrade: restore the paid-for tier's price and clear metadata."""
        log = logger.with_context(user_id=user_id, operation="cancel_scheduled_change")

        refs = await self.repository.get_refs(user_id)
        if not _has_subscription(refs):
            return PlanChangeResult(success=False, message=NO_SUBSCRIPTION_MESSAGE)

        try:
            subscription = await self.stripe.get_subscription(refs.subscription_id)
            current = resolve_effective_plan(subscription, self.catalog, self.clock())
            if current.pending_change is None:
                return PlanChangeResult(success=False, message="No scheduled plan change found")

            interval = BillingInterval.from_stripe(
                recurring_interval_of(item_price(first_line_item(subscription)))
            )
            price_id = await self._resolve_price_id(current.plan_id, interval)
            await self.stripe.update_subscription(
                refs.subscription_id,
                item_id=_line_item_id(subscription),
                price_id=price_id,
                proration_behavior=NO_PRORATION,
                metadata=DeferredChangeMetadata.cleared(),
            )
        except (ExternalServiceError, InvalidStateError) as e:
            log.error(f"Canceling scheduled plan change failed: {e}")
            return PlanChangeResult(
                success=False, message=f"Canceling scheduled plan change failed: {e}"
            )

        await self.resolver.invalidate(user_id)

        log.info(f"Scheduled plan change canceled, staying on {current.plan_id.value}")
        return PlanChangeResult(
            success=True,
            message=f"Scheduled plan change canceled, staying on {current.plan_id.value}",
        )

    async def preview_upgrade(
        self,
        user_id: str,
        target_plan: PlanId,
        interval: BillingInterval = BillingInterval.MONTHLY,
    ) -> ProrationPreview:
        """Estimate the immediate charge of an upgrade. Read-only.

        Raises:
        ------
            NotFoundException: If the user has no subscription.
            InvalidStateError: If the target is not an upgrade or the period is unknown.
            ExternalServiceError: If Stripe cannot be read.

        """
        refs = await self.repository.get_refs(user_id)
        if not _has_subscription(refs):
            raise NotFoundException(NO_SUBSCRIPTION_MESSAGE)

        subscription = await self.stripe.get_subscription(refs.subscription_id)
        now = self.clock()
        current = resolve_effective_plan(subscription, self.catalog, now)
        if compare_plans(current.plan_id, target_plan) is not ChangeType.UPGRADE:
            raise InvalidStateError(
                f"Cannot upgrade from {current.plan_id.value} to {target_plan.value}"
            )

        period_start, period_end = subscription_period(subscription)
        if period_start is None or period_end is None:
            raise InvalidStateError("Subscription has no current period")

        current_price = item_price(first_line_item(subscription))
        current_amount = _unit_amount(current_price)
        target_price = await self.stripe.get_price(
            await self._resolve_price_id(target_plan, interval)
        )
        new_amount = _unit_amount(target_price)

        estimate = calculate_proration(period_start, period_end, current_amount, now)
        return ProrationPreview(
            current_plan=current.plan_id,
            target_plan=target_plan,
            current_amount=current_amount,
            new_amount=new_amount,
            credit_amount=estimate.credit_amount,
            credit_percentage=estimate.credit_percentage,
            immediate_charge=max(new_amount - estimate.credit_amount, 0),
            days_remaining=estimate.days_remaining,
            days_total=estimate.days_total,
            next_invoice_date=period_end,
            currency=target_price.get("currency"),
        )

    async def sync_customer_subscription(self, user_id: str) -> SubscriptionSnapshot:
        """Rebuild the local record from the customer's subscriptions in Stripe.

        Picks the newest subscription still in force; with none the user goes
        back to the lowest tier.

        Raises:
        ------
            NotFoundException: If the user has no Stripe customer.
            ExternalServiceError: If Stripe cannot be read.

        """
        refs = await self.repository.get_refs(user_id)
        if refs is None or not refs.customer_id:
            raise NotFoundException("No Stripe customer found for user")

        log = logger.with_context(user_id=user_id, customer_id=refs.customer_id)

        subscriptions = await self.stripe.list_customer_subscriptions(refs.customer_id)
        current = select_current_subscription(subscriptions)

        try:
            if current is None:
                await self.repository.update_subscription(user_id, None, lowest_plan())
                log.info("No subscription in force, reset to lowest tier")
            else:
                effective = resolve_effective_plan(current, self.catalog, self.clock())
                await self.repository.update_subscription(
                    user_id, current["id"], effective.plan_id
                )
                log.info(f"Synced subscription {current['id']} ({effective.plan_id.value})")
        finally:
            await self.resolver.invalidate(user_id)
            await self.resolver.cache.invalidate_by_customer(refs.customer_id)

        return await self.resolver.resolve(user_id)

    async def _record_plan(
        self, user_id: str, refs: UserBillingRefs, plan_id: PlanId, log: ContextualLogger
    ) -> None:
        """Store a plan Stripe already applied, then drop the cached snapshot.

        Stripe holds the change at this point, so a failed local write is logged
        and left to webhook reconciliation instead of failing the action.
        """
        try:
            await self.repository.update_subscription(
                user_id, refs.subscription_id, plan_id, customer_id=refs.customer_id
            )
        except Exception as e:
            log.error(f"Failed to store plan {plan_id.value} locally: {e}", exc_info=True)
        finally:
            await self.resolver.invalidate(user_id)

    async def _resolve_price_id(self, plan: PlanId, interval: BillingInterval) -> str:
        """Find the Stripe price for a tier: configured id first, else the product's prices."""
        configured = self.catalog.price_for_plan(plan, interval)
        if configured:
            return configured

        product_id = self.catalog.product_for_plan(plan)
        if not product_id:
            raise InvalidStateError(f"No Stripe product configured for plan {plan.value}")

        for price in await self.stripe.list_prices(product_id):
            if recurring_interval_of(price) == interval.stripe_interval:
                return price_id_of(price)

        raise InvalidStateError(f"No {interval.value} price found for plan {plan.value}")

    def _estimate_credit(self, subscription: Any, now: datetime) -> Optional[int]:
        period_start, period_end = subscription_period(subscription)
        if period_start is None or period_end is None:
            return None
        current_amount = _unit_amount(item_price(first_line_item(subscription)))
        return calculate_proration(period_start, period_end, current_amount, now).credit_amount


def _has_subscription(refs: Optional[UserBillingRefs]) -> bool:
    return refs is not None and bool(refs.subscription_id)


def _line_item_id(subscription: Any) -> Optional[str]:
    item = first_line_item(subscription)
    return item.get("id") if item else None


def _unit_amount(price: Optional[Any]) -> int:
    if not price or isinstance(price, str):
        return 0
    return int(price.get("unit_amount") or 0)
