"""Stripe API client for subscription state synchronization.

This module provides a clean interface to the Stripe API, handling all
direct Stripe interactions without business logic. One client is built at
startup and injected into the resolver, the plan change orchestrator and the
webhook processor.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import stripe
from stripe import SignatureVerificationError, StripeError

from subsync.core.datetime_utils import from_unix
from subsync.core.exceptions import ExternalServiceError

SUBSCRIPTION_EXPAND = ["items.data.price.product"]


class StripeClient:
    """Client for Stripe API operations."""

    def __init__(self, api_key: str, webhook_secret: Optional[str] = None):
        """Initialize Stripe client.

        Args:
        ----
            api_key (str): Stripe secret key used for every request of this client.
            webhook_secret (Optional[str]): Signing secret of the webhook endpoint.

        """
        if not api_key:
            raise ValueError("A Stripe API key is required")
        self._api_key = api_key
        self.webhook_secret = webhook_secret

    # Subscription operations

    async def get_subscription(self, subscription_id: str) -> stripe.Subscription:
        """Retrieve a subscription with its line item prices and products expanded."""
        try:
            return await stripe.Subscription.retrieve_async(
                subscription_id, api_key=self._api_key, expand=SUBSCRIPTION_EXPAND
            )
        except StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to retrieve subscription: {str(e)}",
            ) from e

    async def list_customer_subscriptions(
        self, customer_id: str, status: str = "all", limit: int = 20
    ) -> List[stripe.Subscription]:
        """List a customer's subscriptions, newest first."""
        try:
            result = await stripe.Subscription.list_async(
                api_key=self._api_key,
                customer=customer_id,
                status=status,
                limit=limit,
                expand=[f"data.{path}" for path in SUBSCRIPTION_EXPAND],
            )
        except StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to list subscriptions: {str(e)}",
            ) from e
        return list(result.get("data") or [])

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        item_id: Optional[str] = None,
        price_id: Optional[str] = None,
        proration_behavior: Optional[str] = None,
        billing_cycle_anchor: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> stripe.Subscription:
        """Update a subscription.

        A price change replaces the price of the given line item; when no item id
        is given the first line item of the subscription is used.
        """
        update_params: Dict[str, Any] = {}

        if price_id:
            if not item_id:
                subscription = await self.get_subscription(subscription_id)
                item = first_line_item(subscription)
                if not item:
                    raise ExternalServiceError(
                        service_name="Stripe",
                        message=f"Subscription {subscription_id} has no items",
                    )
                item_id = item["id"]
            update_params["items"] = [{"id": item_id, "price": price_id}]

        if proration_behavior:
            update_params["proration_behavior"] = proration_behavior
        if billing_cycle_anchor:
            update_params["billing_cycle_anchor"] = billing_cycle_anchor
        if cancel_at_period_end is not None:
            update_params["cancel_at_period_end"] = cancel_at_period_end
        if metadata is not None:
            update_params["metadata"] = metadata

        try:
            return await stripe.Subscription.modify_async(
                subscription_id, api_key=self._api_key, **update_params
            )
        except StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to update subscription: {str(e)}",
            ) from e

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> stripe.Subscription:
        """Cancel a subscription, either at the end of the period or right away."""
        try:
            if at_period_end:
                return await stripe.Subscription.modify_async(
                    subscription_id, api_key=self._api_key, cancel_at_period_end=True
                )
            return await stripe.Subscription.cancel_async(subscription_id, api_key=self._api_key)
        except StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to cancel subscription: {str(e)}",
            ) from e

    # Price operations

    async def get_price(self, price_id: str) -> stripe.Price:
        """Retrieve a price."""
        try:
            return await stripe.Price.retrieve_async(price_id, api_key=self._api_key)
        except StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to retrieve price: {str(e)}",
            ) from e

    async def list_prices(self, product_id: str, active: bool = True) -> List[stripe.Price]:
        """List the prices of a product."""
        try:
            result = await stripe.Price.list_async(
                api_key=self._api_key, product=product_id, active=active, limit=100
            )
        except StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to list prices: {str(e)}",
            ) from e
        return list(result.get("data") or [])

    # Webhook operations

    def verify_webhook_signature(self, payload: bytes, signature: str) -> stripe.Event:
        """Verify and construct webhook event.

        Raises:
        ------
            ValueError: If the payload is malformed or the signature does not match.

        """
        if not self.webhook_secret:
            raise ValueError("Webhook signing secret is not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise ValueError(f"Invalid webhook payload: {e}") from e
        except SignatureVerificationError as e:
            raise ValueError(f"Invalid webhook signature: {e}") from e


# Helper functions to read Stripe objects. They accept both StripeObjects and
# plain dicts (webhook payloads are not expanded, API reads are).


def first_line_item(subscription: Any) -> Optional[Any]:
    """Get the first (and only) line item of a subscription."""
    items = subscription.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else None


def item_price(item: Optional[Any]) -> Optional[Any]:
    """Get the price object of a line item."""
    if not item:
        return None
    return item.get("price")


def price_id_of(price: Optional[Any]) -> Optional[str]:
    """Get the id of a price that may or may not be expanded."""
    if price is None:
        return None
    if isinstance(price, str):
        return price
    return price.get("id")


def product_id_of(price: Optional[Any]) -> Optional[str]:
    """Get the product id of a price, whether the product is expanded or not."""
    if not price or isinstance(price, str):
        return None
    product = price.get("product")
    if product is None or isinstance(product, str):
        return product
    return product.get("id")


def recurring_interval_of(price: Optional[Any]) -> Optional[str]:
    """Get `price.recurring.interval` ('month', 'year', ...)."""
    if not price or isinstance(price, str):
        return None
    recurring = price.get("recurring") or {}
    return recurring.get("interval")


def subscription_period(subscription: Any) -> tuple[Optional[datetime], Optional[datetime]]:
    """Get the current period bounds of a subscription.

    Newer Stripe API versions only carry the period on the line items, so fall
    back to the first item when the subscription itself has none.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        item = first_line_item(subscription) or {}
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return from_unix(start), from_unix(end)


def customer_id_of(obj: Any) -> Optional[str]:
    """Get the customer id of a Stripe object whose customer may be expanded."""
    customer = obj.get("customer")
    if customer is None or isinstance(customer, str):
        return customer
    return customer.get("id")
