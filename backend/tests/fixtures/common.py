"""Common test fixtures.

In-memory stand-ins for Redis, the local billing store and Stripe. The Stripe
stand-in keeps subscriptions as plain dicts and applies updates the way the
Stripe API does, so plan change flows can be followed end to end.
"""

import copy
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatch
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from subsync.core.datetime_utils import to_unix
from subsync.core.exceptions import ExternalServiceError
from subsync.integrations.stripe_client import StripeClient
from subsync.platform.billing.plan_logic import PlanCatalog
from subsync.schemas.subscription import BillingInterval, PlanId, UserBillingRefs

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

PRODUCTS = {plan: f"prod_{plan.value}" for plan in PlanId}

MONTHLY_AMOUNTS = {
    PlanId.BASIC: 1000,
    PlanId.ESSENTIALS: 2000,
    PlanId.PLUS: 3000,
    PlanId.ADVANCED: 5000,
}


def price_id_for(plan: PlanId, interval: BillingInterval = BillingInterval.MONTHLY) -> str:
    """Price id used for a paid tier in the tests."""
    return f"price_{plan.value}_{interval.value}"


PRICES = {
    price_id_for(plan, interval): {
        "id": price_id_for(plan, interval),
        "object": "price",
        "product": PRODUCTS[plan],
        "unit_amount": amount * (10 if interval is BillingInterval.YEARLY else 1),
        "currency": "usd",
        "recurring": {"interval": interval.stripe_interval},
    }
    for plan, amount in MONTHLY_AMOUNTS.items()
    for interval in BillingInterval
}


def make_catalog(with_prices: bool = True) -> PlanCatalog:
    """Catalog mapping every tier to its test product and, optionally, its prices."""
    price_ids = {}
    if with_prices:
        price_ids = {
            (plan, interval): price_id_for(plan, interval)
            for plan in MONTHLY_AMOUNTS
            for interval in BillingInterval
        }
    return PlanCatalog(product_ids=dict(PRODUCTS), price_ids=price_ids)


def make_subscription(
    subscription_id: str = "sub_1",
    customer_id: str = "cus_1",
    plan: PlanId = PlanId.PLUS,
    interval: BillingInterval = BillingInterval.MONTHLY,
    status: str = "active",
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
    cancel_at_period_end: bool = False,
    metadata: Optional[dict] = None,
    created: Optional[datetime] = None,
) -> dict:
    """Build a Stripe subscription payload with its price and product expanded."""
    period_start = period_start or NOW - timedelta(days=25)
    period_end = period_end or NOW + timedelta(days=5)
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": to_unix(period_start),
        "current_period_end": to_unix(period_end),
        "created": to_unix(created or period_start),
        "metadata": dict(metadata or {}),
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{subscription_id}",
                    "price": copy.deepcopy(PRICES[price_id_for(plan, interval)]),
                }
            ],
        },
    }


def make_event(
    event_type: str, subscription: dict, event_id: Optional[str] = None
) -> dict:
    """Build a Stripe webhook event around a subscription object."""
    return {
        "id": event_id or f"evt_{event_type}_{subscription['id']}",
        "object": "event",
        "type": event_type,
        "data": {"object": copy.deepcopy(subscription)},
    }


class Clock:
    """Adjustable clock for components that take a `clock` callable."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class FakeRedis:
    """In-memory async Redis supporting the commands the billing cache uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expirations: dict[str, Optional[int]] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, nx: bool = False
    ) -> Optional[bool]:
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.expirations[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.expirations.pop(key, None)
                deleted += 1
        return deleted

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        for key in list(self.store):
            if match is None or fnmatch(key, match):
                yield key

    async def ping(self) -> bool:
        return True


class FailingRedis:
    """Async Redis whose every command fails as if the server were down."""

    async def get(self, key: str) -> Optional[str]:
        raise redis.ConnectionError("Connection refused")

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False):
        raise redis.ConnectionError("Connection refused")

    async def delete(self, *keys: str) -> int:
        raise redis.ConnectionError("Connection refused")

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        raise redis.ConnectionError("Connection refused")
        yield  # pragma: no cover

    async def ping(self) -> bool:
        raise redis.ConnectionError("Connection refused")


class FakeRepository:
    """In-memory local billing store with the BillingRepository interface."""

    def __init__(self, *records: UserBillingRefs):
        self.records: dict[str, UserBillingRefs] = {record.user_id: record for record in records}
        self.updates: list[UserBillingRefs] = []

    async def get_refs(self, user_id: str) -> Optional[UserBillingRefs]:
        return self.records.get(user_id)

    async def get_by_customer(self, customer_id: str) -> Optional[UserBillingRefs]:
        for record in self.records.values():
            if record.customer_id == customer_id:
                return record
        return None

    async def update_subscription(
        self,
        user_id: str,
        subscription_id: Optional[str],
        plan_id: PlanId,
        customer_id: Optional[str] = None,
    ) -> UserBillingRefs:
        existing = self.records.get(user_id)
        refs = UserBillingRefs(
            user_id=user_id,
            customer_id=customer_id or (existing.customer_id if existing else None),
            subscription_id=subscription_id,
            plan_id=plan_id,
        )
        self.records[user_id] = refs
        self.updates.append(refs)
        return refs


def fake_stripe(subscriptions: dict[str, dict], webhook_secret: str = "whsec_test") -> Any:
    """StripeClient mock backed by a dict of subscriptions.

    Price changes, cancellation flags and metadata updates are applied to the
    stored subscription; metadata keys set to "" are removed like Stripe does.
    """
    stripe = MagicMock(spec=StripeClient)
    stripe.webhook_secret = webhook_secret

    def _stored(subscription_id: str) -> dict:
        if subscription_id not in subscriptions:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"No such subscription: {subscription_id}",
            )
        return subscriptions[subscription_id]

    async def get_subscription(subscription_id: str) -> dict:
        return copy.deepcopy(_stored(subscription_id))

    async def update_subscription(
        subscription_id: str,
        *,
        item_id: Optional[str] = None,
        price_id: Optional[str] = None,
        proration_behavior: Optional[str] = None,
        billing_cycle_anchor: Optional[str] = None,
        cancel_at_period_end: Optional[bool] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        subscription = _stored(subscription_id)
        if price_id:
            subscription["items"]["data"][0]["price"] = copy.deepcopy(PRICES[price_id])
        if cancel_at_period_end is not None:
            subscription["cancel_at_period_end"] = cancel_at_period_end
        if metadata is not None:
            merged = {**subscription["metadata"], **metadata}
            subscription["metadata"] = {k: v for k, v in merged.items() if v != ""}
        return copy.deepcopy(subscription)

    async def cancel_subscription(subscription_id: str, at_period_end: bool = True) -> dict:
        subscription = _stored(subscription_id)
        if at_period_end:
            subscription["cancel_at_period_end"] = True
        else:
            subscription["status"] = "canceled"
        return copy.deepcopy(subscription)

    async def list_customer_subscriptions(
        customer_id: str, status: str = "all", limit: int = 20
    ) -> list[dict]:
        return [
            copy.deepcopy(subscription)
            for subscription in subscriptions.values()
            if subscription["customer"] == customer_id
        ]

    async def get_price(price_id: str) -> dict:
        return copy.deepcopy(PRICES[price_id])

    async def list_prices(product_id: str, active: bool = True) -> list[dict]:
        return [copy.deepcopy(p) for p in PRICES.values() if p["product"] == product_id]

    stripe.get_subscription = AsyncMock(side_effect=get_subscription)
    stripe.update_subscription = AsyncMock(side_effect=update_subscription)
    stripe.cancel_subscription = AsyncMock(side_effect=cancel_subscription)
    stripe.list_customer_subscriptions = AsyncMock(side_effect=list_customer_subscriptions)
    stripe.get_price = AsyncMock(side_effect=get_price)
    stripe.list_prices = AsyncMock(side_effect=list_prices)
    return stripe


@pytest.fixture
def clock():
    """Clock fixed at NOW until advanced."""
    return Clock()


@pytest.fixture
def catalog():
    """Plan catalog with products and prices for every paid tier."""
    return make_catalog()


@pytest.fixture
def fake_redis():
    """Empty in-memory Redis."""
    return FakeRedis()


@pytest.fixture
def mock_user_refs():
    """A user on the plus tier with one monthly subscription."""
    return UserBillingRefs(
        user_id="user-1", customer_id="cus_1", subscription_id="sub_1", plan_id=PlanId.PLUS
    )
