"""Unit tests for the Stripe client wrapper."""

from unittest.mock import AsyncMock, patch

import pytest
import stripe

from subsync.core.exceptions import ExternalServiceError
from subsync.integrations.stripe_client import (
    StripeClient,
    customer_id_of,
    price_id_of,
    product_id_of,
    recurring_interval_of,
)


@pytest.fixture
def client():
    return StripeClient("sk_test_123", webhook_secret="whsec_test")


def test_api_key_is_required():
    with pytest.raises(ValueError):
        StripeClient("")


class TestSubscriptionCalls:
    @pytest.mark.asyncio
    async def test_get_subscription_expands_products(self, client):
        with patch.object(
            stripe.Subscription, "retrieve_async", new=AsyncMock(return_value={"id": "sub_1"})
        ) as retrieve:
            result = await client.get_subscription("sub_1")

        assert result == {"id": "sub_1"}
        retrieve.assert_awaited_once_with(
            "sub_1", api_key="sk_test_123", expand=["items.data.price.product"]
        )

    @pytest.mark.asyncio
    async def test_stripe_errors_are_wrapped(self, client):
        with patch.object(
            stripe.Subscription,
            "retrieve_async",
            new=AsyncMock(side_effect=stripe.APIConnectionError("connection reset")),
        ):
            with pytest.raises(ExternalServiceError) as exc_info:
                await client.get_subscription("sub_1")

        assert exc_info.value.service_name == "Stripe"

    @pytest.mark.asyncio
    async def test_update_replaces_line_item_price(self, client):
        with patch.object(
            stripe.Subscription, "modify_async", new=AsyncMock(return_value={"id": "sub_1"})
        ) as modify:
            await client.update_subscription(
                "sub_1",
                item_id="si_1",
                price_id="price_plus_monthly",
                proration_behavior="always_invoice",
                billing_cycle_anchor="unchanged",
            )

        modify.assert_awaited_once_with(
            "sub_1",
            api_key="sk_test_123",
            items=[{"id": "si_1", "price": "price_plus_monthly"}],
            proration_behavior="always_invoice",
            billing_cycle_anchor="unchanged",
        )

    @pytest.mark.asyncio
    async def test_immediate_cancel(self, client):
        with patch.object(
            stripe.Subscription, "cancel_async", new=AsyncMock(return_value={"id": "sub_1"})
        ) as cancel:
            await client.cancel_subscription("sub_1", at_period_end=False)

        cancel.assert_awaited_once_with("sub_1", api_key="sk_test_123")


class TestWebhookVerification:
    def test_bad_signature(self, client):
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=abc")
        with patch.object(stripe.Webhook, "construct_event", side_effect=error):
            with pytest.raises(ValueError):
                client.verify_webhook_signature(b"{}", "t=1,v1=abc")

    def test_valid_signature(self, client):
        event = {"id": "evt_1"}
        with patch.object(stripe.Webhook, "construct_event", return_value=event) as construct:
            assert client.verify_webhook_signature(b"{}", "sig") == event

        construct.assert_called_once_with(b"{}", "sig", "whsec_test")

    def test_without_secret(self):
        with pytest.raises(ValueError):
            StripeClient("sk_test_123").verify_webhook_signature(b"{}", "sig")


def test_readers_accept_expanded_and_bare_objects():
    expanded = {
        "id": "price_1",
        "product": {"id": "prod_1"},
        "recurring": {"interval": "year"},
    }
    assert price_id_of(expanded) == "price_1"
    assert price_id_of("price_1") == "price_1"
    assert product_id_of(expanded) == "prod_1"
    assert product_id_of({"product": "prod_2"}) == "prod_2"
    assert product_id_of("price_1") is None
    assert recurring_interval_of(expanded) == "year"
    assert customer_id_of({"customer": {"id": "cus_1"}}) == "cus_1"
    assert customer_id_of({"customer": "cus_2"}) == "cus_2"
