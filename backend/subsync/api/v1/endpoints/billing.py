"""API endpoints for billing operations.

This module provides the HTTP interface for subscription reads, plan changes
and the Stripe webhook, delegating all business logic to the billing
components built at startup.
"""

from typing import Any, Optional

from fastapi import BackgroundTasks, Depends, Header, Request, Response
from fastapi.responses import JSONResponse

from subsync import schemas
from subsync.api import deps
from subsync.api.router import TrailingSlashRouter
from subsync.core.logging import logger
from subsync.platform.billing.components import BillingComponents
from subsync.platform.billing.webhook_handler import BillingWebhookProcessor

router = TrailingSlashRouter()


def _with_status(result: schemas.PlanChangeResult, response: Response) -> schemas.PlanChangeResult:
    if not result.success:
        response.status_code = 400
    return result


@router.get("/{user_id}/subscription", response_model=schemas.SubscriptionSnapshot)
async def get_subscription(
    user_id: str,
    billing: BillingComponents = Depends(deps.get_billing),
) -> schemas.SubscriptionSnapshot:
    """Get the current subscription snapshot of a user.

    Served from the cache when possible; a Stripe outage yields the lowest tier.
    """
    return await billing.resolver.resolve(user_id)


@router.post("/{user_id}/upgrade", response_model=schemas.PlanChangeResult)
async def upgrade_plan(
    user_id: str,
    request: schemas.UpgradeRequest,
    response: Response,
    billing: BillingComponents = Depends(deps.get_billing),
) -> schemas.PlanChangeResult:
    """Upgrade immediately, invoicing the prorated difference now."""
    result = await billing.orchestrator.upgrade(user_id, request.plan, request.interval)
    return _with_status(result, response)


@router.post("/{user_id}/downgrade", response_model=schemas.PlanChangeResult)
async def downgrade_plan(
    user_id: str,
    request: schemas.DowngradeRequest,
    response: Response,
    billing: BillingComponents = Depends(deps.get_billing),
) -> schemas.PlanChangeResult:
    """Downgrade at the end of the current period, or right away when `immediate` is set."""
    result = await billing.orchestrator.downgrade(
        user_id, request.plan, request.interval, immediate=request.immediate
    )
    return _with_status(result, response)


@router.post("/{user_id}/cancel", response_model=schemas.PlanChangeResult)
async def cancel_subscription(
    user_id: str,
    response: Response,
    billing: BillingComponents = Depends(deps.get_billing),
) -> schemas.PlanChangeResult:
    """Cancel the subscription at the end of the current period."""
    return _with_status(await billing.orchestrator.cancel(user_id), response)


@router.post("/{user_id}/reactivate", response_model=schemas.PlanChangeResult)
async def reactivate_subscription(
    user_id: str,
    response: Response,
    billing: BillingComponents = Depends(deps.get_billing),
) -> schemas.PlanChangeResult:
    """Undo a pending cancellation."""
    return _with_status(await billing.orchestrator.reactivate(user_id), response)


@router.post("/{user_id}/cancel-plan-change", response_model=schemas.PlanChangeResult)
async def cancel_plan_change(
    user_id: str,
    response: Response,
    billing: BillingComponents = Depends(deps.get_billing),
) -> schemas.PlanChangeResult:
    """Withdraw a scheduled downgrade and stay on the current plan."""
    return _with_status(await billing.orchestrator.cancel_scheduled_change(user_id), response)


@router.get("/{user_id}/upgrade-preview", response_model=schemas.ProrationPreview)
async def preview_upgrade(
    user_id: str,
    plan: schemas.PlanId,
    interval: schemas.BillingInterval = schemas.BillingInterval.MONTHLY,
    billing: BillingComponents = Depends(deps.get_billing),
) -> schemas.ProrationPreview:
    """Estimate what an upgrade charges right now. Stripe's invoice is authoritative."""
    return await billing.orchestrator.preview_upgrade(user_id, plan, interval)


@router.post("/{user_id}/sync", response_model=schemas.SubscriptionSnapshot)
async def sync_subscription(
    user_id: str,
    billing: BillingComponents = Depends(deps.get_billing),
) -> schemas.SubscriptionSnapshot:
    """Rebuild the user's local billing record from Stripe."""
    return await billing.orchestrator.sync_customer_subscription(user_id)


@router.delete("/{user_id}/cache", status_code=204)
async def invalidate_subscription_cache(
    user_id: str,
    billing: BillingComponents = Depends(deps.get_billing),
) -> Response:
    """Drop the user's cached snapshot."""
    await billing.resolver.invalidate(user_id)
    return Response(status_code=204)


@router.delete("/cache")
async def clear_subscription_caches(
    billing: BillingComponents = Depends(deps.get_billing),
) -> dict[str, int]:
    """Drop every cached subscription snapshot."""
    return {"cleared": await billing.cache.clear_all()}


async def process_webhook_event(processor: BillingWebhookProcessor, event: Any) -> None:
    """Run webhook processing after the response has been sent.

    Stripe has already been told the event was received, so failures end here
    in the log; the processor has released the event claim for a redelivery.
    """
    try:
        await processor.process_event(event)
    except Exception as e:
        logger.error(
            f"Background processing of webhook event {event['id']} failed: {e}", exc_info=True
        )


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: Optional[str] = Header(None),
) -> Response:
    """Handle Stripe webhook events.

    Security:
    - Verifies the signature over the raw request body
    - Acknowledges before any processing, processing runs in the background
    - Idempotent processing

    Args:
        request: Raw HTTP request
        background_tasks: Tasks run after the response is sent
        stripe_signature: Stripe signature header

    Returns:
        200 {"received": true} once verified, 400 on a missing or invalid
        signature, 500 when the endpoint cannot verify events at all
    """
    if not stripe_signature:
        return JSONResponse(status_code=400, content={"detail": "Missing Stripe-Signature header"})

    try:
        billing = deps.get_billing(request)
        if not billing.stripe.webhook_secret:
            raise RuntimeError("Webhook signing secret is not configured")
        payload = await request.body()
    except Exception as e:
        logger.error(f"Webhook endpoint failed before verification: {e}")
        return JSONResponse(status_code=500, content={"detail": "Webhook processing unavailable"})

    try:
        event = billing.stripe.verify_webhook_signature(payload, stripe_signature)
    except ValueError as e:
        logger.warning(f"Rejected webhook: {e}")
        return JSONResponse(status_code=400, content={"detail": "Invalid webhook signature"})

    background_tasks.add_task(process_webhook_event, billing.webhook_processor, event)
    return JSONResponse(content={"received": True})
