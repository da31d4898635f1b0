"""Main module of the FastAPI application.

This module sets up the FastAPI application, builds the billing components at
startup and registers the middleware that logs incoming requests and
unhandled exceptions.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from subsync.api.middleware import (
    add_request_id,
    exception_logging_middleware,
    external_service_exception_handler,
    invalid_state_exception_handler,
    log_requests,
    not_found_exception_handler,
    validation_exception_handler,
)
from subsync.api.router import TrailingSlashRouter
from subsync.api.v1.api import api_router
from subsync.core.config import settings
from subsync.core.exceptions import ExternalServiceError, InvalidStateError, NotFoundException
from subsync.core.logging import logger
from subsync.core.redis_client import redis_client
from subsync.integrations.stripe_client import StripeClient
from subsync.platform.billing.billing_data_access import BillingRepository
from subsync.platform.billing.components import create_billing_components
from subsync.platform.billing.plan_logic import PlanCatalog


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events.

    Builds one Stripe client, one cache and one repository for the process.
    """
    app.state.billing = None
    app.state.redis = None

    if settings.STRIPE_ENABLED:
        stripe_client = StripeClient(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
        app.state.redis = redis_client
        app.state.billing = create_billing_components(
            stripe_client,
            redis_client.client,
            BillingRepository(),
            PlanCatalog.from_settings(),
        )
        # An unreachable Redis only costs cache hits
        await redis_client.test_connection()
        logger.info("Billing components initialized")
    else:
        logger.info("Stripe is disabled, billing endpoints are unavailable")

    yield

    if app.state.redis is not None:
        await redis_client.close()


# Create FastAPI app with our custom router and disable FastAPI's built-in redirects
app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url="/openapi.json",
    lifespan=lifespan,
    router=TrailingSlashRouter(),
    redirect_slashes=False,
)

app.include_router(api_router)

# Register middleware directly
app.middleware("http")(add_request_id)
app.middleware("http")(log_requests)
app.middleware("http")(exception_logging_middleware)

# Register exception handlers
app.exception_handler(RequestValidationError)(validation_exception_handler)
app.exception_handler(ValidationError)(validation_exception_handler)
app.exception_handler(NotFoundException)(not_found_exception_handler)
app.exception_handler(InvalidStateError)(invalid_state_exception_handler)
app.exception_handler(ExternalServiceError)(external_service_exception_handler)
