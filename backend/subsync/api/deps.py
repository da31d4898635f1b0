"""Dependencies that are used in the API endpoints."""

from fastapi import Request

from subsync.core.exceptions import ExternalServiceError
from subsync.platform.billing.components import BillingComponents


def get_billing(request: Request) -> BillingComponents:
    """Get the billing components built at startup.

    Raises:
    ------
        ExternalServiceError: If billing is not enabled for this instance.

    """
    billing = getattr(request.app.state, "billing", None)
    if billing is None:
        raise ExternalServiceError(
            service_name="Billing",
            message="Billing is not enabled for this instance",
        )
    return billing
