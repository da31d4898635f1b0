"""Repository for the local billing store.

The engine treats the local store as a simple association per user:
{customer id, subscription id, plan id}. Each call opens its own session, so
webhook background tasks never share a request-scoped session.
"""

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from subsync import crud
from subsync.db.session import AsyncSessionLocal
from subsync.models import UserBilling
from subsync.schemas.subscription import PlanId, UserBillingRefs


class BillingRepository:
    """Repository for all local billing reads and writes."""

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
        """Initialize the repository with the session factory to open sessions from."""
        self._session_factory = session_factory

    async def get_refs(self, user_id: str) -> Optional[UserBillingRefs]:
        """Get the Stripe references and plan of a user."""
        async with self._session_factory() as db:
            billing = await crud.user_billing.get_by_user(db, user_id=user_id)
            return _to_refs(billing) if billing else None

    async def get_by_customer(self, customer_id: str) -> Optional[UserBillingRefs]:
        """Get the local record that owns a Stripe customer."""
        async with self._session_factory() as db:
            billing = await crud.user_billing.get_by_stripe_customer(
                db, stripe_customer_id=customer_id
            )
            return _to_refs(billing) if billing else None

    async def update_subscription(
        self,
        user_id: str,
        subscription_id: Optional[str],
        plan_id: PlanId,
        customer_id: Optional[str] = None,
    ) -> UserBillingRefs:
        """Persist the subscription reference and resolved plan of a user."""
        async with self._session_factory() as db:
            billing = await crud.user_billing.upsert_subscription(
                db,
                user_id=user_id,
                stripe_subscription_id=subscription_id,
                plan=plan_id.value,
                stripe_customer_id=customer_id,
            )
            return _to_refs(billing)


def _to_refs(billing: UserBilling) -> UserBillingRefs:
    return UserBillingRefs(
        user_id=billing.user_id,
        customer_id=billing.stripe_customer_id,
        subscription_id=billing.stripe_subscription_id,
        plan_id=PlanId(billing.plan),
    )
