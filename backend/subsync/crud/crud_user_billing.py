"""CRUD operations for user billing."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.core.datetime_utils import utc_now_naive
from subsync.models import UserBilling


class CRUDUserBilling:
    """CRUD operations for user billing."""

    async def get_by_user(self, db: AsyncSession, *, user_id: str) -> Optional[UserBilling]:
        """Get billing record by user ID.

        Args:
            db: Database session
            user_id: User ID

        Returns:
            UserBilling or None
        """
        result = await db.execute(select(UserBilling).where(UserBilling.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_by_stripe_customer(
        self, db: AsyncSession, *, stripe_customer_id: str
    ) -> Optional[UserBilling]:
        """Get billing record by Stripe customer ID.

        Args:
            db: Database session
            stripe_customer_id: Stripe customer ID

        Returns:
            UserBilling or None
        """
        result = await db.execute(
            select(UserBilling).where(UserBilling.stripe_customer_id == stripe_customer_id)
        )
        return result.scalar_one_or_none()

    async def upsert_subscription(
        self,
        db: AsyncSession,
        *,
        user_id: str,
        stripe_subscription_id: Optional[str],
        plan: str,
        stripe_customer_id: Optional[str] = None,
    ) -> UserBilling:
        """Set the subscription reference and plan of a user, creating the record if needed.

        A single INSERT ... ON CONFLICT (user_id), so concurrent first writes for
        the same user do not collide on the unique constraint. The customer id is
        only written when given, it never gets cleared here.
        """
        values = {
            "stripe_subscription_id": stripe_subscription_id,
            "plan": plan,
        }
        if stripe_customer_id:
            values["stripe_customer_id"] = stripe_customer_id

        statement = insert(UserBilling).values(user_id=user_id, **values)
        statement = statement.on_conflict_do_update(
            index_elements=[UserBilling.user_id],
            set_={**values, "modified_at": utc_now_naive()},
        ).returning(UserBilling)

        result = await db.execute(statement)
        billing = result.scalar_one()
        await db.commit()
        await db.refresh(billing)
        return billing


user_billing = CRUDUserBilling()
