"""User billing model."""

from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from subsync.models._base import Base


class UserBilling(Base):
    """Local record of a user's Stripe references and resolved plan.

    Stripe remains the source of truth; this row only mirrors what the last
    reconciliation decided so that lookups by user or by customer are cheap.
    """

    __tablename__ = "user_billing"

    user_id: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)

    # Stripe IDs
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(
        String, nullable=True, unique=True, index=True
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    plan: Mapped[str] = mapped_column(String(50), default="starter", nullable=False)
