"""Subscription schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, model_validator

from subsync.core.datetime_utils import from_unix, to_unix, utc_now

PREVIOUS_PLAN_PRODUCT_KEY = "previous_plan_product_id"
PREVIOUS_PLAN_EXPIRES_KEY = "previous_plan_expires_at"
SCHEDULED_PLAN_KEY = "downgrade_scheduled_to"


class PlanId(str, Enum):
    """Subscription plan tiers, lowest first. STARTER is the free default."""

    STARTER = "starter"
    BASIC = "basic"
    ESSENTIALS = "essentials"
    PLUS = "plus"
    ADVANCED = "advanced"


class SubscriptionStatus(str, Enum):
    """Stripe subscription status, plus NONE for users without a subscription."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    NONE = "none"

    @classmethod
    def from_stripe(cls, value: Optional[str]) -> "SubscriptionStatus":
        """Map a raw Stripe status. Statuses unknown to us (e.g. paused) become INCOMPLETE."""
        if not value:
            return cls.NONE
        try:
            return cls(value)
        except ValueError:
            return cls.INCOMPLETE


class RenewalKind(str, Enum):
    """How the subscription renews at the end of the current period."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    TRIAL = "trial"
    CANCELED = "canceled"
    NONE = "none"


class BillingInterval(str, Enum):
    """Billing interval a paid plan is bought on."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def stripe_interval(self) -> str:
        """The matching `price.recurring.interval` value in Stripe."""
        return "year" if self is BillingInterval.YEARLY else "month"

    @classmethod
    def from_stripe(cls, value: Optional[str]) -> "BillingInterval":
        """Map `price.recurring.interval`; anything but 'year' is billed monthly."""
        return cls.YEARLY if value == "year" else cls.MONTHLY


class SubscriptionSnapshot(BaseModel):
    """Cached, point-in-time view of a user's subscription."""

    subscription_id: Optional[str] = Field(None, description="Stripe subscription ID")
    customer_id: Optional[str] = Field(None, description="Stripe customer ID")
    status: SubscriptionStatus = SubscriptionStatus.NONE
    plan_id: PlanId = PlanId.STARTER
    renewal_kind: RenewalKind = RenewalKind.NONE
    product_id: Optional[str] = Field(None, description="Effective Stripe product ID")
    price_id: Optional[str] = Field(None, description="Stripe price ID of the line item")
    cancel_at_period_end: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    scheduled_next_plan: Optional[PlanId] = Field(
        None, description="Tier taking effect at period end while a downgrade is pending"
    )
    plan_expires_at: Optional[datetime] = Field(
        None, description="When the still-entitled previous tier ends"
    )
    cached_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_consistency(self) -> "SubscriptionSnapshot":
        """Reject snapshots that contradict the subscription invariants."""
        if self.status is SubscriptionStatus.NONE:
            if self.subscription_id is not None:
                raise ValueError("a snapshot without subscription cannot carry a subscription_id")
            if self.renewal_kind is not RenewalKind.NONE:
                raise ValueError("a snapshot without subscription must have renewal_kind 'none'")
        if self.cancel_at_period_end and self.current_period_end is None:
            raise ValueError("cancel_at_period_end requires current_period_end")
        return self

    @classmethod
    def without_subscription(
        cls, customer_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> "SubscriptionSnapshot":
        """Lowest-tier snapshot for users that have no (readable) subscription."""
        return cls(customer_id=customer_id, cached_at=now or utc_now())


class DeferredChangeMetadata(BaseModel):
    """Pending downgrade bookkeeping stored in the Stripe subscription metadata."""

    previous_plan_product_id: Optional[str] = None
    previous_plan_expires_at: Optional[datetime] = None
    scheduled_product_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        """Whether a downgrade has been scheduled and not yet cleared."""
        return bool(self.previous_plan_product_id)

    def has_matured(self, now: datetime) -> bool:
        """Whether the paid-for previous tier has run out.

        A pending change without a readable expiry is treated as matured so it
        cannot entitle the user to the previous tier forever.
        """
        if not self.is_pending:
            return False
        return self.previous_plan_expires_at is None or self.previous_plan_expires_at <= now

    @classmethod
    def from_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> "DeferredChangeMetadata":
        """Read the deferred change keys from Stripe metadata; missing or empty keys are unset."""
        metadata = metadata or {}
        return cls(
            previous_plan_product_id=metadata.get(PREVIOUS_PLAN_PRODUCT_KEY) or None,
            previous_plan_expires_at=from_unix(metadata.get(PREVIOUS_PLAN_EXPIRES_KEY)),
            scheduled_product_id=metadata.get(SCHEDULED_PLAN_KEY) or None,
        )

    def to_metadata(self) -> dict[str, str]:
        """Serialise for a Stripe metadata update (Stripe metadata values are strings)."""
        expires_at = self.previous_plan_expires_at
        return {
            PREVIOUS_PLAN_PRODUCT_KEY: self.previous_plan_product_id or "",
            PREVIOUS_PLAN_EXPIRES_KEY: str(to_unix(expires_at)) if expires_at else "",
            SCHEDULED_PLAN_KEY: self.scheduled_product_id or "",
        }

    @staticmethod
    def cleared() -> dict[str, str]:
        """Metadata update that unsets every deferred change key."""
        return {
            PREVIOUS_PLAN_PRODUCT_KEY: "",
            PREVIOUS_PLAN_EXPIRES_KEY: "",
            SCHEDULED_PLAN_KEY: "",
        }


class UserBillingRefs(BaseModel):
    """The local store's view of a user: Stripe references and resolved plan."""

    user_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    plan_id: PlanId = PlanId.STARTER


class PlanChangeResult(BaseModel):
    """Outcome of a plan change action."""

    success: bool
    message: str
    effective_date: Optional[datetime] = None
    proration_amount: Optional[int] = Field(
        None, description="Estimated credit applied to the change, in the smallest currency unit"
    )


class ProrationPreview(BaseModel):
    """Client-side estimate of what an upgrade costs right now.

    Amounts are in the smallest currency unit. The invoice Stripe generates is
    authoritative; this is for display only.
    """

    current_plan: PlanId
    target_plan: PlanId
    current_amount: int
    new_amount: int
    credit_amount: int
    credit_percentage: int
    immediate_charge: int
    days_remaining: int
    days_total: int
    next_invoice_date: Optional[datetime] = None
    currency: Optional[str] = None


class UpgradeRequest(BaseModel):
    """Upgrade request schema."""

    plan: PlanId = Field(..., description="Target plan")
    interval: BillingInterval = Field(BillingInterval.MONTHLY, description="Billing interval")


class DowngradeRequest(BaseModel):
    """Downgrade request schema."""

    plan: PlanId = Field(..., description="Target plan")
    interval: BillingInterval = Field(BillingInterval.MONTHLY, description="Billing interval")
    immediate: bool = Field(
        False, description="Apply now with prorations instead of at the end of the period"
    )
