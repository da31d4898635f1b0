"""Pure business logic for plan tiers and plan changes.

This module contains the plan ranking, the mapping between plan tiers and
Stripe products, and the proration estimate, separated from infrastructure
concerns like the database, Redis and the Stripe API.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping, Optional

from subsync.core.config import settings
from subsync.schemas.subscription import BillingInterval, PlanId

SECONDS_PER_DAY = 86400


class PlanRank(Enum):
    """Plan hierarchy for upgrade/downgrade decisions."""

    STARTER = 0
    BASIC = 1
    ESSENTIALS = 2
    PLUS = 3
    ADVANCED = 4

    @classmethod
    def from_plan(cls, plan: PlanId) -> "PlanRank":
        """Convert PlanId to PlanRank."""
        return cls[plan.name]


class ChangeType(Enum):
    """Type of plan change."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    SAME = "same"


def lowest_plan() -> PlanId:
    """The free default tier every user falls back to."""
    return min(PlanId, key=lambda plan: PlanRank.from_plan(plan).value)


def compare_plans(current: PlanId, target: PlanId) -> ChangeType:
    """Compare two plans to determine change type."""
    current_rank = PlanRank.from_plan(current)
    target_rank = PlanRank.from_plan(target)

    if target_rank.value > current_rank.value:
        return ChangeType.UPGRADE
    elif target_rank.value < current_rank.value:
        return ChangeType.DOWNGRADE
    return ChangeType.SAME


@dataclass(frozen=True)
class PlanCatalog:
    """Bidirectional mapping between plan tiers and Stripe products/prices.

    The mapping is total: every product id resolves to a tier, and a product
    that is absent or not configured resolves to the lowest tier.
    """

    product_ids: Mapping[PlanId, Optional[str]]
    price_ids: Mapping[tuple[PlanId, BillingInterval], Optional[str]] = field(default_factory=dict)

    @classmethod
    def from_settings(cls) -> "PlanCatalog":
        """Build the catalog from the STRIPE_PRODUCT_* / STRIPE_PRICE_* settings."""
        return cls(
            product_ids={PlanId(tier): pid for tier, pid in settings.stripe_product_ids.items()},
            price_ids={
                (PlanId(tier), BillingInterval(interval)): price_id
                for (tier, interval), price_id in settings.stripe_price_ids.items()
            },
        )

    def plan_for_product(self, product_id: Optional[str]) -> PlanId:
        """Map a Stripe product id to its tier; unmapped or absent maps to the lowest tier."""
        if product_id:
            for plan, configured in self.product_ids.items():
                if configured and configured == product_id:
                    return plan
        return lowest_plan()

    def product_for_plan(self, plan: PlanId) -> Optional[str]:
        """Get the Stripe product id configured for a tier."""
        return self.product_ids.get(plan)

    def price_for_plan(self, plan: PlanId, interval: BillingInterval) -> Optional[str]:
        """Get the preferred Stripe price id for a tier and interval, if configured."""
        return self.price_ids.get((plan, interval))


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass
class ProrationEstimate:
    """Result of the client-side proration estimate."""

    days_total: int
    days_used: int
    days_remaining: int
    credit_amount: int
    credit_percentage: int


def calculate_proration(
    period_start: datetime,
    period_end: datetime,
    current_amount: int,
    now: datetime,
) -> ProrationEstimate:
    """Estimate the unused part of the current period as a credit.

    Days are whole days rounded up, and the remaining days are clamped to the
    period, so a call outside the period yields either no credit or a full one.

    Args:
    ----
        period_start (datetime): Start of the current billing period.
        period_end (datetime): End of the current billing period.
        current_amount (int): Price of the current plan in the smallest currency unit.
        now (datetime): The instant the estimate is made for.

    Returns:
    -------
        ProrationEstimate: Day counts, credit amount and credit percentage.

    """
    days_total = max(math.ceil((period_end - period_start).total_seconds() / SECONDS_PER_DAY), 0)
    days_remaining = math.ceil((period_end - now).total_seconds() / SECONDS_PER_DAY)
    days_remaining = min(max(days_remaining, 0), days_total)

    if days_total == 0:
        return ProrationEstimate(
            days_total=0, days_used=0, days_remaining=0, credit_amount=0, credit_percentage=0
        )

    return ProrationEstimate(
        days_total=days_total,
        days_used=days_total - days_remaining,
        days_remaining=days_remaining,
        credit_amount=_round_half_up(current_amount * days_remaining / days_total),
        credit_percentage=_round_half_up(days_remaining / days_total * 100),
    )
