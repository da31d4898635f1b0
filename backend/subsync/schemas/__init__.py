# flake8: noqa: F401
"""Schemas for the application."""

from .subscription import (
    BillingInterval,
    DeferredChangeMetadata,
    DowngradeRequest,
    PlanChangeResult,
    PlanId,
    ProrationPreview,
    RenewalKind,
    SubscriptionSnapshot,
    SubscriptionStatus,
    UpgradeRequest,
    UserBillingRefs,
)
