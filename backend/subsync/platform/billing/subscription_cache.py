"""Redis-backed store of subscription snapshots.

The cache is an optimisation only. Every failure talking to Redis is logged
and swallowed here, so callers behave exactly as if the cache were empty.
Entries are never updated in place: writers delete, and the next reader
re-resolves from Stripe.
"""

import json
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError

from subsync.core.config import settings
from subsync.core.logging import logger
from subsync.platform.billing.ttl_policy import ttl_for
from subsync.schemas.subscription import SubscriptionSnapshot

CACHE_ERRORS = (redis.RedisError, OSError)

WEBHOOK_EVENT_PREFIX = "stripe:webhook:event:"


class SubscriptionCache:
    """Snapshot cache keyed by user id."""

    def __init__(self, client: redis.Redis, prefix: Optional[str] = None):
        """Initialize the cache.

        Args:
        ----
            client (redis.Redis): Async Redis client (decode_responses=True).
            prefix (Optional[str]): Key prefix, defaults to SUBSCRIPTION_CACHE_PREFIX.

        """
        self.client = client
        self.prefix = prefix or settings.SUBSCRIPTION_CACHE_PREFIX

    def key_for(self, user_id: str) -> str:
        """Cache key of a user's snapshot."""
        return f"{self.prefix}{user_id}"

    async def get(self, user_id: str) -> Optional[SubscriptionSnapshot]:
        """Return the cached snapshot, or None on a miss, a corrupt entry or a cache failure."""
        key = self.key_for(user_id)
        try:
            raw = await self.client.get(key)
        except CACHE_ERRORS as e:
            logger.with_context(user_id=user_id).warning(f"Subscription cache read failed: {e}")
            return None

        if raw is None:
            return None

        try:
            return SubscriptionSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.with_context(user_id=user_id).warning(
                f"Dropping unreadable subscription cache entry: {e}"
            )
            await self.invalidate(user_id)
            return None

    async def set(
        self, user_id: str, snapshot: SubscriptionSnapshot, now: Optional[datetime] = None
    ) -> None:
        """Store a snapshot with the lifetime the TTL policy gives this snapshot."""
        ttl = ttl_for(snapshot, now)
        seconds = max(int(ttl.total_seconds()), 1)
        try:
            await self.client.set(self.key_for(user_id), snapshot.model_dump_json(), ex=seconds)
        except CACHE_ERRORS as e:
            logger.with_context(user_id=user_id).warning(f"Subscription cache write failed: {e}")
            return

        logger.with_context(user_id=user_id).debug(
            f"Cached subscription snapshot ({snapshot.plan_id.value}, ttl={seconds}s)"
        )

    async def invalidate(self, user_id: str) -> None:
        """Delete a user's snapshot. Deleting an absent key is a no-op."""
        try:
            await self.client.delete(self.key_for(user_id))
        except CACHE_ERRORS as e:
            logger.with_context(user_id=user_id).warning(
                f"Subscription cache invalidation failed: {e}"
            )

    async def invalidate_by_customer(self, customer_id: str) -> int:
        """Delete every snapshot that belongs to a Stripe customer.

        Used when only the customer id is known. Scans the snapshot keys and
        compares the customer id stored inside each entry.

        Returns:
            int: The number of deleted entries.
        """
        deleted = 0
        try:
            async for key in self.client.scan_iter(match=f"{self.prefix}*", count=100):
                raw = await self.client.get(key)
                if raw is None or _customer_of(raw) != customer_id:
                    continue
                deleted += await self.client.delete(key)
        except CACHE_ERRORS as e:
            logger.with_context(customer_id=customer_id).warning(
                f"Subscription cache invalidation by customer failed: {e}"
            )
        return deleted

    async def clear_all(self) -> int:
        """Delete every subscription snapshot.

        Returns:
            int: The number of deleted entries.
        """
        deleted = 0
        try:
            async for key in self.client.scan_iter(match=f"{self.prefix}*", count=100):
                deleted += await self.client.delete(key)
        except CACHE_ERRORS as e:
            logger.warning(f"Clearing subscription caches failed: {e}")
        logger.info(f"Cleared {deleted} subscription cache entries")
        return deleted

    async def claim_event(self, event_id: str, ttl_seconds: Optional[int] = None) -> bool:
        """Mark a webhook event as being processed.

        Returns False when the event was already claimed. When Redis is
        unavailable the claim succeeds, as event handling is idempotent anyway.
        """
        try:
            claimed = await self.client.set(
                f"{WEBHOOK_EVENT_PREFIX}{event_id}",
                "1",
                nx=True,
                ex=ttl_seconds or settings.WEBHOOK_EVENT_TTL_SECONDS,
            )
        except CACHE_ERRORS as e:
            logger.with_context(stripe_event_id=event_id).warning(
                f"Could not record webhook event, processing without dedupe: {e}"
            )
            return True
        return bool(claimed)

    async def release_event(self, event_id: str) -> None:
        """Forget a claimed webhook event so a redelivery is processed again."""
        try:
            await self.client.delete(f"{WEBHOOK_EVENT_PREFIX}{event_id}")
        except CACHE_ERRORS as e:
            logger.with_context(stripe_event_id=event_id).warning(
                f"Could not release webhook event claim: {e}"
            )


def _customer_of(raw: str) -> Optional[str]:
    try:
        return json.loads(raw).get("customer_id")
    except (ValueError, AttributeError):
        return None
