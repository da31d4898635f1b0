"""Common test fixtures and configuration for pytest.

The billing engine is tested against in-memory stand-ins for Redis, the
local store and Stripe; no external service is needed to run the suite.
"""

from unittest.mock import AsyncMock

import pytest

# Import all fixtures so they are automatically available for all tests
from tests.fixtures.common import (  # noqa
    catalog,
    clock,
    fake_redis,
    mock_user_refs,
)


@pytest.fixture
def mock_cache():
    """Provide a mock subscription cache for unit tests."""
    from subsync.platform.billing.subscription_cache import SubscriptionCache

    return AsyncMock(spec=SubscriptionCache)
