"""Unit tests for the user billing CRUD and the billing repository."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.ext.asyncio import AsyncSession

from subsync import crud
from subsync.models import UserBilling
from subsync.platform.billing.billing_data_access import BillingRepository
from subsync.schemas.subscription import PlanId


def _result(record):
    result = MagicMock()
    result.scalar_one_or_none.return_value = record
    result.scalar_one.return_value = record
    return result


@pytest.fixture
def mock_db():
    """Create a mock database session."""
    return AsyncMock(spec=AsyncSession)


@pytest.fixture
def session_factory(mock_db):
    """Session factory handing out the mock session as an async context manager."""
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=mock_db)
    context.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=context)


def _update_clause(mock_db) -> str:
    statement = mock_db.execute.await_args.args[0]
    compiled = str(statement.compile(dialect=postgresql.dialect()))
    return compiled.split("DO UPDATE SET")[1].split("RETURNING")[0]


class TestUpsertSubscription:
    """Tests for CRUDUserBilling.upsert_subscription."""

    @pytest.mark.asyncio
    async def test_single_statement_upsert(self, mock_db):
        stored = UserBilling(
            user_id="user-1",
            stripe_customer_id="cus_1",
            stripe_subscription_id="sub_1",
            plan="plus",
        )
        mock_db.execute.return_value = _result(stored)

        billing = await crud.user_billing.upsert_subscription(
            mock_db,
            user_id="user-1",
            stripe_subscription_id="sub_1",
            plan="plus",
            stripe_customer_id="cus_1",
        )

        assert billing is stored
        mock_db.execute.assert_awaited_once()
        mock_db.add.assert_not_called()
        mock_db.commit.assert_awaited_once()
        mock_db.refresh.assert_awaited_once_with(billing)

        statement = mock_db.execute.await_args.args[0]
        assert "ON CONFLICT (user_id) DO UPDATE" in str(
            statement.compile(dialect=postgresql.dialect())
        )
        assert "stripe_customer_id" in _update_clause(mock_db)

    @pytest.mark.asyncio
    async def test_keeps_customer_id_when_not_given(self, mock_db):
        mock_db.execute.return_value = _result(
            UserBilling(user_id="user-1", stripe_customer_id="cus_1", plan="starter")
        )

        await crud.user_billing.upsert_subscription(
            mock_db, user_id="user-1", stripe_subscription_id=None, plan="starter"
        )

        update_clause = _update_clause(mock_db)
        assert "stripe_customer_id" not in update_clause
        assert "stripe_subscription_id" in update_clause
        assert "plan" in update_clause


class TestBillingRepository:
    """Tests for the mapping between rows and UserBillingRefs."""

    @pytest.mark.asyncio
    async def test_get_refs(self, session_factory, mock_db):
        mock_db.execute.return_value = _result(
            UserBilling(
                user_id="user-1",
                stripe_customer_id="cus_1",
                stripe_subscription_id="sub_1",
                plan="essentials",
            )
        )

        refs = await BillingRepository(session_factory).get_refs("user-1")

        assert refs.customer_id == "cus_1"
        assert refs.subscription_id == "sub_1"
        assert refs.plan_id is PlanId.ESSENTIALS

    @pytest.mark.asyncio
    async def test_unknown_customer(self, session_factory, mock_db):
        mock_db.execute.return_value = _result(None)

        assert await BillingRepository(session_factory).get_by_customer("cus_x") is None

    @pytest.mark.asyncio
    async def test_update_subscription(self, session_factory, mock_db):
        mock_db.execute.return_value = _result(
            UserBilling(
                user_id="user-1",
                stripe_customer_id="cus_1",
                stripe_subscription_id="sub_2",
                plan="basic",
            )
        )

        refs = await BillingRepository(session_factory).update_subscription(
            "user-1", "sub_2", PlanId.BASIC, customer_id="cus_1"
        )

        assert refs.subscription_id == "sub_2"
        assert refs.plan_id is PlanId.BASIC
        assert refs.customer_id == "cus_1"
        session_factory.assert_called_once_with()
