"""
Tests for the entitlement calculation and EntitlementService.
"""

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from app.exceptions import QuotaExceededError
from app.models.api import UNLIMITED, QuotaSource, SubscriptionStatus
from app.models.domain import SubscriptionInfo, UsageCounts
from app.services.entitlement import EntitlementService, compute_entitlement, quota_exceeded


def usage(lifetime: int, monthly: int | None = None) -> UsageCounts:
    return UsageCounts(lifetime=lifetime, monthly=lifetime if monthly is None else monthly)


def pro(status: SubscriptionStatus = SubscriptionStatus.ACTIVE, limit: int = 100) -> SubscriptionInfo:
    return SubscriptionInfo(status=status, monthly_limit=limit, price_id="price_pro")


class TestFreeTier:
    """No subscription and no credits."""

    def test_new_user_has_one_free_generation(self) -> None:
        entitlement = compute_entitlement(usage(0), credits=0, subscription=None)

        assert entitlement.remaining_generations == 1
        assert entitlement.can_generate is True
        assert entitlement.quota.source == QuotaSource.FREE
        assert entitlement.has_subscription is False
        assert entitlement.subscription_status is None
        assert entitlement.is_unlimited is False

    def test_after_free_generation_nothing_remains(self) -> None:
        entitlement = compute_entitlement(usage(1), credits=0, subscription=None)

        assert entitlement.remaining_generations == 0
        assert entitlement.can_generate is False

    def test_over_limit_is_reported_negative(self) -> None:
        """Remaining is not clamped, so over-limit users are distinguishable."""
        entitlement = compute_entitlement(usage(3), credits=0, subscription=None)

        assert entitlement.remaining_generations == -2
        assert entitlement.can_generate is False

    def test_custom_free_allotment(self) -> None:
        entitlement = compute_entitlement(usage(1), credits=0, subscription=None, free_allotment=3)

        assert entitlement.remaining_generations == 2

    @given(lifetime=st.integers(min_value=0, max_value=10_000))
    @settings(max_examples=200)
    def test_free_remaining_is_one_minus_lifetime(self, lifetime: int) -> None:
        entitlement = compute_entitlement(usage(lifetime, 0), credits=0, subscription=None)

        assert entitlement.remaining_generations == 1 - lifetime
        assert entitlement.can_generate == (lifetime == 0)


class TestCredits:
    """Purchased credits take priority over the free tier."""

    def test_credits_are_remaining(self) -> None:
        entitlement = compute_entitlement(usage(5), credits=7, subscription=None)

        assert entitlement.remaining_generations == 7
        assert entitlement.quota.source == QuotaSource.CREDITS
        assert entitlement.quota.max_generations == 7
        assert entitlement.can_generate is True

    def test_zero_credits_falls_back_to_free_tier(self) -> None:
        entitlement = compute_entitlement(usage(0), credits=0, subscription=None)

        assert entitlement.quota.source == QuotaSource.FREE

    @given(
        credits=st.integers(min_value=1, max_value=10_000),
        lifetime=st.integers(min_value=0, max_value=10_000),
    )
    def test_credits_ignore_lifetime_usage(self, credits: int, lifetime: int) -> None:
        entitlement = compute_entitlement(usage(lifetime, 0), credits=credits, subscription=None)

        assert entitlement.remaining_generations == credits
        assert entitlement.credits == credits


class TestSubscription:
    """Subscriptions win over credits when entitling."""

    def test_monthly_limit_minus_monthly_usage(self) -> None:
        entitlement = compute_entitlement(usage(250, 40), credits=5, subscription=pro())

        assert entitlement.remaining_generations == 60
        assert entitlement.quota.source == QuotaSource.SUBSCRIPTION
        assert entitlement.has_subscription is True
        assert entitlement.subscription_status == SubscriptionStatus.ACTIVE

    def test_boundary_at_limit_blocks(self) -> None:
        entitlement = compute_entitlement(usage(100, 100), credits=0, subscription=pro())

        assert entitlement.remaining_generations == 0
        assert entitlement.can_generate is False

    def test_new_month_restores_allowance(self) -> None:
        """Lifetime usage carries over but the monthly count starts from zero."""
        entitlement = compute_entitlement(usage(100, 0), credits=0, subscription=pro())

        assert entitlement.remaining_generations == 100
        assert entitlement.can_generate is True

    @pytest.mark.parametrize(
        "status",
        [
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.PAST_DUE,
            SubscriptionStatus.UNPAID,
        ],
    )
    def test_grace_statuses_are_still_entitled(self, status: SubscriptionStatus) -> None:
        entitlement = compute_entitlement(usage(10, 10), credits=0, subscription=pro(status))

        assert entitlement.has_subscription is True
        assert entitlement.remaining_generations == 90

    def test_canceled_subscription_falls_through(self) -> None:
        entitlement = compute_entitlement(
            usage(1, 1), credits=0, subscription=pro(SubscriptionStatus.CANCELED)
        )

        assert entitlement.has_subscription is False
        assert entitlement.subscription_status == SubscriptionStatus.CANCELED
        assert entitlement.quota.source == QuotaSource.FREE
        assert entitlement.remaining_generations == 0

    @given(monthly=st.integers(min_value=0, max_value=100_000))
    def test_unlimited_plan_ignores_usage(self, monthly: int) -> None:
        subscription = pro(limit=UNLIMITED)
        entitlement = compute_entitlement(usage(monthly, monthly), credits=0, subscription=subscription)

        assert entitlement.remaining_generations == UNLIMITED
        assert entitlement.is_unlimited is True
        assert entitlement.can_generate is True
        assert entitlement.quota.source == QuotaSource.UNLIMITED


class TestQuotaExceeded:
    """Error construction for blocked users."""

    def test_free_tier_reports_lifetime(self) -> None:
        entitlement = compute_entitlement(usage(2), credits=0, subscription=None)

        error = quota_exceeded("user-1", entitlement)

        assert isinstance(error, QuotaExceededError)
        assert error.used == 2
        assert error.limit == 1
        assert error.source == QuotaSource.FREE

    def test_subscription_reports_monthly(self) -> None:
        entitlement = compute_entitlement(usage(500, 100), credits=0, subscription=pro())

        error = quota_exceeded("user-1", entitlement)

        assert error.used == 100
        assert error.limit == 100
        assert error.source == QuotaSource.SUBSCRIPTION


class TestEntitlementService:
    """Input gathering around the pure calculation."""

    @pytest.fixture
    def counts(self):
        """count_generations stub: (lifetime, monthly) chosen by the `since` argument."""

        def _make(lifetime: int, monthly: int) -> AsyncMock:
            async def _count(session, user_id, since=None):
                return lifetime if since is None else monthly

            return AsyncMock(side_effect=_count)

        return _make

    async def test_free_user(self, db_session, catalog, counts, balance_factory) -> None:
        service = EntitlementService(db_session, catalog)

        with (
            patch("app.services.entitlement.count_generations", counts(0, 0)),
            patch(
                "app.services.entitlement.get_credit_balance",
                AsyncMock(return_value=balance_factory(credits=0)),
            ),
            patch("app.services.entitlement.find_customer_by_user_id", AsyncMock(return_value=None)),
        ):
            entitlement = await service.get_entitlement("user-123")

        assert entitlement.remaining_generations == 1
        assert entitlement.quota.source == QuotaSource.FREE

    async def test_monthly_window_starts_at_calendar_month(
        self, db_session, catalog, fixed_datetime, balance_factory
    ) -> None:
        service = EntitlementService(db_session, catalog)
        count = AsyncMock(return_value=0)

        with patch("app.services.entitlement.count_generations", count):
            await service.get_usage("user-123", now=fixed_datetime)

        since_values = [call.kwargs.get("since") for call in count.await_args_list]
        assert datetime(2026, 3, 1, tzinfo=UTC) in since_values
        assert None in since_values

    async def test_pro_subscriber(self, db_session, catalog, counts, balance_factory) -> None:
        service = EntitlementService(db_session, catalog)
        customer = SimpleNamespace(customer_id="cus_1", email="ada@example.com", user_id="user-123")
        subscription = SimpleNamespace(
            id="sub_1",
            status="past_due",
            items={"data": [{"price": {"id": "price_pro"}}]},
        )

        with (
            patch("app.services.entitlement.count_generations", counts(300, 30)),
            patch(
                "app.services.entitlement.get_credit_balance",
                AsyncMock(return_value=balance_factory(credits=4)),
            ),
            patch(
                "app.services.entitlement.find_customer_by_user_id",
                AsyncMock(return_value=customer),
            ),
            patch(
                "app.services.entitlement.find_entitling_subscription",
                AsyncMock(return_value=subscription),
            ),
        ):
            entitlement = await service.get_entitlement("user-123")

        assert entitlement.remaining_generations == 70
        assert entitlement.has_subscription is True
        assert entitlement.subscription_status == SubscriptionStatus.PAST_DUE
        assert entitlement.credits == 4

    async def test_unknown_plan_price_gets_free_allotment(self, db_session, catalog) -> None:
        service = EntitlementService(db_session, catalog)
        customer = SimpleNamespace(customer_id="cus_1", email=None, user_id="user-123")
        subscription = SimpleNamespace(
            id="sub_1", status="active", items={"data": [{"price": {"id": "price_legacy"}}]}
        )

        with (
            patch(
                "app.services.entitlement.find_customer_by_user_id",
                AsyncMock(return_value=customer),
            ),
            patch(
                "app.services.entitlement.find_entitling_subscription",
                AsyncMock(return_value=subscription),
            ),
        ):
            info = await service.get_subscription("user-123")

        assert info is not None
        assert info.monthly_limit == 1
        assert info.price_id == "price_legacy"

    async def test_no_mirrored_customer_means_no_subscription(self, db_session, catalog) -> None:
        service = EntitlementService(db_session, catalog)

        with patch(
            "app.services.entitlement.find_customer_by_user_id", AsyncMock(return_value=None)
        ):
            assert await service.get_subscription("user-123") is None
