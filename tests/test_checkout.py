"""
Tests for CheckoutService.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from app.exceptions import InvalidPriceError, MissingEmailError, PaymentProviderError
from app.services.checkout import CheckoutService
from app.services.stripe_provider import StripeProvider


@pytest.fixture
def provider() -> AsyncMock:
    provider = AsyncMock(spec=StripeProvider)
    provider.find_customer_id = AsyncMock(return_value=None)
    provider.create_customer = AsyncMock(return_value="cus_new")
    provider.create_checkout_session = AsyncMock(return_value="https://checkout.stripe.com/c/1")
    return provider


@pytest.fixture
def no_mirror():
    with patch(
        "app.services.checkout.find_customer_by_user_id", AsyncMock(return_value=None)
    ) as find:
        yield find


class TestCreateSession:
    """Price validation, customer resolution and session parameters."""

    async def test_credit_pack_uses_payment_mode(
        self, db_session, provider, catalog, mock_user, no_mirror
    ) -> None:
        service = CheckoutService(db_session, provider, catalog)

        url = await service.create_session(mock_user, "price_10pack", "https://app.example.com/")

        assert url == "https://checkout.stripe.com/c/1"
        kwargs = provider.create_checkout_session.call_args.kwargs
        assert kwargs["mode"] == "payment"
        assert kwargs["customer_id"] == "cus_new"
        assert kwargs["success_url"] == "https://app.example.com/?success=true"
        assert kwargs["cancel_url"] == "https://app.example.com/?canceled=true"

    @pytest.mark.parametrize("price_id", ["price_pro", "price_unlimited"])
    async def test_plans_use_subscription_mode(
        self, db_session, provider, catalog, mock_user, no_mirror, price_id: str
    ) -> None:
        service = CheckoutService(db_session, provider, catalog)

        await service.create_session(mock_user, price_id, "https://app.example.com")

        assert provider.create_checkout_session.call_args.kwargs["mode"] == "subscription"

    async def test_unknown_price_is_rejected(self, db_session, provider, catalog, mock_user) -> None:
        service = CheckoutService(db_session, provider, catalog)

        with pytest.raises(InvalidPriceError) as exc_info:
            await service.create_session(mock_user, "price_free_money", "https://app.example.com")

        assert exc_info.value.price_id == "price_free_money"
        provider.create_checkout_session.assert_not_awaited()

    async def test_user_without_email_is_rejected(
        self, db_session, provider, catalog, user_factory
    ) -> None:
        service = CheckoutService(db_session, provider, catalog)

        with pytest.raises(MissingEmailError):
            await service.create_session(user_factory(email=None), "price_pro", "https://a.example")

    async def test_provider_error_propagates(
        self, db_session, provider, catalog, mock_user, no_mirror
    ) -> None:
        provider.create_checkout_session.side_effect = PaymentProviderError("boom")
        service = CheckoutService(db_session, provider, catalog)

        with pytest.raises(PaymentProviderError):
            await service.create_session(mock_user, "price_pro", "https://a.example")


class TestGetOrCreateCustomer:
    """Mirror first, then Stripe search, then create."""

    async def test_mirrored_customer_wins(self, db_session, provider, catalog) -> None:
        mirrored = SimpleNamespace(customer_id="cus_mirror", email=None, user_id="user-123")
        service = CheckoutService(db_session, provider, catalog)

        with patch(
            "app.services.checkout.find_customer_by_user_id", AsyncMock(return_value=mirrored)
        ):
            customer_id = await service.get_or_create_customer("user-123", "ada@example.com")

        assert customer_id == "cus_mirror"
        provider.find_customer_id.assert_not_awaited()
        provider.create_customer.assert_not_awaited()

    async def test_stripe_search_before_create(
        self, db_session, provider, catalog, no_mirror
    ) -> None:
        provider.find_customer_id.return_value = "cus_found"
        service = CheckoutService(db_session, provider, catalog)

        customer_id = await service.get_or_create_customer("user-123", "ada@example.com")

        assert customer_id == "cus_found"
        provider.create_customer.assert_not_awaited()

    async def test_creates_when_nothing_found(
        self, db_session, provider, catalog, no_mirror
    ) -> None:
        service = CheckoutService(db_session, provider, catalog)

        customer_id = await service.get_or_create_customer("user-123", "ada@example.com")

        assert customer_id == "cus_new"
        provider.create_customer.assert_awaited_once_with("ada@example.com", "user-123")
