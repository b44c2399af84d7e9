"""
Tests for API (pydantic) and domain (dataclass) models.
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from app.models.api import (
    EntitlementResponse,
    GenerateRequest,
    GenerationResponse,
    QuotaExceededResponse,
    QuotaSource,
    SubscriptionStatus,
    WebhookAckResponse,
    WebhookOutcome,
)
from app.models.domain import (
    CheckoutCompleted,
    GenerationIntent,
    SubscriptionInfo,
    UsageCounts,
)


class TestGenerateRequest:
    """Palette validation."""

    def test_valid_palette_is_uppercased(self) -> None:
        request = GenerateRequest(palette=["#a1b2c3", "#FFF"], harmony="complementary")

        assert request.palette == ["#A1B2C3", "#FFF"]

    @pytest.mark.parametrize("palette", [[], ["red"], ["#12345"], ["#GGGGGG"], ["112233"]])
    def test_invalid_palettes(self, palette: list[str]) -> None:
        with pytest.raises(ValidationError):
            GenerateRequest(palette=palette)

    def test_too_many_colors(self) -> None:
        with pytest.raises(ValidationError):
            GenerateRequest(palette=["#000000"] * 33)

    def test_harmony_length(self) -> None:
        with pytest.raises(ValidationError):
            GenerateRequest(palette=["#000000"], harmony="x" * 51)

    @given(st.lists(st.from_regex(r"#[0-9a-fA-F]{6}", fullmatch=True), min_size=1, max_size=32))
    def test_any_hex_palette_is_accepted(self, palette: list[str]) -> None:
        request = GenerateRequest(palette=palette)

        assert request.palette == [color.upper() for color in palette]


class TestCamelCaseSerialization:
    """JSON keys match the web client."""

    def test_entitlement_keys(self) -> None:
        body = EntitlementResponse(
            total_generations=3,
            monthly_generations=1,
            credits=0,
            remaining_generations=-2,
            has_subscription=False,
            subscription_status=None,
            is_unlimited=False,
        ).model_dump(by_alias=True)

        assert set(body) == {
            "totalGenerations",
            "monthlyGenerations",
            "credits",
            "remainingGenerations",
            "hasSubscription",
            "subscriptionStatus",
            "isUnlimited",
        }
        assert body["remainingGenerations"] == -2

    def test_quota_exceeded_body(self) -> None:
        body = QuotaExceededResponse().model_dump(by_alias=True)

        assert body["message"] == "No generations remaining"
        assert body["needsUpgrade"] is True

    def test_generation_keys(self) -> None:
        body = GenerationResponse(
            id=uuid4(),
            user_id="user-1",
            palette=["#000000"],
            harmony=None,
            source=QuotaSource.FREE,
            created_at=datetime.now(UTC),
        ).model_dump(mode="json", by_alias=True)

        assert body["userId"] == "user-1"
        assert body["source"] == "free"
        assert "createdAt" in body

    def test_webhook_ack(self) -> None:
        body = WebhookAckResponse(event_id="evt_1", outcome=WebhookOutcome.APPLIED).model_dump(
            mode="json", by_alias=True
        )

        assert body == {"received": True, "eventId": "evt_1", "outcome": "applied"}


class TestSubscriptionStatus:
    """Raw Stripe statuses."""

    @pytest.mark.parametrize(
        ("raw", "entitling"),
        [
            ("active", True),
            ("trialing", True),
            ("past_due", True),
            ("unpaid", True),
            ("canceled", False),
            ("incomplete", False),
            (None, False),
        ],
    )
    def test_entitling(self, raw: str | None, entitling: bool) -> None:
        assert SubscriptionStatus.from_stripe(raw).is_entitling is entitling


class TestDomainModels:
    """Dataclass invariants."""

    def test_usage_counts_reject_negative(self) -> None:
        with pytest.raises(ValueError):
            UsageCounts(lifetime=-1, monthly=0)

    def test_monthly_cannot_exceed_lifetime(self) -> None:
        with pytest.raises(ValueError):
            UsageCounts(lifetime=1, monthly=2)

    def test_subscription_limit_validation(self) -> None:
        with pytest.raises(ValueError):
            SubscriptionInfo(status=SubscriptionStatus.ACTIVE, monthly_limit=-7)

    def test_unlimited_subscription(self) -> None:
        info = SubscriptionInfo(status=SubscriptionStatus.TRIALING, monthly_limit=-1)

        assert info.is_unlimited is True
        assert info.is_entitling is True

    def test_generation_intent_requires_colors(self) -> None:
        with pytest.raises(ValueError):
            GenerationIntent(user_id="user-1", palette=(), harmony=None)

    @pytest.mark.parametrize(
        ("mode", "payment_status", "expected"),
        [
            ("payment", "paid", True),
            ("payment", None, True),
            ("payment", "unpaid", False),
            ("subscription", "paid", False),
            (None, "paid", False),
        ],
    )
    def test_paid_one_time_checkout(
        self, mode: str | None, payment_status: str | None, expected: bool
    ) -> None:
        event = CheckoutCompleted(
            event_id="evt_1",
            session_id="cs_1",
            customer_id="cus_1",
            mode=mode,
            payment_status=payment_status,
            price_id="price_10pack",
            payment_intent_id=None,
            amount_total=None,
        )

        assert event.is_paid_one_time is expected
