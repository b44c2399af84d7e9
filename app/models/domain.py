"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from app.models.api import (
    UNLIMITED,
    QuotaSource,
    SubscriptionStatus,
    WebhookOutcome,
)


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated user as asserted by the identity provider."""

    user_id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    profile_image_url: str | None = None

    def __post_init__(self) -> None:
        """Validate identity fields."""
        if not self.user_id or not self.user_id.strip():
            raise ValueError("user_id cannot be empty")


@dataclass(frozen=True)
class UsageCounts:
    """Generation counts for the two accounting windows."""

    lifetime: int
    monthly: int

    def __post_init__(self) -> None:
        """Validate count constraints."""
        if self.lifetime < 0 or self.monthly < 0:
            raise ValueError(f"Counts cannot be negative: {self.lifetime}, {self.monthly}")
        if self.monthly > self.lifetime:
            raise ValueError(
                f"Monthly count {self.monthly} exceeds lifetime count {self.lifetime}"
            )


@dataclass(frozen=True)
class SubscriptionInfo:
    """Snapshot of a mirrored Stripe subscription."""

    status: SubscriptionStatus
    monthly_limit: int
    price_id: str | None = None
    subscription_id: str | None = None

    def __post_init__(self) -> None:
        """Validate limit constraints."""
        if self.monthly_limit < 0 and self.monthly_limit != UNLIMITED:
            raise ValueError(f"Invalid monthly limit: {self.monthly_limit}")

    @property
    def is_entitling(self) -> bool:
        return self.status.is_entitling

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_limit == UNLIMITED


@dataclass(frozen=True)
class QuotaPlan:
    """The allotment a generation will be charged against, and its size."""

    source: QuotaSource
    max_generations: int

    @property
    def is_unlimited(self) -> bool:
        return self.source == QuotaSource.UNLIMITED


@dataclass(frozen=True)
class Entitlement:
    """Computed generation entitlement for one user."""

    total_generations: int
    monthly_generations: int
    credits: int
    remaining_generations: int
    has_subscription: bool
    subscription_status: SubscriptionStatus | None
    is_unlimited: bool
    quota: QuotaPlan

    @property
    def can_generate(self) -> bool:
        """Only a non-positive remaining count blocks, unless unlimited."""
        return self.is_unlimited or self.remaining_generations > 0


@dataclass(frozen=True)
class GenerationIntent:
    """Domain model for a generation before persistence - immutable intent."""

    user_id: str
    palette: tuple[str, ...]
    harmony: str | None

    def __post_init__(self) -> None:
        """Validate generation constraints."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.palette:
            raise ValueError("Palette cannot be empty")


@dataclass(frozen=True)
class GenerationData:
    """Immutable generation data after persistence."""

    generation_id: UUID
    user_id: str
    palette: tuple[str, ...]
    harmony: str | None
    source: QuotaSource
    created_at: datetime


@dataclass(frozen=True)
class CreditGrantData:
    """Immutable credit grant data after persistence."""

    grant_id: UUID
    user_id: str
    amount: int
    balance_before: int
    balance_after: int
    idempotency_key: str
    created_at: datetime


@dataclass(frozen=True)
class StripeCustomerData:
    """Read-only view of a mirrored Stripe customer."""

    customer_id: str
    email: str | None
    user_id: str | None


# ============================================================================
# Billing Events (tagged union over the Stripe events we act on)
# ============================================================================


@dataclass(frozen=True)
class CheckoutCompleted:
    """checkout.session.completed"""

    event_id: str
    session_id: str
    customer_id: str | None
    mode: str | None
    payment_status: str | None
    price_id: str | None
    payment_intent_id: str | None
    amount_total: int | None

    @property
    def is_paid_one_time(self) -> bool:
        return self.mode == "payment" and self.payment_status in (None, "paid")


@dataclass(frozen=True)
class SubscriptionChanged:
    """customer.subscription.created / updated / deleted"""

    event_id: str
    event_type: str
    subscription_id: str
    customer_id: str | None
    status: SubscriptionStatus


@dataclass(frozen=True)
class UnhandledEvent:
    """Any event type this service does not act on."""

    event_id: str
    event_type: str


BillingEvent = CheckoutCompleted | SubscriptionChanged | UnhandledEvent


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of handling one billing event."""

    event_id: str
    event_type: str
    outcome: WebhookOutcome
    user_id: str | None = None
    credits_granted: int = 0
