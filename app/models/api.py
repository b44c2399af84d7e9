"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
JSON field names are camelCase to match the web client.
"""

import re
from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

HEX_COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}){1,2}$")

UNLIMITED = -1  # Sentinel for "no generation limit"


class SubscriptionStatus(str, Enum):
    """Stripe subscription status, collapsed to the values the quota cares about."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    OTHER = "other"

    @classmethod
    def from_stripe(cls, raw: str | None) -> "SubscriptionStatus":
        """Map a raw Stripe status (incomplete, paused, ...) onto this enum."""
        try:
            return cls(raw)
        except ValueError:
            return cls.OTHER

    @property
    def is_entitling(self) -> bool:
        """Whether this status grants the plan's generation limit."""
        return self in ENTITLING_STATUSES


ENTITLING_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
    }
)


class QuotaSource(str, Enum):
    """Which allotment a generation is consumed from."""

    UNLIMITED = "unlimited"
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"
    FREE = "free"


class WebhookOutcome(str, Enum):
    """Terminal result of handling one billing event."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    UNRESOLVED = "unresolved"
    DUPLICATE = "duplicate"


class CamelModel(BaseModel):
    """Base model that serializes with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# User Models
# ============================================================================


class UserResponse(CamelModel):
    """GET /api/auth/user response."""

    id: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    profile_image_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ============================================================================
# Entitlement Models
# ============================================================================


class EntitlementResponse(CamelModel):
    """GET /api/user/status response."""

    total_generations: int
    monthly_generations: int
    credits: int
    remaining_generations: int
    has_subscription: bool
    subscription_status: SubscriptionStatus | None = None
    is_unlimited: bool


# ============================================================================
# Generation Models
# ============================================================================


class GenerateRequest(CamelModel):
    """POST /api/generate request body."""

    palette: list[str] = Field(..., min_length=1, max_length=32)
    harmony: str | None = Field(None, max_length=50)

    @field_validator("palette")
    @classmethod
    def validate_palette(cls, v: list[str]) -> list[str]:
        """Ensure every palette entry is a hex color."""
        for color in v:
            if not HEX_COLOR_RE.match(color):
                raise ValueError(f"Invalid color value: {color!r}")
        return [color.upper() for color in v]


class GenerationResponse(CamelModel):
    """A stored palette generation."""

    id: UUID
    user_id: str
    palette: list[str]
    harmony: str | None = None
    source: QuotaSource
    created_at: datetime


class QuotaExceededResponse(CamelModel):
    """
    403 body returned when a user must upgrade to keep generating.

    remainingGenerations is limit minus used, negative when already over.
    """

    message: str = "No generations remaining"
    needs_upgrade: bool = True
    remaining_generations: int = 0


# ============================================================================
# Checkout Models
# ============================================================================


class CheckoutRequest(CamelModel):
    """POST /api/checkout request body."""

    price_id: str = Field(..., min_length=1, max_length=255)


class CheckoutResponse(CamelModel):
    """POST /api/checkout response."""

    url: str


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAckResponse(CamelModel):
    """POST /api/stripe/webhook response."""

    received: bool = True
    event_id: str | None = None
    outcome: WebhookOutcome | None = None


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
