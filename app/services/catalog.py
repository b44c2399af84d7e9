"""
Price Catalog - Maps Stripe price ids to credit packs and plan limits.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from app.config import Settings
from app.models.api import UNLIMITED


@dataclass(frozen=True)
class PriceCatalog:
    """
    Known Stripe prices.

    credit_packs: one-time price id -> generations granted
    subscription_limits: recurring price id -> monthly limit (UNLIMITED = -1)
    """

    credit_packs: Mapping[str, int] = field(default_factory=dict)
    subscription_limits: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate catalog constraints."""
        overlap = set(self.credit_packs) & set(self.subscription_limits)
        if overlap:
            raise ValueError(f"Price ids cannot be both packs and plans: {sorted(overlap)}")
        for price_id, credits in self.credit_packs.items():
            if credits <= 0:
                raise ValueError(f"Credit pack {price_id} must grant credits: {credits}")
        for price_id, limit in self.subscription_limits.items():
            if limit < 0 and limit != UNLIMITED:
                raise ValueError(f"Invalid monthly limit for {price_id}: {limit}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriceCatalog":
        return cls(
            credit_packs=dict(settings.credit_packs),
            subscription_limits=dict(settings.subscription_limits),
        )

    def is_known(self, price_id: str) -> bool:
        return price_id in self.credit_packs or price_id in self.subscription_limits

    def credits_for(self, price_id: str | None) -> int | None:
        """Credits granted by a one-time price, or None if it isn't a credit pack."""
        if price_id is None:
            return None
        return self.credit_packs.get(price_id)

    def monthly_limit_for(self, price_id: str | None) -> int | None:
        """Monthly limit for a plan price, or None if unknown."""
        if price_id is None:
            return None
        return self.subscription_limits.get(price_id)

    def checkout_mode(self, price_id: str) -> str:
        """Stripe checkout mode for a price."""
        return "payment" if price_id in self.credit_packs else "subscription"
