"""
Entitlement Service - Computes how many generations a user has left.

The calculation itself is a pure function; the service only gathers its
inputs (usage counts, credit balance, mirrored subscription).
"""

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.queries import (
    count_generations,
    find_customer_by_user_id,
    find_entitling_subscription,
    get_credit_balance,
    start_of_month,
    subscription_price_id,
    utc_now,
)
from app.exceptions import QuotaExceededError
from app.models.api import UNLIMITED, QuotaSource, SubscriptionStatus
from app.models.domain import Entitlement, QuotaPlan, SubscriptionInfo, UsageCounts
from app.observability.metrics import metrics
from app.services.catalog import PriceCatalog

logger = get_logger(__name__)


def compute_entitlement(
    usage: UsageCounts,
    credits: int,
    subscription: SubscriptionInfo | None,
    free_allotment: int = 1,
) -> Entitlement:
    """
    Compute remaining generations. First matching rule wins:

    1. entitling subscription on an unlimited plan -> UNLIMITED
    2. entitling subscription with monthly limit N -> N - monthly
    3. purchased credits C > 0 -> C
    4. free tier -> free_allotment - lifetime

    Remaining is never clamped, so callers can tell "at limit" (0) from
    "over limit" (< 0).
    """
    entitled = subscription is not None and subscription.is_entitling

    if subscription is not None and entitled:
        if subscription.is_unlimited:
            remaining = UNLIMITED
            quota = QuotaPlan(QuotaSource.UNLIMITED, UNLIMITED)
        else:
            remaining = subscription.monthly_limit - usage.monthly
            quota = QuotaPlan(QuotaSource.SUBSCRIPTION, subscription.monthly_limit)
    elif credits > 0:
        remaining = credits
        quota = QuotaPlan(QuotaSource.CREDITS, credits)
    else:
        remaining = free_allotment - usage.lifetime
        quota = QuotaPlan(QuotaSource.FREE, free_allotment)

    return Entitlement(
        total_generations=usage.lifetime,
        monthly_generations=usage.monthly,
        credits=credits,
        remaining_generations=remaining,
        has_subscription=entitled,
        subscription_status=subscription.status if subscription is not None else None,
        is_unlimited=quota.is_unlimited,
        quota=quota,
    )


def quota_exceeded(user_id: str, entitlement: Entitlement) -> QuotaExceededError:
    """Build the error for a user whose entitlement blocks generation."""
    quota = entitlement.quota
    if quota.source == QuotaSource.SUBSCRIPTION:
        used = entitlement.monthly_generations
    elif quota.source == QuotaSource.FREE:
        used = entitlement.total_generations
    else:
        used = quota.max_generations - entitlement.remaining_generations
    return QuotaExceededError(user_id, used, quota.max_generations, quota.source)


class EntitlementService:
    """Read-only entitlement lookups for a user."""

    def __init__(
        self,
        session: AsyncSession,
        catalog: PriceCatalog,
        free_allotment: int = 1,
    ) -> None:
        self.session = session
        self.catalog = catalog
        self.free_allotment = free_allotment

    async def get_entitlement(self, user_id: str, now: datetime | None = None) -> Entitlement:
        """Gather counts, credits and subscription, then compute the entitlement."""
        usage = await self.get_usage(user_id, now)
        balance = await get_credit_balance(self.session, user_id)
        subscription = await self.get_subscription(user_id)

        entitlement = compute_entitlement(
            usage, balance.credits, subscription, free_allotment=self.free_allotment
        )

        metrics.record_entitlement_check(entitlement.quota.source.value, entitlement.can_generate)
        logger.debug(
            "entitlement_computed",
            user_id=user_id,
            source=entitlement.quota.source.value,
            remaining=entitlement.remaining_generations,
        )
        return entitlement

    async def get_usage(self, user_id: str, now: datetime | None = None) -> UsageCounts:
        """Lifetime and current-calendar-month generation counts."""
        month_start = start_of_month(now or utc_now())
        lifetime = await count_generations(self.session, user_id)
        monthly = await count_generations(self.session, user_id, since=month_start)
        return UsageCounts(lifetime=lifetime, monthly=monthly)

    async def get_subscription(self, user_id: str) -> SubscriptionInfo | None:
        """
        Resolve user -> Stripe customer -> entitling subscription -> plan limit.

        A subscription on a price the catalog doesn't know gets the free
        allotment as its monthly limit.
        """
        customer = await find_customer_by_user_id(self.session, user_id)
        if customer is None:
            return None

        subscription = await find_entitling_subscription(self.session, customer.customer_id)
        if subscription is None:
            return None

        price_id = subscription_price_id(subscription.items)
        limit = self.catalog.monthly_limit_for(price_id)
        if limit is None:
            logger.warning(
                "subscription_price_unknown",
                user_id=user_id,
                subscription_id=subscription.id,
                price_id=price_id,
            )
            limit = self.free_allotment

        return SubscriptionInfo(
            status=SubscriptionStatus.from_stripe(subscription.status),
            monthly_limit=limit,
            price_id=price_id,
            subscription_id=subscription.id,
        )
