"""
Shared Queries - Counting, credit-row locking and Stripe mirror lookups.

Used by the entitlement, generation and reconciliation services so that
every component reads the quota windows the same way.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import Select, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import CreditBalance, Generation, StripeCustomer, StripeSubscription
from app.models.api import ENTITLING_STATUSES
from app.models.domain import StripeCustomerData

logger = get_logger(__name__)


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def start_of_month(now: datetime) -> datetime:
    """First instant of the calendar month containing `now` (UTC)."""
    now = now.astimezone(UTC)
    return datetime(now.year, now.month, 1, tzinfo=UTC)


async def count_generations(
    session: AsyncSession, user_id: str, since: datetime | None = None
) -> int:
    """Count a user's generations, optionally from `since` onwards."""
    stmt = select(func.count()).select_from(Generation).where(Generation.user_id == user_id)
    if since is not None:
        stmt = stmt.where(Generation.created_at >= since)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def ensure_credit_balance(session: AsyncSession, user_id: str) -> None:
    """Create the user's zero balance row if it doesn't exist yet."""
    stmt = (
        pg_insert(CreditBalance)
        .values(id=uuid4(), user_id=user_id, credits=0, updated_at=utc_now())
        .on_conflict_do_nothing(index_elements=[CreditBalance.user_id])
    )
    await session.execute(stmt)


async def get_credit_balance(session: AsyncSession, user_id: str) -> CreditBalance:
    """Get the user's balance row, creating it at zero on first access."""
    await ensure_credit_balance(session, user_id)
    stmt = select(CreditBalance).where(CreditBalance.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one()


async def lock_credit_balance(session: AsyncSession, user_id: str) -> CreditBalance:
    """
    Lock the user's balance row for update (SELECT FOR UPDATE).

    The row doubles as the per-user quota lock; it is released on
    commit, rollback or connection loss.
    """
    await ensure_credit_balance(session, user_id)
    stmt = (
        select(CreditBalance)
        .where(CreditBalance.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one()


async def read_credits(session: AsyncSession, user_id: str) -> int:
    """Read the stored credit count (a column query, not the identity map)."""
    stmt = select(CreditBalance.credits).where(CreditBalance.user_id == user_id)
    result = await session.execute(stmt)
    return int(result.scalar_one())


# ============================================================================
# Stripe sync engine mirror
# ============================================================================


async def _first_from_mirror(session: AsyncSession, stmt: Select[Any]) -> Any | None:
    """
    Run a mirror-table query inside a savepoint.

    The sync engine creates the stripe schema lazily; a missing table
    reads as "no row" instead of aborting the surrounding transaction.
    """
    try:
        async with session.begin_nested():
            result = await session.execute(stmt)
            return result.scalars().first()
    except ProgrammingError as exc:
        logger.warning("stripe_mirror_unavailable", error=str(exc))
        return None


def _to_customer_data(customer: StripeCustomer) -> StripeCustomerData:
    metadata = customer.customer_metadata or {}
    user_id = metadata.get("userId")
    return StripeCustomerData(
        customer_id=customer.id,
        email=customer.email,
        user_id=str(user_id) if user_id else None,
    )


async def find_customer_by_id(
    session: AsyncSession, customer_id: str
) -> StripeCustomerData | None:
    """Find a mirrored Stripe customer by its Stripe id."""
    stmt = select(StripeCustomer).where(StripeCustomer.id == customer_id).limit(1)
    customer = await _first_from_mirror(session, stmt)
    return _to_customer_data(customer) if customer is not None else None


async def find_customer_by_user_id(
    session: AsyncSession, user_id: str
) -> StripeCustomerData | None:
    """Find the mirrored Stripe customer whose metadata maps to `user_id`."""
    stmt = (
        select(StripeCustomer)
        .where(StripeCustomer.customer_metadata["userId"].astext == user_id)
        .limit(1)
    )
    customer = await _first_from_mirror(session, stmt)
    return _to_customer_data(customer) if customer is not None else None


async def find_entitling_subscription(
    session: AsyncSession, customer_id: str
) -> StripeSubscription | None:
    """Find a subscription whose status entitles the customer to its plan."""
    stmt = (
        select(StripeSubscription)
        .where(
            StripeSubscription.customer == customer_id,
            StripeSubscription.status.in_([s.value for s in ENTITLING_STATUSES]),
        )
        .limit(1)
    )
    return await _first_from_mirror(session, stmt)


def subscription_price_id(items: dict[str, Any] | None) -> str | None:
    """Price id of the first subscription item, if present."""
    try:
        price_id = items["data"][0]["price"]["id"]  # type: ignore[index]
    except (KeyError, IndexError, TypeError):
        return None
    return str(price_id) if price_id else None
