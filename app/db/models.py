"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
The stripe.* tables are owned by the Stripe sync engine and are read-only here.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import QuotaSource, WebhookOutcome


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Mirrors the identity provider's claims; upserted on each request.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_image_url: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email})>"


class Generation(Base):
    """
    ORM model for generations table.

    Immutable log of palette generations; counted for quota windows.
    """

    __tablename__ = "generations"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )

    # Ordered list of color values
    palette: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    harmony: Mapped[str | None] = mapped_column(String(50), nullable=True)

    source: Mapped[QuotaSource] = mapped_column(
        SQLEnum(
            QuotaSource,
            name="quota_source",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_generations_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Generation(id={self.id}, user_id={self.user_id}, source={self.source})>"


class CreditBalance(Base):
    """
    ORM model for user_credits table.

    One row per user; also serves as the per-user quota lock row.
    """

    __tablename__ = "user_credits"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, unique=True
    )
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (CheckConstraint("credits >= 0", name="ck_user_credits_non_negative"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<CreditBalance(user_id={self.user_id}, credits={self.credits})>"


class CreditGrant(Base):
    """
    ORM model for credit_grants table.

    Immutable ledger of credit additions, one per payment.
    """

    __tablename__ = "credit_grants"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    # Checkout session id - one grant per payment
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)

    stripe_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_grant_amount_positive"),
        CheckConstraint(
            "balance_after = balance_before + amount",
            name="ck_credit_grant_balance_consistency",
        ),
        UniqueConstraint("idempotency_key", name="uq_credit_grant_idempotency"),
        Index("idx_credit_grants_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditGrant(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, key={self.idempotency_key})>"
        )


class BillingEventRecord(Base):
    """
    ORM model for billing_events table.

    Processed-event log keyed by Stripe event id.
    """

    __tablename__ = "billing_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[WebhookOutcome] = mapped_column(
        SQLEnum(
            WebhookOutcome,
            name="webhook_outcome",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    # Retained so unresolved grants can be replayed
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index(
            "idx_billing_events_unresolved",
            "updated_at",
            postgresql_where=text("outcome = 'unresolved'"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BillingEventRecord(event_id={self.event_id}, type={self.event_type}, "
            f"outcome={self.outcome})>"
        )


# ============================================================================
# Stripe sync engine mirror (read-only)
# ============================================================================


class StripeCustomer(Base):
    """Mirrored stripe.customers row."""

    __tablename__ = "customers"
    __table_args__ = {"schema": "stripe"}

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # "metadata" is reserved on declarative classes
    customer_metadata: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSONB, nullable=True
    )


class StripeSubscription(Base):
    """Mirrored stripe.subscriptions row."""

    __tablename__ = "subscriptions"
    __table_args__ = {"schema": "stripe"}

    id: Mapped[str] = mapped_column(String, primary_key=True)
    customer: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
    items: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    current_period_start: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    current_period_end: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
