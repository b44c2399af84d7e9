"""
Billing Event Reconciler - Applies Stripe events to local entitlement state.

Per event: Received -> Verified -> Applied | Skipped | Unresolved
(signature failures are Rejected before an event exists).

Idempotency is layered:
1. billing_events keyed by Stripe event id (redelivery of the same event)
2. credit_grants unique on the checkout session id (one grant per payment)
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import BillingEventRecord, CreditGrant, User
from app.db.queries import find_customer_by_id, lock_credit_balance, read_credits, utc_now
from app.exceptions import DataIntegrityError, MappingUnresolvedError, WriteVerificationError
from app.models.api import WebhookOutcome
from app.models.domain import (
    BillingEvent,
    CheckoutCompleted,
    CreditGrantData,
    ReconcileResult,
    SubscriptionChanged,
)
from app.observability.metrics import metrics
from app.observability.tracing import add_span_attributes, get_tracer
from app.services.catalog import PriceCatalog
from app.services.stripe_provider import CHECKOUT_COMPLETED, StripeProvider

logger = get_logger(__name__)
tracer = get_tracer(__name__)


def _event_type(event: BillingEvent) -> str:
    if isinstance(event, CheckoutCompleted):
        return CHECKOUT_COMPLETED
    return event.event_type


class BillingEventReconciler:
    """Translates verified billing events into credit grants."""

    def __init__(
        self,
        session: AsyncSession,
        provider: StripeProvider,
        catalog: PriceCatalog,
    ) -> None:
        self.session = session
        self.provider = provider
        self.catalog = catalog

    async def handle_webhook(self, payload: bytes, signature: str) -> ReconcileResult:
        """
        Verify and apply one webhook delivery.

        Raises:
            WebhookVerificationError: signature or payload rejected; nothing applied
        """
        event = self.provider.verify_webhook(payload, signature)
        return await self.apply(event)

    async def apply(self, event: BillingEvent) -> ReconcileResult:
        """Apply a verified event exactly once."""
        event_type = _event_type(event)

        with tracer.start_as_current_span("billing.reconcile") as span:
            add_span_attributes(span, event_id=event.event_id, event_type=event_type)

            existing = await self.session.get(BillingEventRecord, event.event_id)
            if existing is not None and existing.outcome != WebhookOutcome.UNRESOLVED:
                logger.info(
                    "billing_event_duplicate",
                    event_id=event.event_id,
                    event_type=event_type,
                    previous_outcome=existing.outcome,
                )
                result = ReconcileResult(event.event_id, event_type, WebhookOutcome.DUPLICATE)
            elif isinstance(event, CheckoutCompleted):
                result = await self._apply_checkout(event, existing)
            else:
                if isinstance(event, SubscriptionChanged):
                    logger.info(
                        "stripe_subscription_changed",
                        event_id=event.event_id,
                        subscription_id=event.subscription_id,
                        customer_id=event.customer_id,
                        status=event.status.value,
                    )
                result = await self._record_skipped(event, event_type, existing)

            add_span_attributes(span, outcome=result.outcome.value)

        metrics.record_webhook_event(event_type, result.outcome.value, result.credits_granted)
        return result

    async def retry_unresolved(self, limit: int = 100) -> list[ReconcileResult]:
        """
        Replay credit grants that were parked because the customer mapping
        had not been synced yet.

        Least recently attempted first: every replay touches updated_at, so
        customers that never map rotate to the back of the queue.
        """
        stmt = (
            select(BillingEventRecord)
            .where(BillingEventRecord.outcome == WebhookOutcome.UNRESOLVED)
            .order_by(BillingEventRecord.updated_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        pending = [
            CheckoutCompleted(
                event_id=record.event_id,
                session_id=record.session_id or "",
                customer_id=record.customer_id,
                mode="payment",
                payment_status="paid",
                price_id=record.price_id,
                payment_intent_id=record.payment_intent_id,
                amount_total=None,
            )
            for record in result.scalars().all()
        ]

        outcomes = []
        for event in pending:
            outcomes.append(await self.apply(event))

        logger.info(
            "unresolved_billing_events_replayed",
            total=len(outcomes),
            applied=sum(1 for r in outcomes if r.outcome == WebhookOutcome.APPLIED),
        )
        return outcomes

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _apply_checkout(
        self, event: CheckoutCompleted, existing: BillingEventRecord | None
    ) -> ReconcileResult:
        credits = self.catalog.credits_for(event.price_id)
        if not event.is_paid_one_time or credits is None:
            logger.info(
                "stripe_checkout_not_credit_pack",
                event_id=event.event_id,
                mode=event.mode,
                payment_status=event.payment_status,
                price_id=event.price_id,
            )
            return await self._record_skipped(event, CHECKOUT_COMPLETED, existing)

        if not event.customer_id or not event.session_id:
            logger.error(
                "stripe_checkout_missing_customer",
                event_id=event.event_id,
                session_id=event.session_id,
            )
            return await self._record_skipped(event, CHECKOUT_COMPLETED, existing)

        try:
            user_id = await self._resolve_user(event.customer_id)
        except MappingUnresolvedError as exc:
            return await self._record_unresolved(event, credits, existing, exc)

        try:
            grant = await self._grant_credits(user_id, credits, event, existing)
        except (WriteVerificationError, DataIntegrityError):
            await self.session.rollback()
            raise
        except IntegrityError:
            # Concurrent delivery of the same event or payment won the race
            await self.session.rollback()
            logger.info(
                "stripe_checkout_grant_duplicate",
                event_id=event.event_id,
                session_id=event.session_id,
            )
            return ReconcileResult(
                event.event_id, CHECKOUT_COMPLETED, WebhookOutcome.DUPLICATE, user_id=user_id
            )

        if grant is None:
            return ReconcileResult(
                event.event_id, CHECKOUT_COMPLETED, WebhookOutcome.DUPLICATE, user_id=user_id
            )

        logger.info(
            "stripe_credits_granted",
            event_id=event.event_id,
            session_id=event.session_id,
            user_id=user_id,
            credits=credits,
            balance_after=grant.balance_after,
        )
        return ReconcileResult(
            event.event_id,
            CHECKOUT_COMPLETED,
            WebhookOutcome.APPLIED,
            user_id=user_id,
            credits_granted=credits,
        )

    async def _resolve_user(self, customer_id: str) -> str:
        """
        Map a Stripe customer id to a local user id.

        Raises:
            MappingUnresolvedError: customer not mirrored yet, or its user unknown
        """
        customer = await find_customer_by_id(self.session, customer_id)
        if customer is None or customer.user_id is None:
            raise MappingUnresolvedError(customer_id)

        user = await self.session.get(User, customer.user_id)
        if user is None:
            raise MappingUnresolvedError(customer_id)
        return user.id

    async def _grant_credits(
        self,
        user_id: str,
        credits: int,
        event: CheckoutCompleted,
        existing: BillingEventRecord | None,
    ) -> CreditGrantData | None:
        """
        Add credits and record the grant and event in one transaction.

        Returns None if this payment was already granted under another event id.
        """
        balance = await lock_credit_balance(self.session, user_id)

        prior = await self._find_grant(event.session_id)
        if prior is not None:
            self._upsert_event_record(
                event, CHECKOUT_COMPLETED, WebhookOutcome.DUPLICATE, existing, user_id=user_id
            )
            await self.session.commit()
            return None

        balance_before = balance.credits
        balance_after = balance_before + credits

        grant = CreditGrant(
            user_id=user_id,
            amount=credits,
            balance_before=balance_before,
            balance_after=balance_after,
            idempotency_key=event.session_id,
            stripe_event_id=event.event_id,
            price_id=event.price_id,
            payment_intent_id=event.payment_intent_id,
        )
        self.session.add(grant)
        await self.session.flush()

        verified_grant = await self.session.get(CreditGrant, grant.id)
        if verified_grant is None:
            raise WriteVerificationError(f"Credit grant {grant.id} not found after insert")

        balance.credits = balance_after
        self._upsert_event_record(
            event,
            CHECKOUT_COMPLETED,
            WebhookOutcome.APPLIED,
            existing,
            user_id=user_id,
            credits=credits,
        )
        await self.session.flush()

        stored_credits = await read_credits(self.session, user_id)
        if stored_credits != balance_after:
            raise DataIntegrityError(
                f"Credit balance mismatch: expected {balance_after}, got {stored_credits}"
            )

        await self.session.commit()

        return CreditGrantData(
            grant_id=verified_grant.id,
            user_id=user_id,
            amount=credits,
            balance_before=balance_before,
            balance_after=balance_after,
            idempotency_key=event.session_id,
            created_at=verified_grant.created_at,
        )

    async def _record_skipped(
        self,
        event: BillingEvent,
        event_type: str,
        existing: BillingEventRecord | None,
    ) -> ReconcileResult:
        try:
            self._upsert_event_record(event, event_type, WebhookOutcome.SKIPPED, existing)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return ReconcileResult(event.event_id, event_type, WebhookOutcome.DUPLICATE)

        logger.info("billing_event_skipped", event_id=event.event_id, event_type=event_type)
        return ReconcileResult(event.event_id, event_type, WebhookOutcome.SKIPPED)

    async def _record_unresolved(
        self,
        event: CheckoutCompleted,
        credits: int,
        existing: BillingEventRecord | None,
        error: MappingUnresolvedError,
    ) -> ReconcileResult:
        try:
            self._upsert_event_record(
                event, CHECKOUT_COMPLETED, WebhookOutcome.UNRESOLVED, existing, credits=credits
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return ReconcileResult(event.event_id, CHECKOUT_COMPLETED, WebhookOutcome.DUPLICATE)

        logger.warning(
            "stripe_customer_mapping_unresolved",
            event_id=event.event_id,
            customer_id=error.customer_id,
            session_id=event.session_id,
            credits=credits,
            attempts=existing.attempts if existing is not None else 1,
        )
        return ReconcileResult(event.event_id, CHECKOUT_COMPLETED, WebhookOutcome.UNRESOLVED)

    def _upsert_event_record(
        self,
        event: BillingEvent,
        event_type: str,
        outcome: WebhookOutcome,
        existing: BillingEventRecord | None,
        user_id: str | None = None,
        credits: int = 0,
    ) -> None:
        """Insert the processed-event row, or advance a previously unresolved one."""
        if existing is not None:
            existing.outcome = outcome
            existing.attempts = existing.attempts + 1
            existing.updated_at = utc_now()
            existing.user_id = user_id or existing.user_id
            existing.credits = credits or existing.credits
            return

        record = BillingEventRecord(
            event_id=event.event_id,
            event_type=event_type,
            outcome=outcome,
            user_id=user_id,
            credits=credits,
            attempts=1,
        )
        if isinstance(event, CheckoutCompleted):
            record.customer_id = event.customer_id
            record.session_id = event.session_id
            record.price_id = event.price_id
            record.payment_intent_id = event.payment_intent_id
        elif isinstance(event, SubscriptionChanged):
            record.customer_id = event.customer_id
        self.session.add(record)

    async def _find_grant(self, idempotency_key: str) -> CreditGrant | None:
        """Find credit grant by idempotency key."""
        stmt = select(CreditGrant).where(CreditGrant.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
