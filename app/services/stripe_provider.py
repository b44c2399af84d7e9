"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - Webhook payloads are parsed into typed BillingEvent variants.
The provider owns its own StripeClient; nothing touches module-level stripe state.
"""

import asyncio
import json
from typing import Any

import stripe
from structlog import get_logger

from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.models.api import SubscriptionStatus
from app.models.domain import (
    BillingEvent,
    CheckoutCompleted,
    SubscriptionChanged,
    UnhandledEvent,
)

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)


def _id_of(value: Any) -> str | None:
    """Stripe fields may hold an id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def parse_stripe_event(envelope: dict[str, Any]) -> BillingEvent:
    """
    Map a verified Stripe event envelope onto the BillingEvent union.

    Raises:
        WebhookVerificationError: envelope lacks an id, type or data object
    """
    event_id = envelope.get("id")
    event_type = envelope.get("type")
    data = envelope.get("data")
    if not event_id or not event_type or not isinstance(data, dict):
        raise WebhookVerificationError("Malformed Stripe event envelope")

    obj = data.get("object")
    if not isinstance(obj, dict):
        raise WebhookVerificationError(f"Stripe event {event_id} has no data object")

    if event_type == CHECKOUT_COMPLETED:
        metadata = obj.get("metadata") or {}
        return CheckoutCompleted(
            event_id=event_id,
            session_id=obj.get("id", ""),
            customer_id=_id_of(obj.get("customer")),
            mode=obj.get("mode"),
            payment_status=obj.get("payment_status"),
            price_id=metadata.get("priceId"),
            payment_intent_id=_id_of(obj.get("payment_intent")),
            amount_total=obj.get("amount_total"),
        )

    if event_type in SUBSCRIPTION_EVENTS:
        return SubscriptionChanged(
            event_id=event_id,
            event_type=event_type,
            subscription_id=obj.get("id", ""),
            customer_id=_id_of(obj.get("customer")),
            status=SubscriptionStatus.from_stripe(obj.get("status")),
        )

    return UnhandledEvent(event_id=event_id, event_type=event_type)


class StripeProvider:
    """
    Stripe client wrapper.

    Constructed once at startup and injected into the reconciler and
    checkout service. Blocking SDK calls run in a worker thread.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        client: stripe.StripeClient | None = None,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            tolerance_seconds: Maximum age of a signed webhook timestamp
            client: Pre-built client (tests)
        """
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.client = client if client is not None else stripe.StripeClient(api_key)

    def verify_webhook(self, payload: bytes, signature: str) -> BillingEvent:
        """
        Verify the Stripe-Signature header over the raw payload and parse it.

        Raises:
            WebhookVerificationError: missing secret, bad signature or bad payload
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.tolerance_seconds
            )
            envelope = json.loads(body)
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_signature_invalid", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("stripe_webhook_payload_invalid", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        if not isinstance(envelope, dict):
            raise WebhookVerificationError("Stripe webhook payload is not an object")

        event = parse_stripe_event(envelope)
        logger.info(
            "stripe_webhook_verified",
            event_id=event.event_id,
            event_type=envelope.get("type"),
        )
        return event

    async def find_customer_id(self, email: str, user_id: str) -> str | None:
        """Search Stripe for a customer with this email whose metadata maps to user_id."""
        try:
            customers = await asyncio.to_thread(
                self.client.customers.list, params={"email": email, "limit": 100}
            )
        except stripe.StripeError as exc:
            logger.error("stripe_customer_search_failed", user_id=user_id, error=str(exc))
            return None

        for customer in customers.data:
            metadata = customer.metadata or {}
            if metadata.get("userId") == user_id:
                customer_id: str = customer.id
                return customer_id
        return None

    async def create_customer(self, email: str, user_id: str) -> str:
        """
        Create a Stripe customer tagged with the local user id.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            customer = await asyncio.to_thread(
                self.client.customers.create,
                params={"email": email, "metadata": {"userId": user_id}},
            )
        except stripe.StripeError as exc:
            logger.error("stripe_customer_create_failed", user_id=user_id, error=str(exc))
            raise PaymentProviderError(f"Failed to create Stripe customer: {exc}") from exc

        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer.id)
        customer_id: str = customer.id
        return customer_id

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """
        Create a hosted checkout session and return its URL.

        Raises:
            PaymentProviderError: If Stripe API call fails or returns no URL
        """
        try:
            session = await asyncio.to_thread(
                self.client.checkout.sessions.create,
                params={
                    "customer": customer_id,
                    "mode": mode,
                    "payment_method_types": ["card"],
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": {"priceId": price_id},
                },
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_checkout_session_failed",
                customer_id=customer_id,
                price_id=price_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe checkout failed: {exc}") from exc

        if not session.url:
            raise PaymentProviderError(f"Checkout session {session.id} has no URL")

        logger.info(
            "stripe_checkout_session_created",
            session_id=session.id,
            customer_id=customer_id,
            price_id=price_id,
            mode=mode,
        )
        url: str = session.url
        return url
