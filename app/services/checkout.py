"""
Checkout Service - Starts hosted Stripe checkout for packs and plans.

The session's metadata carries the price id so the reconciler can map the
completed payment back to a credit pack.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import User
from app.db.queries import find_customer_by_user_id
from app.exceptions import InvalidPriceError, MissingEmailError
from app.services.catalog import PriceCatalog
from app.services.stripe_provider import StripeProvider

logger = get_logger(__name__)


class CheckoutService:
    """Creates checkout sessions for known catalog prices."""

    def __init__(
        self,
        session: AsyncSession,
        provider: StripeProvider,
        catalog: PriceCatalog,
    ) -> None:
        self.session = session
        self.provider = provider
        self.catalog = catalog

    async def create_session(self, user: User, price_id: str, base_url: str) -> str:
        """
        Create a checkout session and return the URL to redirect to.

        Raises:
            InvalidPriceError: price is not a configured pack or plan
            MissingEmailError: user has no email to attach to the customer
            PaymentProviderError: Stripe rejected a call
        """
        if not self.catalog.is_known(price_id):
            raise InvalidPriceError(price_id)
        if not user.email:
            raise MissingEmailError(user.id)

        customer_id = await self.get_or_create_customer(user.id, user.email)
        mode = self.catalog.checkout_mode(price_id)
        base = base_url.rstrip("/")

        url = await self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            mode=mode,
            success_url=f"{base}/?success=true",
            cancel_url=f"{base}/?canceled=true",
        )

        logger.info(
            "checkout_started",
            user_id=user.id,
            customer_id=customer_id,
            price_id=price_id,
            mode=mode,
        )
        return url

    async def get_or_create_customer(self, user_id: str, email: str) -> str:
        """Mirror table first, then a Stripe search, then a new customer."""
        mirrored = await find_customer_by_user_id(self.session, user_id)
        if mirrored is not None:
            return mirrored.customer_id

        found = await self.provider.find_customer_id(email, user_id)
        if found is not None:
            logger.info("stripe_customer_found", user_id=user_id, customer_id=found)
            return found

        return await self.provider.create_customer(email, user_id)
