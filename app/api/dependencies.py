"""
FastAPI Dependencies - Identity and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import User
from app.db.session import get_read_db, get_write_db
from app.models.domain import UserIdentity
from app.services.catalog import PriceCatalog
from app.services.checkout import CheckoutService
from app.services.entitlement import EntitlementService
from app.services.generation import GenerationService, GenerationWriter, UserLockRegistry
from app.services.reconciler import BillingEventReconciler
from app.services.stripe_provider import StripeProvider
from app.services.users import UserService

logger = get_logger(__name__)


# ============================================================================
# Identity (asserted by the authenticating reverse proxy)
# ============================================================================


async def get_user_identity(
    x_user_id: str | None = Header(None),
    x_user_email: str | None = Header(None),
    x_user_first_name: str | None = Header(None),
    x_user_last_name: str | None = Header(None),
    x_user_profile_image: str | None = Header(None),
) -> UserIdentity:
    """
    Read the authenticated user's claims from proxy headers.

    Raises:
        HTTPException 401 if no user id was forwarded
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )

    return UserIdentity(
        user_id=x_user_id.strip(),
        email=x_user_email or None,
        first_name=x_user_first_name or None,
        last_name=x_user_last_name or None,
        profile_image_url=x_user_profile_image or None,
    )


async def get_current_user(
    identity: UserIdentity = Depends(get_user_identity),
    db: AsyncSession = Depends(get_write_db),
) -> User:
    """Upsert the caller's user record and return it."""
    return await UserService(db).upsert(identity)


# ============================================================================
# Application-scoped singletons (built in the lifespan)
# ============================================================================


def get_stripe_provider(request: Request) -> StripeProvider:
    provider: StripeProvider | None = getattr(request.app.state, "stripe_provider", None)
    if provider is None:
        logger.error("stripe_provider_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return provider


def get_lock_registry(request: Request) -> UserLockRegistry:
    registry: UserLockRegistry = request.app.state.lock_registry
    return registry


def get_price_catalog(request: Request) -> PriceCatalog:
    catalog: PriceCatalog = request.app.state.price_catalog
    return catalog


# ============================================================================
# Services
# ============================================================================


def get_entitlement_service(
    db: AsyncSession = Depends(get_write_db),
    catalog: PriceCatalog = Depends(get_price_catalog),
) -> EntitlementService:
    return EntitlementService(db, catalog, free_allotment=settings.free_generations_per_user)


def get_generation_service(
    db: AsyncSession = Depends(get_write_db),
    entitlements: EntitlementService = Depends(get_entitlement_service),
    locks: UserLockRegistry = Depends(get_lock_registry),
) -> GenerationService:
    """Generation service bound to the request's write session."""
    writer = GenerationWriter(
        db,
        locks,
        lock_timeout_ms=settings.quota_lock_timeout_ms,
        statement_timeout_ms=settings.quota_statement_timeout_ms,
    )
    return GenerationService(
        db,
        entitlements,
        writer,
        max_attempts=settings.generation_max_attempts,
        retry_backoff_seconds=settings.generation_retry_backoff_seconds,
    )


def get_history_service(
    db: AsyncSession = Depends(get_read_db),
    catalog: PriceCatalog = Depends(get_price_catalog),
    locks: UserLockRegistry = Depends(get_lock_registry),
) -> GenerationService:
    """Generation service on the read replica, for listings only."""
    entitlements = EntitlementService(db, catalog, free_allotment=settings.free_generations_per_user)
    return GenerationService(db, entitlements, GenerationWriter(db, locks))


def get_checkout_service(
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider = Depends(get_stripe_provider),
    catalog: PriceCatalog = Depends(get_price_catalog),
) -> CheckoutService:
    return CheckoutService(db, provider, catalog)


def get_reconciler(
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider = Depends(get_stripe_provider),
    catalog: PriceCatalog = Depends(get_price_catalog),
) -> BillingEventReconciler:
    return BillingEventReconciler(db, provider, catalog)
