"""
API Routes - FastAPI endpoints for quota, generation and billing operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_checkout_service,
    get_current_user,
    get_entitlement_service,
    get_generation_service,
    get_history_service,
    get_reconciler,
)
from app.db.models import User
from app.db.session import get_read_db
from app.exceptions import (
    DataIntegrityError,
    InvalidPriceError,
    MissingEmailError,
    PaymentProviderError,
    QuotaExceededError,
    TransientStoreError,
    WebhookVerificationError,
    WriteVerificationError,
)
from app.models.api import (
    CheckoutRequest,
    CheckoutResponse,
    EntitlementResponse,
    GenerateRequest,
    GenerationResponse,
    HealthResponse,
    QuotaExceededResponse,
    UserResponse,
    WebhookAckResponse,
)
from app.models.domain import GenerationData
from app.observability.metrics import metrics
from app.services.checkout import CheckoutService
from app.services.entitlement import EntitlementService
from app.services.generation import GenerationService
from app.services.reconciler import BillingEventReconciler

logger = get_logger(__name__)

router = APIRouter()


def _generation_response(generation: GenerationData) -> GenerationResponse:
    return GenerationResponse(
        id=generation.generation_id,
        user_id=generation.user_id,
        palette=list(generation.palette),
        harmony=generation.harmony,
        source=generation.source,
        created_at=generation.created_at,
    )


@router.get("/api/auth/user", response_model=UserResponse)
async def get_auth_user(user: User = Depends(get_current_user)) -> UserResponse:
    """Current user record."""
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        profile_image_url=user.profile_image_url,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


@router.get("/api/user/status", response_model=EntitlementResponse)
async def get_user_status(
    user: User = Depends(get_current_user),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementResponse:
    """
    Current generation entitlement.

    remainingGenerations is -1 for unlimited plans and may be negative for
    users over their free allotment.
    """
    entitlement = await service.get_entitlement(user.id)
    return EntitlementResponse(
        total_generations=entitlement.total_generations,
        monthly_generations=entitlement.monthly_generations,
        credits=entitlement.credits,
        remaining_generations=entitlement.remaining_generations,
        has_subscription=entitlement.has_subscription,
        subscription_status=entitlement.subscription_status,
        is_unlimited=entitlement.is_unlimited,
    )


@router.post(
    "/api/generate",
    response_model=GenerationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_403_FORBIDDEN: {"model": QuotaExceededResponse}},
)
async def generate(
    request: GenerateRequest,
    user: User = Depends(get_current_user),
    service: GenerationService = Depends(get_generation_service),
) -> GenerationResponse | JSONResponse:
    """
    Record a palette generation against the user's quota.

    Write operation - requires primary database.
    """
    try:
        generation = await service.generate(user.id, request.palette, request.harmony)

    except QuotaExceededError as exc:
        logger.info(
            "generation_denied",
            user_id=exc.user_id,
            source=exc.source.value,
            used=exc.used,
            limit=exc.limit,
        )
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content=QuotaExceededResponse(
                remaining_generations=exc.limit - exc.used
            ).model_dump(by_alias=True),
        )

    except TransientStoreError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Generation temporarily unavailable, please retry",
            headers={"Retry-After": "1"},
        ) from exc

    except (WriteVerificationError, DataIntegrityError) as exc:
        metrics.record_error(type(exc).__name__, "generate")
        logger.error("generation_write_failed", user_id=user.id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record generation",
        ) from exc

    return _generation_response(generation)


@router.get("/api/generations", response_model=list[GenerationResponse])
async def list_generations(
    user: User = Depends(get_current_user),
    service: GenerationService = Depends(get_history_service),
) -> list[GenerationResponse]:
    """User's generations, newest first. Read operation - can use replica."""
    generations = await service.list_generations(user.id)
    return [_generation_response(generation) for generation in generations]


@router.post("/api/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    request: Request,
    user: User = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutResponse:
    """Start a hosted checkout for a credit pack or subscription plan."""
    try:
        url = await service.create_session(user, body.price_id, str(request.base_url))

    except InvalidPriceError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid price ID",
        ) from exc

    except MissingEmailError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User email required",
        ) from exc

    except PaymentProviderError as exc:
        metrics.record_error("PaymentProviderError", "checkout")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider error",
        ) from exc

    return CheckoutResponse(url=url)


@router.post("/api/stripe/webhook", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    reconciler: BillingEventReconciler = Depends(get_reconciler),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Returns 400 on signature failure and 500 on store failure, so Stripe
    redelivers only what could not be recorded.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        result = await reconciler.handle_webhook(payload, signature)

    except WebhookVerificationError as exc:
        metrics.record_webhook_event("unknown", "rejected")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook verification failed",
        ) from exc

    except (SQLAlchemyError, WriteVerificationError, DataIntegrityError) as exc:
        metrics.record_error(type(exc).__name__, "stripe_webhook")
        logger.error("stripe_webhook_store_failed", error=str(exc), exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to record webhook event",
        ) from exc

    return WebhookAckResponse(event_id=result.event_id, outcome=result.outcome)


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
