"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from app.models.api import QuotaSource


class PaletteServiceError(Exception):
    """Base exception for all quota and billing errors."""

    pass


class QuotaExceededError(PaletteServiceError):
    """Raised when a user has no generations left in the active quota window."""

    def __init__(self, user_id: str, used: int, limit: int, source: QuotaSource) -> None:
        self.user_id = user_id
        self.used = used
        self.limit = limit
        self.source = source
        super().__init__(
            f"Generation quota exceeded for user {user_id}: "
            f"used {used} of {limit} ({source.value})"
        )


class WebhookVerificationError(PaletteServiceError):
    """Raised when a webhook payload cannot be authenticated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class MappingUnresolvedError(PaletteServiceError):
    """Raised when a Stripe customer has no known local user yet."""

    def __init__(self, customer_id: str) -> None:
        self.customer_id = customer_id
        super().__init__(f"No local user mapped to Stripe customer {customer_id}")


class TransientStoreError(PaletteServiceError):
    """Raised when a lock or transaction could not be acquired in time."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Transient store error: {message}")


class InvalidPriceError(PaletteServiceError):
    """Raised when a checkout references a price outside the catalog."""

    def __init__(self, price_id: str) -> None:
        self.price_id = price_id
        super().__init__(f"Invalid price ID: {price_id}")


class MissingEmailError(PaletteServiceError):
    """Raised when a checkout is attempted for a user without an email."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} has no email address")


class PaymentProviderError(PaletteServiceError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WriteVerificationError(PaletteServiceError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(PaletteServiceError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")
