"""
Generation Service - Quota-guarded palette generation writes.

All writes for one user are linearized:
1. In-process: an asyncio.Lock keyed by user id
2. Across processes: SELECT FOR UPDATE on the user's credit row,
   bounded by lock_timeout / statement_timeout
3. Re-read the quota window under the lock
4. Insert generation (and decrement credits) in the same transaction
"""

import asyncio
import time
import weakref

from sqlalchemy import desc, func, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Generation
from app.db.queries import count_generations, lock_credit_balance, start_of_month, utc_now
from app.exceptions import (
    DataIntegrityError,
    QuotaExceededError,
    TransientStoreError,
    WriteVerificationError,
)
from app.models.api import QuotaSource
from app.models.domain import GenerationData, GenerationIntent, QuotaPlan
from app.observability.metrics import metrics
from app.observability.tracing import add_span_attributes, get_tracer
from app.services.entitlement import EntitlementService, quota_exceeded

logger = get_logger(__name__)
tracer = get_tracer(__name__)

# lock_not_available, query_canceled (statement_timeout),
# serialization_failure, deadlock_detected
TRANSIENT_SQLSTATES = frozenset({"55P03", "57014", "40001", "40P01"})


def is_transient_db_error(exc: BaseException) -> bool:
    """Whether a database error is a lock/transaction acquisition failure."""
    if isinstance(exc, PoolTimeoutError):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return sqlstate in TRANSIENT_SQLSTATES


class UserLockRegistry:
    """
    Per-user asyncio locks.

    Locks are held weakly, so an entry disappears once no coroutine is
    holding or waiting on it. Different users never share a lock.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def for_user(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class GenerationWriter:
    """
    Atomic check-then-create for palette generations.

    Raises:
        QuotaExceededError: quota window is exhausted; nothing written
        TransientStoreError: lock or transaction could not be acquired in time
    """

    def __init__(
        self,
        session: AsyncSession,
        locks: UserLockRegistry,
        lock_timeout_ms: int = 5000,
        statement_timeout_ms: int = 10000,
    ) -> None:
        self.session = session
        self.locks = locks
        self.lock_timeout_ms = lock_timeout_ms
        self.statement_timeout_ms = statement_timeout_ms

    async def create_generation(self, intent: GenerationIntent, quota: QuotaPlan) -> GenerationData:
        """Create a generation if the user's quota window still allows it."""
        start = time.perf_counter()
        lock = self.locks.for_user(intent.user_id)

        try:
            async with asyncio.timeout(self.lock_timeout_ms / 1000):
                await lock.acquire()
        except TimeoutError as exc:
            metrics.record_generation(quota.source.value, "transient_error")
            raise TransientStoreError(
                f"Timed out waiting for generation lock of user {intent.user_id}"
            ) from exc

        try:
            with tracer.start_as_current_span("generation.create") as span:
                add_span_attributes(span, user_id=intent.user_id, source=quota.source.value)
                generation = await self._create_locked(intent, quota)
        finally:
            lock.release()

        metrics.record_generation(quota.source.value, "created", time.perf_counter() - start)
        return generation

    async def _create_locked(self, intent: GenerationIntent, quota: QuotaPlan) -> GenerationData:
        try:
            await self._set_transaction_timeouts()
            balance = await lock_credit_balance(self.session, intent.user_id)

            if not quota.is_unlimited:
                used, limit = await self._current_usage(intent.user_id, quota, balance.credits)
                if used >= limit:
                    await self.session.rollback()
                    metrics.record_generation(quota.source.value, "quota_exceeded")
                    logger.info(
                        "generation_quota_exceeded",
                        user_id=intent.user_id,
                        source=quota.source.value,
                        used=used,
                        limit=limit,
                    )
                    raise QuotaExceededError(intent.user_id, used, limit, quota.source)

            generation = Generation(
                user_id=intent.user_id,
                palette=list(intent.palette),
                harmony=intent.harmony,
                source=quota.source,
            )
            self.session.add(generation)
            await self.session.flush()

            verified = await self.session.get(Generation, generation.id)
            if verified is None:
                raise WriteVerificationError(f"Generation {generation.id} not found after insert")

            if quota.source == QuotaSource.CREDITS:
                credits_after = balance.credits - 1
                if credits_after < 0:
                    raise DataIntegrityError(
                        f"Credit balance for {intent.user_id} would go negative"
                    )
                balance.credits = credits_after
                await self.session.flush()

            await self.session.commit()

        except DBAPIError as exc:
            await self.session.rollback()
            if is_transient_db_error(exc):
                metrics.record_generation(quota.source.value, "transient_error")
                logger.warning(
                    "generation_lock_unavailable",
                    user_id=intent.user_id,
                    error=str(exc.orig),
                )
                raise TransientStoreError(str(exc.orig)) from exc
            raise
        except PoolTimeoutError as exc:
            metrics.record_generation(quota.source.value, "transient_error")
            raise TransientStoreError("Timed out acquiring a database connection") from exc
        except (WriteVerificationError, DataIntegrityError):
            await self.session.rollback()
            raise

        logger.info(
            "generation_created",
            user_id=intent.user_id,
            generation_id=str(verified.id),
            source=quota.source.value,
            colors=len(intent.palette),
        )

        return GenerationData(
            generation_id=verified.id,
            user_id=verified.user_id,
            palette=tuple(verified.palette),
            harmony=verified.harmony,
            source=quota.source,
            created_at=verified.created_at,
        )

    async def _current_usage(
        self, user_id: str, quota: QuotaPlan, credits: int
    ) -> tuple[int, int]:
        """
        Authoritative (used, limit) for the quota window, read under the lock.

        Same windows as the entitlement calculation: lifetime for the free
        tier, calendar month for subscriptions, the locked balance for credits.
        """
        if quota.source == QuotaSource.SUBSCRIPTION:
            since = start_of_month(utc_now())
            return await count_generations(self.session, user_id, since=since), quota.max_generations
        if quota.source == QuotaSource.CREDITS:
            # Credits consumed since the pre-check; exhausted once the balance is empty
            return quota.max_generations - credits, quota.max_generations
        return await count_generations(self.session, user_id), quota.max_generations

    async def _set_transaction_timeouts(self) -> None:
        """Bound lock waits and statements for the current transaction only."""
        await self.session.execute(
            select(
                func.set_config("lock_timeout", f"{self.lock_timeout_ms}ms", True),
                func.set_config("statement_timeout", f"{self.statement_timeout_ms}ms", True),
            )
        )


class GenerationService:
    """
    Entitlement pre-check plus quota-guarded write, with bounded retries.

    TransientStoreError retries the whole read-then-write sequence;
    QuotaExceededError and other database errors are not retried.
    """

    def __init__(
        self,
        session: AsyncSession,
        entitlements: EntitlementService,
        writer: GenerationWriter,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        self.session = session
        self.entitlements = entitlements
        self.writer = writer
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    async def generate(
        self, user_id: str, palette: list[str], harmony: str | None
    ) -> GenerationData:
        """Record a new palette generation if the user is entitled to one."""
        intent = GenerationIntent(user_id=user_id, palette=tuple(palette), harmony=harmony)

        attempt = 1
        while True:
            entitlement = await self.entitlements.get_entitlement(user_id)
            if not entitlement.can_generate:
                await self.session.rollback()
                metrics.record_generation(entitlement.quota.source.value, "quota_exceeded")
                raise quota_exceeded(user_id, entitlement)

            try:
                return await self.writer.create_generation(intent, entitlement.quota)
            except TransientStoreError as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "generation_retries_exhausted",
                        user_id=user_id,
                        attempts=attempt,
                        error=exc.message,
                    )
                    raise
                metrics.generation_retries_total.inc()
                logger.warning(
                    "generation_retrying",
                    user_id=user_id,
                    attempt=attempt,
                    error=exc.message,
                )
                await self.session.rollback()
                await asyncio.sleep(self.retry_backoff_seconds * attempt)
                attempt += 1

    async def list_generations(self, user_id: str, limit: int = 100) -> list[GenerationData]:
        """A user's generations, newest first."""
        stmt = (
            select(Generation)
            .where(Generation.user_id == user_id)
            .order_by(desc(Generation.created_at))
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [
            GenerationData(
                generation_id=row.id,
                user_id=row.user_id,
                palette=tuple(row.palette),
                harmony=row.harmony,
                source=QuotaSource(row.source),
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]
