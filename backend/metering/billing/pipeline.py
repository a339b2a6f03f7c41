"""Post-response flush pipeline.

Usage collected during a request is written after the response has been
sent: the organization's ledger write and the self-billing write share one
transaction, failed writes are retried, and deltas that still cannot be
written are pushed onto a Redis dead-letter list for later replay.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

import orjson
import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from metering.billing import ledger
from metering.billing.accumulator import UsageAccumulator
from metering.billing.exceptions import BillingError, LedgerPersistenceError
from metering.billing.fields import UsageDelta
from metering.billing.models import LedgerEntry, Subscription, SubscriptionTier
from metering.billing.periods import current_period
from metering.config import get_settings

logger = structlog.get_logger()

SessionFactory = Callable[[], AsyncSession]

_redis: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(get_settings().REDIS_URL)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def _default_session_factory() -> AsyncSession:
    from metering.database import async_session

    return async_session()


async def resolve_tier(db: AsyncSession, organization_id: str) -> SubscriptionTier:
    """Tier the organization is currently metered under."""
    if organization_id == get_settings().PLATFORM_OWNER_ORG_ID:
        return SubscriptionTier.PREMIUM
    result = await db.execute(
        select(Subscription.subscription_type).where(Subscription.organization_id == organization_id)
    )
    tier = result.scalar_one_or_none()
    return SubscriptionTier(tier) if tier else SubscriptionTier.FREEMIUM


async def persist_usage(
    organization_id: str,
    deltas: Sequence[UsageDelta],
    *,
    period: str | None = None,
    session_factory: SessionFactory | None = None,
) -> LedgerEntry:
    """Apply ``deltas`` and the matching self-billing in a single commit."""
    session_factory = session_factory or _default_session_factory
    async with session_factory() as db:
        try:
            tier = await resolve_tier(db, organization_id)
            entry = await ledger.apply(db, organization_id, deltas, tier=tier, period=period)
            await db.commit()
        # asyncpg raises OSError subclasses when the server cannot be reached
        except (SQLAlchemyError, OSError) as exc:
            await db.rollback()
            raise LedgerPersistenceError(
                "Failed to persist usage",
                {"organization_id": organization_id, "error": str(exc)},
            ) from exc
        except BillingError:
            await db.rollback()
            raise
    return entry


def _serialize(organization_id: str, period: str, deltas: Sequence[UsageDelta], error: str) -> bytes:
    return orjson.dumps({
        "organization_id": organization_id,
        "period": period,
        "deltas": [{"field": d.field, "value": d.value} for d in deltas],
        "error": error,
        "failed_at": datetime.now(timezone.utc).isoformat(),
    })


async def dead_letter(
    organization_id: str,
    period: str,
    deltas: Sequence[UsageDelta],
    error: str,
) -> bool:
    """Park undeliverable usage in Redis. Returns False if that failed too."""
    settings = get_settings()
    try:
        await get_redis().rpush(settings.DEAD_LETTER_KEY, _serialize(organization_id, period, deltas, error))
    except RedisError as e:
        logger.error(
            "usage_lost",
            organization_id=organization_id,
            period=period,
            deltas=[{"field": d.field, "value": d.value} for d in deltas],
            error=error,
            redis_error=str(e),
        )
        return False
    logger.warning("usage_dead_lettered", organization_id=organization_id, period=period, count=len(deltas))
    return True


async def record_usage(
    organization_id: str,
    deltas: Sequence[UsageDelta],
    *,
    period: str | None = None,
    session_factory: SessionFactory | None = None,
) -> LedgerEntry | None:
    """Persist usage with retries; dead-letter it once retries run out."""
    settings = get_settings()
    period = period or current_period()
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, settings.LEDGER_WRITE_RETRIES)),
            wait=wait_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type(LedgerPersistenceError),
            reraise=True,
        ):
            with attempt:
                return await persist_usage(
                    organization_id, deltas, period=period, session_factory=session_factory,
                )
    except LedgerPersistenceError as exc:
        logger.error("usage_persist_failed", organization_id=organization_id, period=period, error=str(exc))
        await dead_letter(organization_id, period, deltas, str(exc))
    return None


async def replay_dead_letters(
    batch: int | None = None,
    session_factory: SessionFactory | None = None,
) -> int:
    """Re-apply dead-lettered usage. Stops at the first item that fails again."""
    settings = get_settings()
    batch = batch or settings.DEAD_LETTER_REPLAY_BATCH
    client = get_redis()
    replayed = 0

    for _ in range(batch):
        raw = await client.lpop(settings.DEAD_LETTER_KEY)
        if raw is None:
            break
        item = orjson.loads(raw)
        deltas = [UsageDelta.coerce(d) for d in item.get("deltas", [])]
        try:
            await persist_usage(
                item["organization_id"], deltas,
                period=item.get("period"), session_factory=session_factory,
            )
        except LedgerPersistenceError as e:
            # Put it back at the head so ordering is preserved
            await client.lpush(settings.DEAD_LETTER_KEY, raw)
            logger.warning("dead_letter_replay_stalled", organization_id=item["organization_id"], error=str(e))
            break
        replayed += 1

    if replayed:
        logger.info("dead_letters_replayed", count=replayed)
    return replayed


class BillingFlusher:
    """Runs request flushes as tracked background tasks."""

    def __init__(self, sink: Callable[..., Any] | None = None):
        self._sink = sink or record_usage
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, usage: UsageAccumulator) -> asyncio.Task | None:
        if usage.flushed:
            return None
        task = asyncio.create_task(self._run(usage))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, usage: UsageAccumulator) -> None:
        try:
            await usage.flush(self._sink)
        except BillingError as e:
            logger.error("usage_flush_failed", organization_id=usage.organization_id, error=str(e))
        except Exception as e:
            logger.error("usage_flush_crashed", organization_id=usage.organization_id, error=str(e), exc_info=True)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight flushes, used on shutdown."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        if pending:
            logger.warning("usage_flush_drain_timeout", pending=len(pending))


flusher = BillingFlusher()
