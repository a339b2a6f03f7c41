"""Billing tasks - period aggregates, the billing run, dead-letter replay."""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone

import structlog
from celery import shared_task

logger = structlog.get_logger()


@asynccontextmanager
async def _task_sessions():
    """Session factory on a fresh engine; each task runs in its own event loop."""
    from sqlalchemy import pool
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from metering.config import get_settings

    engine = create_async_engine(get_settings().DATABASE_URL, poolclass=pool.NullPool)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


async def _build_aggregate(period: str) -> dict:
    from metering.billing.aggregate import build_aggregate

    async with _task_sessions() as sessions:
        async with sessions() as db:
            aggregate = await build_aggregate(db, period)
            await db.commit()
            return {"period": aggregate.billing_period, "entry_count": aggregate.entry_count}


async def _run_cycle(today: date) -> dict[str, int]:
    from metering.billing.allocator import run_billing_cycle as billing_cycle

    async with _task_sessions() as sessions:
        async with sessions() as db:
            summary = await billing_cycle(db, today)
            await db.commit()
            return summary


async def _replay() -> int:
    from metering.billing import pipeline

    try:
        async with _task_sessions() as sessions:
            return await pipeline.replay_dead_letters(session_factory=sessions)
    finally:
        await pipeline.close_redis()


@shared_task(
    bind=True,
    name="worker.tasks.billing.build_period_aggregate",
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def build_period_aggregate(self, period: str | None = None):
    """Build the usage aggregate for ``period`` (default: the month that just closed)."""
    from metering.billing.periods import current_period, previous_period

    period = period or previous_period(current_period())
    try:
        logger.info("aggregate_task_start", period=period)
        return asyncio.run(_build_aggregate(period))
    except Exception as exc:
        logger.error("aggregate_task_error", period=period, error=str(exc))
        raise self.retry(exc=exc)


@shared_task(
    bind=True,
    name="worker.tasks.billing.run_billing_cycle",
    max_retries=3,
    default_retry_delay=600,
    acks_late=True,
)
def run_billing_cycle(self, today: str | None = None):
    """Allocate and bill every period whose billing date has passed."""
    run_date = date.fromisoformat(today) if today else datetime.now(timezone.utc).date()
    try:
        summary = asyncio.run(_run_cycle(run_date))
        return {"status": "ok", "today": run_date.isoformat(), "billed": summary}
    except Exception as exc:
        logger.error("billing_cycle_task_error", today=run_date.isoformat(), error=str(exc))
        raise self.retry(exc=exc)


@shared_task(name="worker.tasks.billing.replay_dead_letters")
def replay_dead_letters():
    """Re-apply usage that could not be written at request time."""
    replayed = asyncio.run(_replay())
    return {"status": "ok", "replayed": replayed}
