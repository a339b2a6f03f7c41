"""Platform-wide usage aggregate per billing period.

The aggregate is the denominator of retroactive allocation. It is built once
per period and never rewritten.
"""

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from metering.billing.fields import MeteredField
from metering.billing.models import LedgerEntry, LedgerLine, UsageAggregate

logger = structlog.get_logger()


async def get_aggregate(db: AsyncSession, period: str) -> UsageAggregate | None:
    result = await db.execute(
        select(UsageAggregate).where(UsageAggregate.billing_period == period)
    )
    return result.scalar_one_or_none()


async def sum_period_usage(db: AsyncSession, period: str) -> dict[str, float]:
    result = await db.execute(
        select(LedgerLine.field, func.coalesce(func.sum(LedgerLine.value), 0.0))
        .join(LedgerEntry, LedgerEntry.id == LedgerLine.entry_id)
        .where(LedgerEntry.billing_period == period)
        .group_by(LedgerLine.field)
    )
    return {MeteredField(field).value: float(total) for field, total in result.all()}


async def count_period_entries(db: AsyncSession, period: str) -> int:
    result = await db.execute(
        select(func.count(LedgerEntry.id)).where(LedgerEntry.billing_period == period)
    )
    return int(result.scalar_one() or 0)


async def build_aggregate(db: AsyncSession, period: str) -> UsageAggregate:
    """Sum every organization's usage for ``period``; build-if-absent."""
    existing = await get_aggregate(db, period)
    if existing is not None:
        return existing

    totals = await sum_period_usage(db, period)
    entry_count = await count_period_entries(db, period)

    await db.execute(
        pg_insert(UsageAggregate)
        .values(billing_period=period, totals=totals, entry_count=entry_count)
        .on_conflict_do_nothing(index_elements=["billing_period"])
    )
    aggregate = await get_aggregate(db, period)
    logger.info("usage_aggregate_built", period=period, entry_count=entry_count, fields=len(totals))
    return aggregate
