"""Retroactive cost allocation for an unbilled period.

Each organization pays the share of the platform's monthly cost for a field
that matches its share of the platform-wide usage of that field. The base
service cost is split evenly across every entry of the period.
"""

from dataclasses import dataclass, field as dc_field
from datetime import date, datetime, timezone
from typing import Mapping

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metering.billing.aggregate import build_aggregate, get_aggregate
from metering.billing.exceptions import AggregateMissingError
from metering.billing.fields import USAGE_FIELDS, MeteredField
from metering.billing.models import BillingStatus, LedgerEntry, LedgerLine
from metering.billing.rates import platform_cost
from metering.config import Settings, get_settings

logger = structlog.get_logger()


@dataclass
class Allocation:
    costs: dict[MeteredField, float] = dc_field(default_factory=dict)
    total_cost: float = 0.0


def compute_allocation(
    values: Mapping[MeteredField, float],
    current_costs: Mapping[MeteredField, float],
    aggregate_totals: Mapping[MeteredField, float | None],
    platform_costs: Mapping[MeteredField, float],
    base_cost: float,
    entry_count: int,
    features_cost: float = 0.0,
) -> Allocation:
    """Allocate one entry's share of the period's platform cost.

    Fields missing from the entry or the aggregate keep their accumulated
    cost. ``features_cost`` should already be 0 for the platform owner.
    """
    allocation = Allocation()
    for field in MeteredField:
        if field == MeteredField.BASE_SERVICE_COST:
            allocation.costs[field] = base_cost / entry_count if entry_count > 0 else 0.0
            continue

        aggregate_value = aggregate_totals.get(field)
        if field not in USAGE_FIELDS or field not in values or aggregate_value is None:
            if field in current_costs:
                allocation.costs[field] = current_costs[field]
            continue

        percentage = 0.0 if aggregate_value == 0 else values[field] / aggregate_value
        allocation.costs[field] = percentage * platform_costs.get(field, 0.0)

    allocation.total_cost = sum(allocation.costs.values()) + features_cost
    return allocation


async def allocate(
    db: AsyncSession,
    period: str,
    settings: Settings | None = None,
) -> list[LedgerEntry]:
    """Recalculate and bill every unbilled entry of ``period``.

    Entries locked by a concurrent allocation are skipped, so each entry is
    billed at most once. The caller commits.
    """
    settings = settings or get_settings()
    aggregate = await get_aggregate(db, period)
    if aggregate is None:
        raise AggregateMissingError(period)

    result = await db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.billing_period == period,
            LedgerEntry.billing_status == BillingStatus.NOT_BILLED,
        )
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    entries = list(result.scalars().all())
    if not entries:
        logger.info("allocation_nothing_to_bill", period=period)
        return []

    aggregate_totals = {field: aggregate.total(field) for field in MeteredField}
    platform_costs = {field: platform_cost(field, period, settings) for field in MeteredField}
    base_cost = platform_costs[MeteredField.BASE_SERVICE_COST]
    entry_count = aggregate.entry_count or len(entries)

    billed = []
    for entry in entries:
        is_owner = entry.organization_id == settings.PLATFORM_OWNER_ORG_ID
        allocation = compute_allocation(
            values=entry.values(),
            current_costs={MeteredField(line.field): line.cost_in_dollar for line in entry.lines},
            aggregate_totals=aggregate_totals,
            platform_costs=platform_costs,
            base_cost=base_cost,
            entry_count=entry_count,
            features_cost=0.0 if is_owner else entry.features_cost,
        )

        for field, cost in allocation.costs.items():
            await db.execute(
                update(LedgerLine)
                .where(LedgerLine.entry_id == entry.id, LedgerLine.field == field)
                .values(cost_in_dollar=cost)
            )
        await db.execute(
            update(LedgerEntry)
            .where(LedgerEntry.id == entry.id)
            .values(total_cost=allocation.total_cost, billing_status=BillingStatus.BILLED)
        )
        entry.total_cost = allocation.total_cost
        entry.billing_status = BillingStatus.BILLED
        billed.append(entry)

        logger.info(
            "ledger_entry_allocated",
            organization_id=entry.organization_id,
            period=period,
            total_cost=round(allocation.total_cost, 6),
        )

    logger.info("allocation_complete", period=period, billed=len(billed), entry_count=entry_count)
    return billed


async def due_periods(db: AsyncSession, today: date) -> list[str]:
    """Periods with unbilled entries whose billing date has arrived."""
    result = await db.execute(
        select(LedgerEntry.billing_period)
        .where(
            LedgerEntry.billing_status == BillingStatus.NOT_BILLED,
            LedgerEntry.billing_date <= today,
        )
        .distinct()
        .order_by(LedgerEntry.billing_period)
    )
    return [row[0] for row in result.all()]


async def run_billing_cycle(
    db: AsyncSession,
    today: date | None = None,
    settings: Settings | None = None,
) -> dict[str, int]:
    """Scheduled billing run. Returns the number of entries billed per period."""
    settings = settings or get_settings()
    today = today or datetime.now(timezone.utc).date()

    summary: dict[str, int] = {}
    for period in await due_periods(db, today):
        await build_aggregate(db, period)
        billed = await allocate(db, period, settings=settings)
        summary[period] = len(billed)

    logger.info("billing_cycle_complete", today=today.isoformat(), periods=summary)
    return summary
