"""Billing ledger - per organization, period and tier usage accumulation.

Ledger entries are never updated by read-modify-write. Usage lands through
field-level ``UPDATE ... SET value = value + :delta`` statements keyed by the
entry's natural key, and a new period's entry is created with
``INSERT ... ON CONFLICT DO NOTHING`` so concurrent first events resolve to a
single row.
"""

import secrets
import uuid
from typing import Iterable, Mapping, Any

import structlog
from sqlalchemy import Float, and_, cast, func, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.billing.aggregate import get_aggregate
from metering.billing.exceptions import (
    LedgerEntryNotFoundError, LedgerPersistenceError, LedgerValidationError,
)
from metering.billing.fields import STOCK_FIELDS, MeteredField, UsageDelta, merge_deltas
from metering.billing.models import (
    BillingStatus, LedgerEntry, LedgerLine, PaymentStatus, SubscriptionTier,
)
from metering.billing.periods import billing_date_for, current_period
from metering.billing.rates import snapshot_unit_rates
from metering.config import Settings, get_settings

logger = structlog.get_logger()


def generate_billing_id() -> str:
    return f"BILL-{secrets.token_hex(5).upper()}"


async def get_entry(
    db: AsyncSession,
    organization_id: str,
    period: str,
    tier: SubscriptionTier,
) -> LedgerEntry | None:
    result = await db.execute(
        select(LedgerEntry)
        .where(
            LedgerEntry.organization_id == organization_id,
            LedgerEntry.billing_period == period,
            LedgerEntry.subscription_tier == tier,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_entry_by_id(db: AsyncSession, entry_id: uuid.UUID) -> LedgerEntry:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.id == entry_id)
        .execution_options(populate_existing=True)
    )
    entry = result.scalar_one_or_none()
    if entry is None:
        raise LedgerEntryNotFoundError(entry_id)
    return entry


def prior_entry_query(organization_id: str, period: str, tier: SubscriptionTier):
    """Latest entry to carry stock from.

    An entry of another tier in the same period counts, so a mid-period
    tier change keeps the storage recorded before the switch.
    """
    return (
        select(LedgerEntry)
        .where(
            LedgerEntry.organization_id == organization_id,
            or_(
                LedgerEntry.billing_period < period,
                and_(LedgerEntry.billing_period == period, LedgerEntry.subscription_tier != tier),
            ),
        )
        .order_by(LedgerEntry.billing_period.desc(), LedgerEntry.created_at.desc())
        .limit(1)
    )


async def latest_prior_entry(
    db: AsyncSession,
    organization_id: str,
    period: str,
    tier: SubscriptionTier,
) -> LedgerEntry | None:
    result = await db.execute(prior_entry_query(organization_id, period, tier))
    return result.scalars().first()


def carried_stock(prior: LedgerEntry | None) -> dict[MeteredField, float]:
    """Stock values that survive into the next period; 0 without a prior entry."""
    carried = {field: 0.0 for field in STOCK_FIELDS}
    if prior is None:
        return carried
    for field in STOCK_FIELDS:
        line = prior.line(field)
        if line is not None:
            carried[field] = line.value
    return carried


def opening_lines(
    entry_id: uuid.UUID,
    carried: Mapping[MeteredField, float],
    rates: Mapping[MeteredField, float],
) -> list[dict[str, Any]]:
    """One line per metered field; stock fields opened at their carried value."""
    lines = []
    for field in MeteredField:
        value = carried.get(field, 0.0)
        lines.append({
            "id": uuid.uuid4(),
            "entry_id": entry_id,
            "field": field,
            "value": value,
            "cost_in_dollar": value * rates.get(field, 0.0),
        })
    return lines


async def create_for_period(
    db: AsyncSession,
    organization_id: str,
    period: str,
    tier: SubscriptionTier,
    settings: Settings | None = None,
) -> tuple[LedgerEntry, bool]:
    """Roll an organization over into ``period``.

    Returns ``(entry, created)``. When another writer created the entry first,
    the existing row is returned with ``created=False``.
    """
    if not organization_id or not period:
        raise LedgerValidationError(
            "Organisation and billing period are required to create a ledger entry",
            {"organization_id": organization_id, "period": period},
        )
    settings = settings or get_settings()

    prior = await latest_prior_entry(db, organization_id, period, tier)
    carried = carried_stock(prior)
    rates = snapshot_unit_rates(settings)

    entry_id = uuid.uuid4()
    lines = opening_lines(entry_id, carried, rates)
    opening_total = sum(line["cost_in_dollar"] for line in lines)

    insert_stmt = (
        pg_insert(LedgerEntry)
        .values(
            id=entry_id,
            organization_id=organization_id,
            billing_id=generate_billing_id(),
            billing_period=period,
            billing_date=billing_date_for(period, settings.BILLING_DAY_OF_MONTH),
            subscription_tier=tier,
            billing_status=BillingStatus.NOT_BILLED,
            payment_status=PaymentStatus.UNPAID,
            total_cost=opening_total,
            features_cost=0.0,
            features_to_charge=[],
            dollar_to_naira_rate=settings.DOLLAR_TO_NAIRA_RATE,
            dollar_to_pounds_rate=settings.DOLLAR_TO_POUNDS_RATE,
        )
        .on_conflict_do_nothing(constraint="uq_ledger_org_period_tier")
        .returning(LedgerEntry.id)
    )
    inserted_id = (await db.execute(insert_stmt)).scalar_one_or_none()

    if inserted_id is None:
        entry = await get_entry(db, organization_id, period, tier)
        if entry is None:
            raise LedgerPersistenceError(
                "Ledger entry vanished after a conflicting insert",
                {"organization_id": organization_id, "period": period},
            )
        logger.debug("ledger_entry_create_race_lost", organization_id=organization_id, period=period)
        return entry, False

    await db.execute(
        pg_insert(LedgerLine)
        .values(lines)
        .on_conflict_do_nothing(constraint="uq_ledger_line_entry_field")
    )
    entry = await get_entry_by_id(db, inserted_id)
    logger.info(
        "ledger_entry_created",
        organization_id=organization_id,
        period=period,
        tier=tier,
        carried_storage=carried[MeteredField.DATABASE_STORAGE_AND_BACKUP],
        carried_cloud_storage=carried[MeteredField.CLOUD_STORAGE_STORED],
    )
    return entry, True


async def get_or_create(
    db: AsyncSession,
    organization_id: str,
    period: str | None = None,
    tier: SubscriptionTier = SubscriptionTier.FREEMIUM,
    settings: Settings | None = None,
) -> tuple[LedgerEntry, bool]:
    period = period or current_period()
    entry = await get_entry(db, organization_id, period, tier)
    if entry is not None:
        return entry, False
    return await create_for_period(db, organization_id, period, tier, settings=settings)


def increment_statement(entry_id: uuid.UUID, field: MeteredField, amount: float, rate: float):
    """Atomic field-level increment. SET expressions see the pre-update row."""
    return (
        update(LedgerLine)
        .where(LedgerLine.entry_id == entry_id, LedgerLine.field == field)
        .values(
            value=LedgerLine.value + amount,
            cost_in_dollar=(LedgerLine.value + amount) * rate,
        )
    )


def lock_open_entry_statement(entry_id: uuid.UUID):
    """Row lock on the entry, matching only while it is still unbilled."""
    return (
        select(LedgerEntry.id)
        .where(LedgerEntry.id == entry_id, LedgerEntry.billing_status == BillingStatus.NOT_BILLED)
        .with_for_update()
    )


def refresh_total_statement(entry_id: uuid.UUID, include_features: bool = True):
    lines_total = (
        select(func.coalesce(func.sum(LedgerLine.cost_in_dollar), 0.0))
        .where(LedgerLine.entry_id == entry_id)
        .scalar_subquery()
    )
    total = lines_total + LedgerEntry.features_cost if include_features else lines_total
    return (
        update(LedgerEntry)
        .where(LedgerEntry.id == entry_id, LedgerEntry.billing_status == BillingStatus.NOT_BILLED)
        .values(total_cost=total)
    )


async def apply_to_entry(
    db: AsyncSession,
    entry: LedgerEntry,
    deltas: Iterable[UsageDelta | Mapping[str, Any]],
    settings: Settings | None = None,
) -> dict[MeteredField, float]:
    """Increment ``entry`` by ``deltas`` and refresh its total.

    The entry row is locked first, then its lines are updated in field
    order. A billed entry is left untouched.
    Returns the merged per-field totals that were written.
    """
    settings = settings or get_settings()
    totals = merge_deltas(UsageDelta.coerce(d) for d in deltas)
    rates = snapshot_unit_rates(settings)
    include_features = entry.organization_id != settings.PLATFORM_OWNER_ORG_ID

    try:
        locked = await db.execute(lock_open_entry_statement(entry.id))
        if locked.scalar_one_or_none() is None:
            raise LedgerPersistenceError(
                "Ledger entry is already billed",
                {"organization_id": entry.organization_id, "period": entry.billing_period},
            )
        for field, amount in sorted(totals.items()):
            if amount == 0:
                continue
            await db.execute(increment_statement(entry.id, field, amount, rates[field]))
        await db.execute(refresh_total_statement(entry.id, include_features=include_features))
    except SQLAlchemyError as exc:
        raise LedgerPersistenceError(
            "Failed to update organisation ledger entry",
            {"organization_id": entry.organization_id, "period": entry.billing_period, "error": str(exc)},
        ) from exc
    return totals


async def apply(
    db: AsyncSession,
    organization_id: str,
    deltas: Iterable[UsageDelta | Mapping[str, Any]],
    *,
    tier: SubscriptionTier = SubscriptionTier.FREEMIUM,
    period: str | None = None,
    is_meta: bool = False,
    settings: Settings | None = None,
) -> LedgerEntry:
    """Accumulate ``deltas`` on the organization's entry for ``period``.

    A regular apply also bills the platform owner for the ledger work it
    caused. ``is_meta=True`` marks the owner's own self-billing write, which
    must not trigger another round. Usage for a period that has already been
    billed lands on the open period instead. The caller owns the transaction.
    """
    settings = settings or get_settings()
    open_period = current_period()
    period = period or open_period

    if period != open_period and await get_aggregate(db, period) is not None:
        logger.warning(
            "usage_moved_to_open_period",
            organization_id=organization_id,
            from_period=period,
            to_period=open_period,
        )
        period = open_period

    entry, created = await get_or_create(db, organization_id, period, tier, settings=settings)
    await apply_to_entry(db, entry, deltas, settings=settings)

    if not is_meta:
        from metering.billing import self_billing

        await self_billing.apply(
            db,
            self_billing.overhead_deltas(created, entry, settings),
            period=period,
            settings=settings,
        )

    return await get_entry_by_id(db, entry.id)


async def add_feature_charge(
    db: AsyncSession,
    organization_id: str,
    feature: Mapping[str, Any],
    *,
    tier: SubscriptionTier = SubscriptionTier.PREMIUM,
    period: str | None = None,
    settings: Settings | None = None,
) -> LedgerEntry:
    """Append a flat-rate add-on ``{id, name, price}`` to the current entry."""
    settings = settings or get_settings()
    charge = {
        "id": str(feature.get("id") or uuid.uuid4()),
        "name": str(feature["name"]),
        "price": float(feature.get("price") or 0),
    }
    entry, _ = await get_or_create(db, organization_id, period, tier, settings=settings)
    await db.execute(
        update(LedgerEntry)
        .where(LedgerEntry.id == entry.id)
        .values(
            features_to_charge=LedgerEntry.features_to_charge.op("||", return_type=JSONB)(cast([charge], JSONB)),
            features_cost=LedgerEntry.features_cost + cast(charge["price"], Float),
        )
    )
    include_features = organization_id != settings.PLATFORM_OWNER_ORG_ID
    await db.execute(refresh_total_statement(entry.id, include_features=include_features))
    logger.info("feature_charge_added", organization_id=organization_id, feature=charge["name"], price=charge["price"])
    return await get_entry_by_id(db, entry.id)


async def set_payment_status(
    db: AsyncSession,
    entry_id: uuid.UUID,
    status: PaymentStatus,
) -> LedgerEntry:
    result = await db.execute(
        update(LedgerEntry)
        .where(LedgerEntry.id == entry_id)
        .values(payment_status=status)
        .returning(LedgerEntry.id)
    )
    if result.scalar_one_or_none() is None:
        raise LedgerEntryNotFoundError(entry_id)
    logger.info("payment_status_updated", entry_id=str(entry_id), status=status)
    return await get_entry_by_id(db, entry_id)


async def list_entries(
    db: AsyncSession,
    organization_id: str | None = None,
    *,
    billing_status: BillingStatus | None = None,
    limit: int = 12,
) -> list[LedgerEntry]:
    """Newest first. ``organization_id=None`` lists every organization."""
    query = select(LedgerEntry).order_by(LedgerEntry.billing_period.desc(), LedgerEntry.created_at.desc())
    if organization_id is not None:
        query = query.where(LedgerEntry.organization_id == organization_id)
    if billing_status is not None:
        query = query.where(LedgerEntry.billing_status == billing_status)
    result = await db.execute(query.limit(limit))
    return list(result.scalars().all())
