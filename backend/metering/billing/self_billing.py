"""Self-billing account - the platform owner pays for the metering overhead.

Every organization ledger write is followed by one write to the owner's entry
for the same period. That write is applied with ``is_meta=True`` so it never
bills itself again; the cost of the owner's own write is folded in as fixed
overhead instead.
"""

from typing import Iterable, Mapping, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from metering.billing import ledger
from metering.billing.fields import MeteredField, UsageDelta, object_size
from metering.billing.models import LedgerEntry, SubscriptionTier
from metering.config import Settings, get_settings

logger = structlog.get_logger()

OWNER_TIER = SubscriptionTier.PREMIUM


def overhead_deltas(
    created: bool,
    entry: LedgerEntry | None,
    settings: Settings | None = None,
) -> list[UsageDelta]:
    """Estimated cost of one ledger write.

    A fixed number of database operations, more when the write had to roll
    an entry over, plus storage and transfer for a freshly created entry.
    """
    settings = settings or get_settings()
    operations = settings.SELF_BILLING_BASE_OPERATIONS
    if created:
        operations += settings.SELF_BILLING_ROLLOVER_OPERATIONS
    deltas = [UsageDelta(MeteredField.DATABASE_OPERATIONS, float(operations))]

    if created and entry is not None:
        size = object_size(entry.to_dict())
        deltas.append(UsageDelta(MeteredField.DATABASE_STORAGE_AND_BACKUP, size * settings.STORAGE_REPLICATION_FACTOR))
        deltas.append(UsageDelta(MeteredField.DATABASE_DATA_TRANSFER, size))
    return deltas


async def apply(
    db: AsyncSession,
    deltas: Iterable[UsageDelta | Mapping[str, Any]],
    *,
    period: str | None = None,
    settings: Settings | None = None,
) -> LedgerEntry:
    """Credit ``deltas`` plus the cost of this write to the owner's entry."""
    settings = settings or get_settings()
    owner_id = settings.PLATFORM_OWNER_ORG_ID

    entry, created = await ledger.get_or_create(db, owner_id, period, OWNER_TIER, settings=settings)
    combined = [*deltas, *overhead_deltas(created, entry, settings)]
    if created:
        logger.info("self_billing_entry_created", organization_id=owner_id, period=entry.billing_period)

    return await ledger.apply(
        db, owner_id, combined,
        tier=OWNER_TIER,
        period=entry.billing_period,
        is_meta=True,
        settings=settings,
    )
