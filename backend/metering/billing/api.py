"""Billing API endpoints.

Only registered when BILLING_ENABLED=true.
"""

import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from metering.billing import allocator, ledger, subscriptions
from metering.billing.accumulator import UsageAccumulator
from metering.billing.aggregate import build_aggregate
from metering.billing.fields import MeteredField, object_size
from metering.billing.gate import GateDecision, evaluate, require_billing_clearance
from metering.billing.models import BillingStatus
from metering.billing.periods import current_period, parse_period
from metering.billing.pipeline import resolve_tier
from metering.config import get_settings
from metering.database import get_db
from metering.dependencies import (
    get_organization_id, get_usage,
    require_owner_aggregate, require_owner_billing_run, require_owner_payment,
)
from metering.schemas.billing import (
    AggregateOut, BillingRunOut, FeatureCharge, LedgerEntryOut,
    PaymentStatusUpdate, SubscriptionOut,
)

router = APIRouter(prefix="/billing", tags=["billing"])


def _meter_read(usage: UsageAccumulator, operations: int, *payload) -> None:
    usage.record([
        {"field": MeteredField.DATABASE_OPERATIONS, "value": operations},
        {"field": MeteredField.DATABASE_DATA_TRANSFER, "value": object_size(list(payload))},
    ])


@router.get("/current", response_model=LedgerEntryOut)
async def get_current_entry(
    organization_id: str = Depends(get_organization_id),
    usage: UsageAccumulator = Depends(get_usage),
    db: AsyncSession = Depends(get_db),
):
    """Ledger entry for the running billing period."""
    tier = await resolve_tier(db, organization_id)
    entry = await ledger.get_entry(db, organization_id, current_period(), tier)
    if entry is None:
        raise HTTPException(status_code=404, detail="No usage recorded for this billing period yet")
    _meter_read(usage, 2, entry.to_dict())
    return entry


@router.get("/history", response_model=list[LedgerEntryOut])
async def get_history(
    limit: int = Query(default=12, ge=1, le=120),
    all_organizations: bool = False,
    billing_status: BillingStatus | None = None,
    organization_id: str = Depends(get_organization_id),
    usage: UsageAccumulator = Depends(get_usage),
    db: AsyncSession = Depends(get_db),
):
    """Ledger history, newest first. The platform owner may list every organisation."""
    is_owner = organization_id == get_settings().PLATFORM_OWNER_ORG_ID
    scope = None if (all_organizations and is_owner) else organization_id
    entries = await ledger.list_entries(db, scope, billing_status=billing_status, limit=limit)
    _meter_read(usage, 1, [e.to_dict() for e in entries])
    return entries


@router.get("/gate")
async def get_gate_state(
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
):
    """Current gate decision without enforcing it."""
    decision = await evaluate(db, organization_id)
    return {
        "allowed": decision.allowed,
        "state": decision.state,
        "status_code": decision.status_code,
        "message": decision.message,
    }


@router.get("/subscription", response_model=SubscriptionOut)
async def get_subscription(
    organization_id: str = Depends(get_organization_id),
    usage: UsageAccumulator = Depends(get_usage),
    db: AsyncSession = Depends(get_db),
):
    subscription = await subscriptions.require_subscription(db, organization_id)
    _meter_read(usage, 1, SubscriptionOut.model_validate(subscription).model_dump(mode="json"))
    return subscription


@router.post("/subscription", response_model=SubscriptionOut, status_code=201)
async def start_trial(
    organization_id: str = Depends(get_organization_id),
    usage: UsageAccumulator = Depends(get_usage),
    db: AsyncSession = Depends(get_db),
):
    """Open a freemium trial for the organisation."""
    subscription = await subscriptions.start_freemium(db, organization_id)
    await db.commit()
    _meter_read(usage, 2, SubscriptionOut.model_validate(subscription).model_dump(mode="json"))
    return subscription


@router.post("/subscription/upgrade", response_model=SubscriptionOut)
async def upgrade_subscription(
    organization_id: str = Depends(get_organization_id),
    usage: UsageAccumulator = Depends(get_usage),
    db: AsyncSession = Depends(get_db),
):
    subscription = await subscriptions.upgrade_to_premium(db, organization_id)
    await db.commit()
    _meter_read(usage, 2, SubscriptionOut.model_validate(subscription).model_dump(mode="json"))
    return subscription


@router.post("/subscription/cancel", response_model=SubscriptionOut)
async def cancel_subscription(
    organization_id: str = Depends(get_organization_id),
    usage: UsageAccumulator = Depends(get_usage),
    db: AsyncSession = Depends(get_db),
):
    """Cancel the subscription. Usage up to today is still billed."""
    subscription = await subscriptions.cancel_subscription(db, organization_id)
    await db.commit()
    _meter_read(usage, 2, SubscriptionOut.model_validate(subscription).model_dump(mode="json"))
    return subscription


@router.post("/features", response_model=LedgerEntryOut)
async def charge_feature(
    feature: FeatureCharge,
    organization_id: str = Depends(get_organization_id),
    decision: GateDecision = Depends(require_billing_clearance),
    usage: UsageAccumulator = Depends(get_usage),
    db: AsyncSession = Depends(get_db),
):
    """Add a flat-rate feature to this period's bill."""
    tier = await resolve_tier(db, organization_id)
    entry = await ledger.add_feature_charge(db, organization_id, feature.model_dump(), tier=tier)
    await db.commit()
    _meter_read(usage, 3, entry.to_dict())
    return entry


# ── Platform owner ─────────────────────────────────────────


@router.post("/run", response_model=BillingRunOut)
async def run_billing(
    today: date | None = None,
    _owner: str = Depends(require_owner_billing_run),
    db: AsyncSession = Depends(get_db),
):
    """Bill every period whose billing date has passed."""
    today = today or date.today()
    billed = await allocator.run_billing_cycle(db, today)
    await db.commit()
    return {"today": today, "billed": billed}


@router.post("/aggregates/{period}", response_model=AggregateOut)
async def create_aggregate(
    period: str,
    _owner: str = Depends(require_owner_aggregate),
    db: AsyncSession = Depends(get_db),
):
    try:
        parse_period(period)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    aggregate = await build_aggregate(db, period)
    await db.commit()
    return aggregate


@router.patch("/entries/{entry_id}/payment", response_model=LedgerEntryOut)
async def update_payment_status(
    entry_id: uuid.UUID,
    body: PaymentStatusUpdate,
    _owner: str = Depends(require_owner_payment),
    db: AsyncSession = Depends(get_db),
):
    entry = await ledger.set_payment_status(db, entry_id, body.payment_status)
    await db.commit()
    return entry
