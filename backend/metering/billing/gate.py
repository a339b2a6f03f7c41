"""Subscription gate - may this organization use metered functionality now?

Evaluated per gated request from the subscription record, the previous
period's premium ledger entry and that period's usage aggregate. An unbilled
previous period that is past due is recalculated on the spot and the request
is refused so the user sees the new bill before continuing.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum

import structlog
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from metering.billing import allocator, ledger
from metering.billing.aggregate import get_aggregate
from metering.billing.exceptions import GateDeniedError
from metering.billing.models import (
    BillingStatus, PaymentStatus, SubscriptionStatus, SubscriptionTier,
)
from metering.billing.notifications import notify_owner
from metering.billing.periods import current_period, end_of_day, is_expired, period_end, previous_period
from metering.billing.subscriptions import get_subscription
from metering.config import Settings, get_settings
from metering.database import get_db
from metering.dependencies import get_organization_id

logger = structlog.get_logger()


class GateState(StrEnum):
    BYPASSED = "bypassed"
    NO_SUBSCRIPTION = "no_subscription"
    FREEMIUM_ACTIVE = "freemium_active"
    FREEMIUM_EXPIRED = "freemium_expired"
    PREMIUM_GRACED = "premium_graced"
    PREMIUM_NEEDS_BILLING = "premium_needs_billing"
    PREMIUM_UNPAID = "premium_unpaid"
    PREMIUM_CLEAR = "premium_clear"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    state: GateState
    status_code: int = 200
    message: str = ""

    @classmethod
    def proceed(cls, state: GateState) -> "GateDecision":
        return cls(allowed=True, state=state)

    @classmethod
    def deny(cls, state: GateState, status_code: int, message: str) -> "GateDecision":
        return cls(allowed=False, state=state, status_code=status_code, message=message)


def covers_period(freemium_end: datetime | None, period: str) -> bool:
    """True when the freemium window lasts through the end of ``period``."""
    if freemium_end is None:
        return False
    return not is_expired(freemium_end, end_of_day(period_end(period)))


async def evaluate(
    db: AsyncSession,
    organization_id: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> GateDecision:
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)

    if organization_id == settings.PLATFORM_OWNER_ORG_ID:
        return GateDecision.proceed(GateState.BYPASSED)

    subscription = await get_subscription(db, organization_id)
    if subscription is None or subscription.subscription_status != SubscriptionStatus.ACTIVE:
        notify_owner(
            "Subscription not found",
            "A request was refused because the organisation has no active subscription.",
            organization_id=organization_id,
        )
        return GateDecision.deny(
            GateState.NO_SUBSCRIPTION, 403,
            "No active subscription found for this organisation - please contact support",
        )

    if subscription.subscription_type == SubscriptionTier.FREEMIUM:
        if not is_expired(subscription.freemium_end_date, now):
            return GateDecision.proceed(GateState.FREEMIUM_ACTIVE)
        return GateDecision.deny(
            GateState.FREEMIUM_EXPIRED, 402,
            "Your free trial has ended - visit billing to upgrade to premium",
        )

    previous = previous_period(current_period(now))
    if covers_period(subscription.freemium_end_date, previous):
        return GateDecision.proceed(GateState.PREMIUM_GRACED)

    entry = await ledger.get_entry(db, organization_id, previous, SubscriptionTier.PREMIUM)
    if entry is None:
        return GateDecision.proceed(GateState.PREMIUM_CLEAR)

    if entry.billing_status == BillingStatus.NOT_BILLED:
        if now.date() <= entry.billing_date:
            return GateDecision.proceed(GateState.PREMIUM_CLEAR)
        return await _bill_overdue_period(db, organization_id, previous, settings)

    if entry.payment_status != PaymentStatus.PAID:
        return GateDecision.deny(
            GateState.PREMIUM_UNPAID, 402,
            f"Your bill for {previous} is unpaid - visit billing to complete payment",
        )

    return GateDecision.proceed(GateState.PREMIUM_CLEAR)


async def _bill_overdue_period(
    db: AsyncSession,
    organization_id: str,
    period: str,
    settings: Settings,
) -> GateDecision:
    aggregate = await get_aggregate(db, period)
    if aggregate is None:
        logger.error("usage_aggregate_missing", organization_id=organization_id, period=period)
        notify_owner(
            "Usage aggregate missing",
            f"Billing for {period} could not be recalculated because its usage aggregate is missing.",
            organization_id=organization_id,
            period=period,
        )
        return GateDecision.deny(
            GateState.PREMIUM_NEEDS_BILLING, 503,
            f"Billing for {period} is delayed - please try again later or contact support",
        )

    await allocator.allocate(db, period, settings=settings)
    await db.commit()
    logger.info("overdue_period_recalculated", organization_id=organization_id, period=period)
    return GateDecision.deny(
        GateState.PREMIUM_NEEDS_BILLING, 402,
        f"Your bill for {period} has been recalculated - please visit billing to pay it",
    )


async def require_billing_clearance(
    organization_id: str = Depends(get_organization_id),
    db: AsyncSession = Depends(get_db),
) -> GateDecision:
    """Dependency for routes that use metered functionality."""
    if not get_settings().BILLING_GATE_ENABLED:
        return GateDecision.proceed(GateState.BYPASSED)

    decision = await evaluate(db, organization_id)
    if not decision.allowed:
        logger.info("billing_gate_denied", organization_id=organization_id, state=decision.state)
        raise GateDeniedError(decision.message, decision.state, decision.status_code)
    return decision
