"""Subscription lifecycle: freemium trial, premium upgrade, cancellation.

Functions mutate the ORM object; the caller commits.
"""

from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from metering.billing.exceptions import SubscriptionNotFoundError
from metering.billing.models import Subscription, SubscriptionStatus, SubscriptionTier
from metering.billing.notifications import notify_owner
from metering.config import get_settings

logger = structlog.get_logger()


async def get_subscription(db: AsyncSession, organization_id: str) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(Subscription.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def require_subscription(db: AsyncSession, organization_id: str) -> Subscription:
    subscription = await get_subscription(db, organization_id)
    if subscription is None:
        raise SubscriptionNotFoundError(organization_id)
    return subscription


async def start_freemium(
    db: AsyncSession,
    organization_id: str,
    now: datetime | None = None,
) -> Subscription:
    """Open a freemium trial; an existing subscription is returned unchanged."""
    existing = await get_subscription(db, organization_id)
    if existing is not None:
        return existing

    now = now or datetime.now(timezone.utc)
    subscription = Subscription(
        organization_id=organization_id,
        subscription_type=SubscriptionTier.FREEMIUM,
        subscription_status=SubscriptionStatus.ACTIVE,
        freemium_start_date=now,
        freemium_end_date=now + timedelta(days=get_settings().FREEMIUM_TRIAL_DAYS),
    )
    db.add(subscription)
    await db.flush()
    logger.info("freemium_started", organization_id=organization_id)
    return subscription


async def upgrade_to_premium(
    db: AsyncSession,
    organization_id: str,
    now: datetime | None = None,
) -> Subscription:
    subscription = await get_subscription(db, organization_id)
    if subscription is None:
        notify_owner(
            "Premium subscription upgrade failed",
            "An organisation tried to upgrade to premium but has no subscription.",
            organization_id=organization_id,
        )
        raise SubscriptionNotFoundError(organization_id)

    subscription.subscription_type = SubscriptionTier.PREMIUM
    subscription.subscription_status = SubscriptionStatus.ACTIVE
    subscription.premium_start_date = now or datetime.now(timezone.utc)
    subscription.premium_end_date = None

    logger.info("premium_upgraded", organization_id=organization_id)
    notify_owner("Premium subscription upgrade", "An organisation upgraded to premium.", organization_id=organization_id)
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    organization_id: str,
    now: datetime | None = None,
) -> Subscription:
    """Deactivate the subscription. Usage before today is still billed."""
    subscription = await get_subscription(db, organization_id)
    if subscription is None:
        notify_owner(
            "Premium subscription cancellation failed",
            "An organisation tried to cancel but has no subscription.",
            organization_id=organization_id,
        )
        raise SubscriptionNotFoundError(organization_id)

    subscription.premium_end_date = now or datetime.now(timezone.utc)
    subscription.subscription_status = SubscriptionStatus.INACTIVE

    logger.info("subscription_cancelled", organization_id=organization_id)
    notify_owner("Premium subscription cancellation", "An organisation cancelled its subscription.", organization_id=organization_id)
    return subscription
