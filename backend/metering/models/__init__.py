"""SQLAlchemy models - import all for Alembic auto-detection."""

from metering.database import Base
from metering.billing.models import (
    LedgerEntry, LedgerLine, UsageAggregate, Subscription,
    SubscriptionTier, BillingStatus, PaymentStatus, SubscriptionStatus,
)

__all__ = [
    "Base",
    "LedgerEntry", "LedgerLine", "UsageAggregate", "Subscription",
    "SubscriptionTier", "BillingStatus", "PaymentStatus", "SubscriptionStatus",
]
