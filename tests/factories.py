"""
Shared test helpers: in-memory ledger objects and a scripted async session.

The scripted session stands in for AsyncSession: every ``execute`` call is
recorded and answered with the next queued result.
"""

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from sqlalchemy.dialects import postgresql  # noqa: E402

from metering.billing.fields import MeteredField  # noqa: E402
from metering.billing.models import (  # noqa: E402
    BillingStatus, LedgerEntry, LedgerLine, PaymentStatus, Subscription,
    SubscriptionStatus, SubscriptionTier, UsageAggregate,
)
from metering.billing.periods import billing_date_for  # noqa: E402


class _Scalars:
    def __init__(self, items):
        self._items = list(items)

    def all(self):
        return list(self._items)

    def first(self):
        return self._items[0] if self._items else None


class FakeResult:
    """Minimal stand-in for a SQLAlchemy Result."""

    def __init__(self, scalar=None, items=None, rows=None):
        self._scalar = scalar
        self._items = items if items is not None else ([scalar] if scalar is not None else [])
        self._rows = rows or []

    def scalar_one_or_none(self):
        return self._scalar

    def scalar_one(self):
        return self._scalar

    def scalars(self):
        return _Scalars(self._items)

    def all(self):
        return list(self._rows)


class ScriptedSession:
    """Records executed statements and replays queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.statements = []
        self.commit = AsyncMock()
        self.rollback = AsyncMock()
        self.flush = AsyncMock()
        self.add = MagicMock()

    async def execute(self, statement, *args, **kwargs):
        self.statements.append(statement)
        if not self.results:
            return FakeResult()
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def sql(self, index: int) -> str:
        return str(self.statements[index].compile(dialect=postgresql.dialect()))


def make_entry(
    organization_id: str = "org-1",
    period: str = "2026-09",
    tier: SubscriptionTier = SubscriptionTier.PREMIUM,
    values: dict | None = None,
    costs: dict | None = None,
    billing_status: BillingStatus = BillingStatus.NOT_BILLED,
    payment_status: PaymentStatus = PaymentStatus.UNPAID,
    features: list | None = None,
) -> LedgerEntry:
    values = values or {}
    costs = costs or {}
    features = features or []
    entry = LedgerEntry(
        id=uuid.uuid4(),
        organization_id=organization_id,
        billing_id="BILL-TEST000001",
        billing_period=period,
        billing_date=billing_date_for(period, 5),
        subscription_tier=tier,
        billing_status=billing_status,
        payment_status=payment_status,
        total_cost=0.0,
        features_to_charge=features,
        features_cost=sum(f["price"] for f in features),
        dollar_to_naira_rate=0.0,
        dollar_to_pounds_rate=0.0,
    )
    entry.lines = [
        LedgerLine(
            id=uuid.uuid4(),
            entry_id=entry.id,
            field=field,
            value=values.get(field, 0.0),
            cost_in_dollar=costs.get(field, 0.0),
        )
        for field in MeteredField
    ]
    return entry


def make_aggregate(period: str = "2026-09", totals: dict | None = None, entry_count: int = 1) -> UsageAggregate:
    return UsageAggregate(
        id=uuid.uuid4(),
        billing_period=period,
        totals={MeteredField(k).value: v for k, v in (totals or {}).items()},
        entry_count=entry_count,
    )


def make_subscription(
    organization_id: str = "org-1",
    tier: SubscriptionTier = SubscriptionTier.PREMIUM,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    freemium_end: datetime | None = None,
) -> Subscription:
    freemium_end = freemium_end or datetime(2026, 8, 1, tzinfo=timezone.utc)
    return Subscription(
        id=uuid.uuid4(),
        organization_id=organization_id,
        subscription_type=tier,
        subscription_status=status,
        freemium_start_date=freemium_end - timedelta(days=30),
        freemium_end_date=freemium_end,
    )
