"""Billing models - ledger entries, ledger lines, usage aggregates, subscriptions."""

import uuid
from datetime import date, datetime
from enum import StrEnum

from sqlalchemy import (
    Date, DateTime, Enum, Float, ForeignKey,
    Index, Integer, String, UniqueConstraint, func,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from metering.billing.fields import MeteredField
from metering.database import Base


class SubscriptionTier(StrEnum):
    FREEMIUM = "freemium"
    PREMIUM = "premium"


class BillingStatus(StrEnum):
    NOT_BILLED = "not_billed"
    BILLED = "billed"


class PaymentStatus(StrEnum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class LedgerEntry(Base):
    """One organization's usage and cost for one billing period and tier."""
    __tablename__ = "billing_ledger_entries"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    billing_id: Mapped[str] = mapped_column(String(32), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    billing_date: Mapped[date] = mapped_column(Date, nullable=False)
    subscription_tier: Mapped[SubscriptionTier] = mapped_column(Enum(SubscriptionTier, native_enum=False), nullable=False)
    billing_status: Mapped[BillingStatus] = mapped_column(Enum(BillingStatus, native_enum=False), default=BillingStatus.NOT_BILLED, nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus, native_enum=False), default=PaymentStatus.UNPAID, nullable=False)
    total_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    features_to_charge: Mapped[list] = mapped_column(JSONB, default=list, nullable=False)  # [{id, name, price}]
    features_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)  # sum of feature prices
    dollar_to_naira_rate: Mapped[float] = mapped_column(Float, default=0.0)
    dollar_to_pounds_rate: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    lines: Mapped[list["LedgerLine"]] = relationship(
        back_populates="entry", lazy="selectin", order_by="LedgerLine.field",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "billing_period", "subscription_tier", name="uq_ledger_org_period_tier"),
        UniqueConstraint("organization_id", "billing_id", name="uq_ledger_org_billing_id"),
        Index("ix_ledger_status_period", "billing_status", "billing_period"),
        Index("ix_ledger_payment_org", "payment_status", "organization_id"),
    )

    def line(self, field: MeteredField) -> "LedgerLine | None":
        for line in self.lines:
            if line.field == field:
                return line
        return None

    def values(self) -> dict[MeteredField, float]:
        return {MeteredField(line.field): line.value for line in self.lines}

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "organization_id": self.organization_id,
            "billing_id": self.billing_id,
            "billing_period": self.billing_period,
            "billing_date": self.billing_date.isoformat() if self.billing_date else None,
            "subscription_tier": self.subscription_tier,
            "billing_status": self.billing_status,
            "payment_status": self.payment_status,
            "total_cost": self.total_cost,
            "features_to_charge": list(self.features_to_charge or []),
            "features_cost": self.features_cost,
            "dollar_to_naira_rate": self.dollar_to_naira_rate,
            "dollar_to_pounds_rate": self.dollar_to_pounds_rate,
            "usage": {
                line.field: {"value": line.value, "cost_in_dollar": line.cost_in_dollar}
                for line in self.lines
            },
        }


class LedgerLine(Base):
    """Value and cost of a single metered field on a ledger entry."""
    __tablename__ = "ledger_lines"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entry_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("billing_ledger_entries.id", ondelete="RESTRICT"), nullable=False)
    field: Mapped[MeteredField] = mapped_column(Enum(MeteredField, native_enum=False, length=50), nullable=False)
    value: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    cost_in_dollar: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    entry: Mapped[LedgerEntry] = relationship(back_populates="lines")

    __table_args__ = (
        UniqueConstraint("entry_id", "field", name="uq_ledger_line_entry_field"),
    )


class UsageAggregate(Base):
    """Platform-wide usage totals for one billing period."""
    __tablename__ = "usage_aggregates"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False, unique=True)
    totals: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)  # field -> value
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def total(self, field: MeteredField) -> float | None:
        raw = (self.totals or {}).get(field.value)
        return None if raw is None else float(raw)


class Subscription(Base):
    """Organization subscription / billing plan."""
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    subscription_type: Mapped[SubscriptionTier] = mapped_column(Enum(SubscriptionTier, native_enum=False), default=SubscriptionTier.FREEMIUM)
    subscription_status: Mapped[SubscriptionStatus] = mapped_column(Enum(SubscriptionStatus, native_enum=False), default=SubscriptionStatus.ACTIVE)
    freemium_start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    freemium_end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    premium_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    premium_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
