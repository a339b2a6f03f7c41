"""Billing schemas."""

import uuid
from datetime import date, datetime
from pydantic import BaseModel, Field

from metering.billing.fields import MeteredField
from metering.billing.models import (
    BillingStatus, PaymentStatus, SubscriptionStatus, SubscriptionTier,
)


class LedgerLineOut(BaseModel):
    field: MeteredField
    value: float
    cost_in_dollar: float

    model_config = {"from_attributes": True}


class FeatureCharge(BaseModel):
    id: str | None = None
    name: str = Field(min_length=1, max_length=120)
    price: float = Field(ge=0)


class LedgerEntryOut(BaseModel):
    id: uuid.UUID
    organization_id: str
    billing_id: str
    billing_period: str
    billing_date: date
    subscription_tier: SubscriptionTier
    billing_status: BillingStatus
    payment_status: PaymentStatus
    total_cost: float
    features_to_charge: list[FeatureCharge] = []
    dollar_to_naira_rate: float
    dollar_to_pounds_rate: float
    lines: list[LedgerLineOut] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class SubscriptionOut(BaseModel):
    id: uuid.UUID
    organization_id: str
    subscription_type: SubscriptionTier
    subscription_status: SubscriptionStatus
    freemium_start_date: datetime
    freemium_end_date: datetime
    premium_start_date: datetime | None
    premium_end_date: datetime | None

    model_config = {"from_attributes": True}


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class AggregateOut(BaseModel):
    billing_period: str
    totals: dict[str, float]
    entry_count: int

    model_config = {"from_attributes": True}


class BillingRunOut(BaseModel):
    today: date
    billed: dict[str, int]
