"""Pydantic schemas for subscriptions."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: uuid.UUID
    plan_id: uuid.UUID
    plan_name: Optional[str] = None
    plan_price: Optional[Decimal] = None
    plan_duration: Optional[int] = None
    status: str
    start_date: datetime
    end_date: datetime
    days_remaining: int
    is_active: bool
    is_expired: bool
    cancelled_at: Optional[datetime] = None


class OwnerSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    org_name: str
    email: str


class LastPaymentSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: uuid.UUID
    amount: int
    currency: str
    payment_method: str
    status: str
    created_at: Optional[datetime] = None


class SubscriptionDetailResponse(SubscriptionResponse):
    plan_description: Optional[str] = None
    owner: Optional[OwnerSummary] = None
    last_payment: Optional[LastPaymentSummary] = None


class SubscriptionStatsResponse(BaseModel):
    """Counts as of now; ``total_spent`` is in minor units."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_subscriptions: int
    active_subscriptions: int
    expired_subscriptions: int
    cancelled_subscriptions: int
    total_spent: int
    currency: str
