"""Pydantic schemas for the payments API.

Field names are snake_case in Python and camelCase on the wire.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from membella.modules.payment.models import PaymentMethod, PaymentStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ==================== Checkout ====================

class SubscribeRequest(CamelModel):
    """Body of ``POST /payments/subscribe``.

    ``payment_method`` stays a plain string so unknown methods reach the
    service and come back as a 400 rather than a 422.
    """
    plan_id: uuid.UUID
    payment_method: str = Field(..., description="card or promptpay")
    payment_source: Optional[str] = Field(None, description="Card token (tokn_...) for card payments")
    customer_data: Optional[dict[str, Any]] = None


class SubscribeResponse(CamelModel):
    payment_id: uuid.UUID
    status: PaymentStatus
    amount: int
    currency: str
    qr_code_url: Optional[str] = None
    authorize_uri: Optional[str] = None
    expires_at: Optional[datetime] = None
    subscription_id: Optional[uuid.UUID] = None


# ==================== Payment views ====================

class SubscriptionSummary(CamelModel):
    id: uuid.UUID
    status: str
    start_date: datetime
    end_date: datetime
    days_remaining: int


class PaymentResponse(CamelModel):
    id: uuid.UUID
    plan_id: uuid.UUID
    plan_name: Optional[str] = None
    amount: int
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus
    description: Optional[str] = None
    qr_code_url: Optional[str] = None
    authorize_uri: Optional[str] = None
    expires_at: Optional[datetime] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    can_refresh: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    subscription: Optional[SubscriptionSummary] = None


class PaymentHistoryResponse(CamelModel):
    items: list[PaymentResponse]
    total: int
    limit: int
    offset: int


class PaymentStatisticsResponse(CamelModel):
    total_payments: int
    total_amount_paid: int
    currency: str
    by_status: dict[str, int]
    by_method: dict[str, int]


# ==================== Gateway info ====================

class PaymentMethodInfo(CamelModel):
    method: PaymentMethod
    currency: str
    min_amount: int
    max_amount: int


class PaymentMethodsResponse(CamelModel):
    methods: list[PaymentMethodInfo]


class PublicKeyResponse(CamelModel):
    public_key: str


class WebhookAck(BaseModel):
    received: bool = True
