"""Subscriptions router."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from membella.core.clock import utcnow
from membella.core.config import settings
from membella.core.database import get_session
from membella.core.security import get_current_member
from membella.modules.member.models import Member, Plan
from membella.modules.subscription.models import Subscription
from membella.modules.subscription.schemas import (
    LastPaymentSummary,
    OwnerSummary,
    SubscriptionDetailResponse,
    SubscriptionResponse,
    SubscriptionStatsResponse,
)
from membella.modules.subscription.service import SubscriptionService, days_remaining

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _subscription_response(subscription: Subscription, plan: Optional[Plan]) -> SubscriptionResponse:
    now = utcnow()
    return SubscriptionResponse(
        id=subscription.id,
        plan_id=subscription.plan_id,
        plan_name=plan.name if plan else None,
        plan_price=plan.price if plan else None,
        plan_duration=plan.duration if plan else None,
        status=subscription.status,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        days_remaining=days_remaining(subscription.end_date, now),
        is_active=subscription.is_active() and subscription.end_date > now,
        is_expired=subscription.end_date <= now,
        cancelled_at=subscription.cancelled_at,
    )


@router.get("", response_model=list[SubscriptionResponse])
async def list_subscriptions(
    member: Member = Depends(get_current_member),
    session: AsyncSession = Depends(get_session),
):
    """List the authenticated member's subscriptions, newest first."""
    rows = await SubscriptionService(session).list_for_member(member.id)
    return [_subscription_response(subscription, plan) for subscription, plan in rows]


@router.get("/stats", response_model=SubscriptionStatsResponse)
async def get_subscription_stats(
    member: Member = Depends(get_current_member),
    session: AsyncSession = Depends(get_session),
):
    """Counts of the member's subscriptions by state and their total spend.

    Active subscriptions past their end date count as expired.
    """
    stats = await SubscriptionService(session).get_stats(member.id)
    return SubscriptionStatsResponse(currency=settings.PAYMENT_CURRENCY, **stats)


@router.get("/{subscription_id}", response_model=SubscriptionDetailResponse)
async def get_subscription(
    subscription_id: uuid.UUID,
    member: Member = Depends(get_current_member),
    session: AsyncSession = Depends(get_session),
):
    """One of the member's subscriptions with its plan, owner and last payment."""
    detail = await SubscriptionService(session).get_for_member(member.id, subscription_id)
    summary = _subscription_response(detail.subscription, detail.plan)
    return SubscriptionDetailResponse(
        **summary.model_dump(),
        plan_description=detail.plan.description if detail.plan else None,
        owner=OwnerSummary.model_validate(detail.owner) if detail.owner else None,
        last_payment=(
            LastPaymentSummary.model_validate(detail.last_payment) if detail.last_payment else None
        ),
    )


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    member: Member = Depends(get_current_member),
    session: AsyncSession = Depends(get_session),
):
    """Cancel one of the member's active subscriptions."""
    service = SubscriptionService(session)
    subscription = await service.cancel(member.id, subscription_id)
    plan = await service.member_repo.get_plan(subscription.plan_id)
    return _subscription_response(subscription, plan)
