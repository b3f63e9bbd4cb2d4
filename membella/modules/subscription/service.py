"""Subscription activation and member subscription management."""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from membella.core.clock import utcnow
from membella.core.exceptions import ConflictError, NotFoundError, PlanNotFound
from membella.core.metrics import SUBSCRIPTION_ACTIVATIONS_TOTAL
from membella.modules.member.models import Owner, Plan
from membella.modules.member.repository import MemberRepository
from membella.modules.payment.models import Payment
from membella.modules.payment.repository import PaymentRepository
from membella.modules.subscription.models import Subscription, SubscriptionStatus
from membella.modules.subscription.repository import SubscriptionRepository

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def days_remaining(end_date: datetime, now: Optional[datetime] = None) -> int:
    """Whole days left until ``end_date``, rounded up and never negative."""
    now = now or utcnow()
    return max(0, math.ceil((end_date - now).total_seconds() / SECONDS_PER_DAY))


class ActivationKind(str, Enum):
    CREATED = "created"
    EXTENDED = "extended"
    REACTIVATED = "reactivated"
    ALREADY_APPLIED = "already_applied"


@dataclass
class ActivationResult:
    subscription: Subscription
    kind: ActivationKind


class SubscriptionActivationEngine:
    """Turns a successful payment into subscription time.

    Called only by the winner of a payment's move into ``successful``, inside
    the same transaction. The (member, plan) row is read with a row lock, so
    two activations for the same pair serialise.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.subscription_repo = SubscriptionRepository(session)
        self.member_repo = MemberRepository(session)

    async def activate(self, payment: Payment, now: Optional[datetime] = None) -> ActivationResult:
        """Create, extend or reactivate the subscription paid for by ``payment``.

        Args:
            payment: A payment that has just become successful
            now: Override for the current time

        Returns:
            ActivationResult with the active subscription

        Raises:
            PlanNotFound: If the payment's plan no longer exists
        """
        plan = await self.member_repo.get_plan(payment.plan_id)
        if plan is None:
            raise PlanNotFound()

        now = now or utcnow()
        duration = timedelta(days=plan.duration)
        subscription = await self.subscription_repo.get_for_update(payment.member_id, payment.plan_id)

        if subscription is None:
            subscription = await self.subscription_repo.create(
                member_id=payment.member_id,
                plan_id=payment.plan_id,
                status=SubscriptionStatus.ACTIVE.value,
                start_date=now,
                end_date=now + duration,
                last_payment_id=payment.id,
            )
            kind = ActivationKind.CREATED
        elif subscription.last_payment_id == payment.id:
            logger.warning(
                "Activation repeated for the same payment; leaving subscription unchanged",
                extra={"payment_id": str(payment.id), "subscription_id": str(subscription.id)},
            )
            return ActivationResult(subscription, ActivationKind.ALREADY_APPLIED)
        elif subscription.is_active():
            subscription.end_date = max(subscription.end_date, now) + duration
            subscription.last_payment_id = payment.id
            kind = ActivationKind.EXTENDED
        else:
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.start_date = now
            subscription.end_date = now + duration
            subscription.cancelled_at = None
            subscription.last_payment_id = payment.id
            kind = ActivationKind.REACTIVATED

        await self.session.flush()
        SUBSCRIPTION_ACTIVATIONS_TOTAL.labels(kind=kind.value).inc()
        logger.info(
            f"Subscription {kind.value}",
            extra={
                "payment_id": str(payment.id),
                "subscription_id": str(subscription.id),
                "member_id": str(payment.member_id),
                "plan_id": str(payment.plan_id),
                "end_date": subscription.end_date.isoformat(),
            },
        )
        return ActivationResult(subscription, kind)


@dataclass
class SubscriptionDetail:
    subscription: Subscription
    plan: Optional[Plan]
    owner: Optional[Owner]
    last_payment: Optional[Payment]


class SubscriptionService:
    """Member-facing subscription queries and cancellation."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.subscription_repo = SubscriptionRepository(session)
        self.member_repo = MemberRepository(session)
        self.payment_repo = PaymentRepository(session)

    async def list_for_member(self, member_id: uuid.UUID) -> list[tuple[Subscription, Optional[Plan]]]:
        subscriptions = await self.subscription_repo.list_by_member(member_id)
        plans = await self.member_repo.get_plans_by_ids(list({s.plan_id for s in subscriptions}))
        return [(s, plans.get(s.plan_id)) for s in subscriptions]

    async def get_for_member(self, member_id: uuid.UUID, subscription_id: uuid.UUID) -> SubscriptionDetail:
        """One of the member's subscriptions with its plan, owner and last payment.

        Raises:
            NotFoundError: If the subscription does not exist or belongs to
                another member
        """
        subscription = await self.subscription_repo.get_for_member(member_id, subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found")

        plan = await self.member_repo.get_plan(subscription.plan_id)
        owner = await self.member_repo.get_owner(plan.owner_id) if plan else None
        last_payment = None
        if subscription.last_payment_id is not None:
            last_payment = await self.payment_repo.get_by_id(subscription.last_payment_id, fresh=True)
        return SubscriptionDetail(subscription, plan, owner, last_payment)

    async def get_stats(self, member_id: uuid.UUID, now: Optional[datetime] = None) -> dict[str, int]:
        """Subscription counts by state plus the member's total successful spend in minor units."""
        stats = await self.subscription_repo.count_by_state(member_id, now or utcnow())
        stats["total_spent"] = await self.payment_repo.sum_successful_amount(member_id)
        return stats

    async def cancel(self, member_id: uuid.UUID, subscription_id: uuid.UUID) -> Subscription:
        """Cancel one of the member's active subscriptions.

        Raises:
            NotFoundError: If the subscription does not exist or belongs to
                another member
            ConflictError: If it is not active
        """
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if subscription is None or subscription.member_id != member_id:
            raise NotFoundError("Subscription not found")
        if not subscription.is_active():
            raise ConflictError(f"Subscription is already {subscription.status}")

        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.cancelled_at = utcnow()
        await self.session.flush()

        logger.info(
            "Subscription cancelled",
            extra={"subscription_id": str(subscription.id), "member_id": str(member_id)},
        )
        return subscription
