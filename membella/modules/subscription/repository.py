"""Repository for subscriptions."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from membella.modules.subscription.models import Subscription, SubscriptionStatus


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_active(
        self,
        member_id: uuid.UUID,
        plan_id: uuid.UUID,
    ) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.member_id == member_id,
                Subscription.plan_id == plan_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        return result.scalar_one_or_none()

    async def get_for_update(
        self,
        member_id: uuid.UUID,
        plan_id: uuid.UUID,
    ) -> Optional[Subscription]:
        """Lock and return the member's subscription row for a plan.

        The active row wins; otherwise the one ending last.
        """
        active_first = case(
            (Subscription.status == SubscriptionStatus.ACTIVE.value, 0),
            else_=1,
        )
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.member_id == member_id,
                Subscription.plan_id == plan_id,
            )
            .order_by(active_first, Subscription.end_date.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(self, **fields: Any) -> Subscription:
        subscription = Subscription(**fields)
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def list_by_member(self, member_id: uuid.UUID) -> list[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.member_id == member_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def count_active(self, member_id: uuid.UUID, plan_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(Subscription.id).where(
                Subscription.member_id == member_id,
                Subscription.plan_id == plan_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        return len(result.all())

    async def get_for_member(
        self,
        member_id: uuid.UUID,
        subscription_id: uuid.UUID,
    ) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.id == subscription_id,
                Subscription.member_id == member_id,
            )
        )
        return result.scalar_one_or_none()

    async def count_by_state(self, member_id: uuid.UUID, now: datetime) -> dict[str, int]:
        """Count a member's subscriptions as they stand at ``now``.

        An ``active`` row whose end date has passed counts as expired, not
        active, until something rewrites its status.
        """
        is_active = Subscription.status == SubscriptionStatus.ACTIVE.value

        def tally(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        result = await self.session.execute(
            select(
                func.count(Subscription.id),
                tally(and_(is_active, Subscription.end_date > now)),
                tally(
                    or_(
                        Subscription.status == SubscriptionStatus.EXPIRED.value,
                        and_(is_active, Subscription.end_date <= now),
                    )
                ),
                tally(Subscription.status == SubscriptionStatus.CANCELLED.value),
            ).where(Subscription.member_id == member_id)
        )
        total, active, expired, cancelled = result.one()
        return {
            "total_subscriptions": int(total),
            "active_subscriptions": int(active),
            "expired_subscriptions": int(expired),
            "cancelled_subscriptions": int(cancelled),
        }
