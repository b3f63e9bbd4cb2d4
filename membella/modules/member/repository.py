"""Read-only access to owners, members and plans."""

import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from membella.modules.member.models import Member, Owner, Plan


class MemberRepository:
    """Repository for member directory lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_member(self, member_id: uuid.UUID) -> Optional[Member]:
        result = await self.session.execute(
            select(Member).where(Member.id == member_id)
        )
        return result.scalar_one_or_none()

    async def get_owner(self, owner_id: uuid.UUID) -> Optional[Owner]:
        result = await self.session.execute(
            select(Owner).where(Owner.id == owner_id)
        )
        return result.scalar_one_or_none()

    async def get_plan(self, plan_id: uuid.UUID) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(Plan.id == plan_id)
        )
        return result.scalar_one_or_none()

    async def get_plan_for_owner(
        self,
        plan_id: uuid.UUID,
        owner_id: uuid.UUID,
    ) -> Optional[Plan]:
        """Get an active plan only if it belongs to the given owner."""
        result = await self.session.execute(
            select(Plan).where(
                Plan.id == plan_id,
                Plan.owner_id == owner_id,
                Plan.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get_plans_by_ids(self, plan_ids: list[uuid.UUID]) -> dict[uuid.UUID, Plan]:
        if not plan_ids:
            return {}
        result = await self.session.execute(
            select(Plan).where(Plan.id.in_(plan_ids))
        )
        return {plan.id: plan for plan in result.scalars().all()}
