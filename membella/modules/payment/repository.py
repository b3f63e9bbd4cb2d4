"""Repository for payment records."""

import uuid
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from membella.core.clock import utcnow
from membella.modules.payment.models import Payment, PaymentStatus


class PaymentRepository:
    """Repository for payment operations.

    Status changes go through :meth:`compare_and_set_status`; every other
    writer leaves ``status`` alone.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields: Any) -> Payment:
        payment = Payment(**fields)
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get_by_id(self, payment_id: uuid.UUID, fresh: bool = False) -> Optional[Payment]:
        """Get a payment by ID.

        Args:
            payment_id: Payment UUID
            fresh: Overwrite any identity-map copy with the stored row
        """
        stmt = select(Payment).where(Payment.id == payment_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_charge_id(self, charge_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.gateway_charge_id == charge_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_by_member(
        self,
        member_id: uuid.UUID,
        limit: int,
        offset: int,
        status: Optional[PaymentStatus] = None,
    ) -> list[Payment]:
        """List a member's payments, newest first."""
        stmt = select(Payment).where(Payment.member_id == member_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status.value)
        stmt = stmt.order_by(Payment.created_at.desc(), Payment.id).offset(offset).limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_member(
        self,
        member_id: uuid.UUID,
        status: Optional[PaymentStatus] = None,
    ) -> int:
        stmt = select(func.count(Payment.id)).where(Payment.member_id == member_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status.value)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def sum_successful_amount(self, member_id: uuid.UUID) -> int:
        """Total paid by a member in minor units."""
        result = await self.session.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.member_id == member_id,
                Payment.status == PaymentStatus.SUCCESSFUL.value,
            )
        )
        return int(result.scalar_one())

    async def update_fields(self, payment_id: uuid.UUID, **fields: Any) -> None:
        """Update non-status columns of a payment."""
        if "status" in fields:
            raise ValueError("status must be changed with compare_and_set_status")
        fields["updated_at"] = utcnow()
        await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()

    async def compare_and_set_status(
        self,
        payment_id: uuid.UUID,
        expected: PaymentStatus,
        new: PaymentStatus,
        **fields: Any,
    ) -> bool:
        """Move ``status`` from ``expected`` to ``new`` in one statement.

        Returns:
            True if this call changed the row; False if the stored status was
            no longer ``expected``.
        """
        fields["updated_at"] = utcnow()
        result = await self.session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == expected.value)
            .values(status=new.value, **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_statistics(self, member_id: uuid.UUID) -> dict[str, Any]:
        """Totals for a member's payments, broken down by status and method."""
        by_status = await self.session.execute(
            select(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.member_id == member_id)
            .group_by(Payment.status)
        )
        by_method = await self.session.execute(
            select(Payment.payment_method, func.count(Payment.id))
            .where(Payment.member_id == member_id)
            .group_by(Payment.payment_method)
        )

        status_counts: dict[str, int] = {s.value: 0 for s in PaymentStatus}
        successful_amount = 0
        total = 0
        for status, count, amount in by_status.all():
            status_counts[status] = count
            total += count
            if status == PaymentStatus.SUCCESSFUL.value:
                successful_amount = int(amount)

        return {
            "total_payments": total,
            "total_amount_paid": successful_amount,
            "by_status": status_counts,
            "by_method": {method: count for method, count in by_method.all()},
        }
