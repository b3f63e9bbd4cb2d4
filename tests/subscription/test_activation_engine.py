"""Tests for SubscriptionActivationEngine."""

import asyncio
from datetime import datetime, timedelta

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from membella.core.exceptions import PlanNotFound
from membella.modules.payment.models import PaymentMethod, PaymentStatus
from membella.modules.payment.repository import PaymentRepository
from membella.modules.subscription.models import SubscriptionStatus
from membella.modules.subscription.repository import SubscriptionRepository
from membella.modules.subscription.service import ActivationKind, SubscriptionActivationEngine

NOW = datetime(2026, 10, 1, 12, 0, 0)


async def new_payment(session, member, plan):
    return await PaymentRepository(session).create(
        member_id=member.id,
        plan_id=plan.id,
        amount=50000,
        currency="THB",
        payment_method=PaymentMethod.CARD.value,
        status=PaymentStatus.SUCCESSFUL.value,
    )


@pytest.fixture
def engine_under_test(session):
    return SubscriptionActivationEngine(session)


@pytest.mark.asyncio
async def test_first_payment_creates_subscription(engine_under_test, session, directory):
    payment = await new_payment(session, directory.member, directory.plan)

    result = await engine_under_test.activate(payment, now=NOW)

    assert result.kind == ActivationKind.CREATED
    assert result.subscription.status == SubscriptionStatus.ACTIVE.value
    assert result.subscription.start_date == NOW
    assert result.subscription.end_date == NOW + timedelta(days=30)
    assert result.subscription.last_payment_id == payment.id


@pytest.mark.asyncio
async def test_renewal_extends_from_current_end(engine_under_test, session, directory):
    first = await new_payment(session, directory.member, directory.plan)
    await engine_under_test.activate(first, now=NOW)
    second = await new_payment(session, directory.member, directory.plan)

    result = await engine_under_test.activate(second, now=NOW + timedelta(days=10))

    assert result.kind == ActivationKind.EXTENDED
    assert result.subscription.start_date == NOW
    assert result.subscription.end_date == NOW + timedelta(days=60)
    assert await SubscriptionRepository(session).count_active(directory.member.id, directory.plan.id) == 1


@pytest.mark.asyncio
async def test_lapsed_active_row_extends_from_now(engine_under_test, session, directory):
    """An active row whose end date has passed does not hand out back-dated time."""
    first = await new_payment(session, directory.member, directory.plan)
    await engine_under_test.activate(first, now=NOW)
    later = NOW + timedelta(days=45)
    second = await new_payment(session, directory.member, directory.plan)

    result = await engine_under_test.activate(second, now=later)

    assert result.kind == ActivationKind.EXTENDED
    assert result.subscription.end_date == later + timedelta(days=30)


@pytest.mark.asyncio
async def test_cancelled_subscription_is_reactivated(engine_under_test, session, directory):
    first = await new_payment(session, directory.member, directory.plan)
    created = await engine_under_test.activate(first, now=NOW)
    created.subscription.status = SubscriptionStatus.CANCELLED.value
    created.subscription.cancelled_at = NOW
    await session.flush()

    second = await new_payment(session, directory.member, directory.plan)
    later = NOW + timedelta(days=3)
    result = await engine_under_test.activate(second, now=later)

    assert result.kind == ActivationKind.REACTIVATED
    assert result.subscription.id == created.subscription.id
    assert result.subscription.status == SubscriptionStatus.ACTIVE.value
    assert result.subscription.start_date == later
    assert result.subscription.end_date == later + timedelta(days=30)
    assert result.subscription.cancelled_at is None


@pytest.mark.asyncio
async def test_same_payment_applies_once(engine_under_test, session, directory):
    payment = await new_payment(session, directory.member, directory.plan)
    first = await engine_under_test.activate(payment, now=NOW)

    again = await engine_under_test.activate(payment, now=NOW + timedelta(days=1))

    assert again.kind == ActivationKind.ALREADY_APPLIED
    assert again.subscription.end_date == first.subscription.end_date


@pytest.mark.asyncio
async def test_plans_are_tracked_separately(engine_under_test, session, directory):
    await engine_under_test.activate(await new_payment(session, directory.member, directory.plan), now=NOW)
    result = await engine_under_test.activate(
        await new_payment(session, directory.member, directory.promptpay_plan), now=NOW
    )

    assert result.kind == ActivationKind.CREATED
    assert result.subscription.end_date == NOW + timedelta(days=7)
    assert len(await SubscriptionRepository(session).list_by_member(directory.member.id)) == 2


@pytest.mark.asyncio
async def test_missing_plan(engine_under_test, session, directory):
    payment = await new_payment(session, directory.member, directory.plan)
    await session.delete(directory.plan)
    await session.flush()

    with pytest.raises(PlanNotFound):
        await engine_under_test.activate(payment, now=NOW)


@settings(max_examples=20, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(
    steps=st.lists(
        st.tuples(st.sampled_from(["pay", "cancel"]), st.integers(min_value=0, max_value=40)),
        min_size=1,
        max_size=8,
    )
)
def test_at_most_one_active_subscription_per_plan(fresh_world, steps):
    async def scenario():
        async with fresh_world() as (session, directory, _):
            engine = SubscriptionActivationEngine(session)
            repo = SubscriptionRepository(session)
            now = NOW
            for action, gap in steps:
                now = now + timedelta(days=gap)
                if action == "pay":
                    payment = await new_payment(session, directory.member, directory.plan)
                    result = await engine.activate(payment, now=now)
                    assert result.subscription.end_date > now
                else:
                    active = await repo.get_active(directory.member.id, directory.plan.id)
                    if active is not None:
                        active.status = SubscriptionStatus.CANCELLED.value
                        await session.flush()
                count = await repo.count_active(directory.member.id, directory.plan.id)
                assert count <= 1
            return len(await repo.list_by_member(directory.member.id))

    # Reactivation reuses the row, so one plan never accumulates rows
    assert asyncio.run(scenario()) <= 1
