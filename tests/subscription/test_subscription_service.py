"""Tests for SubscriptionService and the subscriptions router."""

import uuid
from datetime import datetime, timedelta

import pytest
from hypothesis import given, strategies as st

from membella.core.exceptions import ConflictError, NotFoundError
from membella.modules.payment.models import PaymentStatus
from membella.modules.payment.service import PaymentService
from membella.core.clock import utcnow
from membella.modules.subscription.models import SubscriptionStatus
from membella.modules.subscription.repository import SubscriptionRepository
from membella.modules.subscription.service import SubscriptionService, days_remaining

PREFIX = "/api/v1/subscriptions"
NOW = datetime(2026, 10, 1, 12, 0, 0)


@given(seconds=st.integers(min_value=-10 * 86400, max_value=400 * 86400))
def test_days_remaining_rounds_up_and_never_negative(seconds):
    result = days_remaining(NOW + timedelta(seconds=seconds), now=NOW)

    assert result >= 0
    if seconds <= 0:
        assert result == 0
    else:
        assert (result - 1) * 86400 < seconds <= result * 86400


async def paid_subscription(session, gateway, directory):
    gateway.create_status = PaymentStatus.SUCCESSFUL
    payment = await PaymentService(session, gateway).create_payment(
        directory.member.id, directory.plan.id, "card", "tokn_test_1"
    )
    return payment.subscription_id


@pytest.mark.asyncio
async def test_list_for_member_pairs_plans(session, gateway, directory):
    await paid_subscription(session, gateway, directory)

    rows = await SubscriptionService(session).list_for_member(directory.member.id)

    assert len(rows) == 1
    subscription, plan = rows[0]
    assert subscription.status == SubscriptionStatus.ACTIVE.value
    assert plan.name == "Monthly"
    assert await SubscriptionService(session).list_for_member(directory.other_member.id) == []


@pytest.mark.asyncio
async def test_cancel_active_subscription(session, gateway, directory):
    subscription_id = await paid_subscription(session, gateway, directory)

    subscription = await SubscriptionService(session).cancel(directory.member.id, subscription_id)

    assert subscription.status == SubscriptionStatus.CANCELLED.value
    assert subscription.cancelled_at is not None


@pytest.mark.asyncio
async def test_cancel_twice_conflicts(session, gateway, directory):
    subscription_id = await paid_subscription(session, gateway, directory)
    service = SubscriptionService(session)
    await service.cancel(directory.member.id, subscription_id)

    with pytest.raises(ConflictError):
        await service.cancel(directory.member.id, subscription_id)


@pytest.mark.asyncio
async def test_cancel_someone_elses_subscription_is_not_found(session, gateway, directory):
    subscription_id = await paid_subscription(session, gateway, directory)

    with pytest.raises(NotFoundError):
        await SubscriptionService(session).cancel(directory.other_member.id, subscription_id)
    with pytest.raises(NotFoundError):
        await SubscriptionService(session).cancel(directory.member.id, uuid.uuid4())


@pytest.mark.asyncio
async def test_resubscribe_after_cancel_reactivates(session, gateway, directory):
    subscription_id = await paid_subscription(session, gateway, directory)
    await SubscriptionService(session).cancel(directory.member.id, subscription_id)
    await session.commit()

    again = await paid_subscription(session, gateway, directory)

    assert again == subscription_id
    rows = await SubscriptionService(session).list_for_member(directory.member.id)
    assert [s.status for s, _ in rows] == [SubscriptionStatus.ACTIVE.value]



@pytest.mark.asyncio
async def test_get_for_member_includes_plan_owner_and_last_payment(session, gateway, directory):
    subscription_id = await paid_subscription(session, gateway, directory)

    detail = await SubscriptionService(session).get_for_member(directory.member.id, subscription_id)

    assert detail.subscription.id == subscription_id
    assert detail.plan.name == "Monthly"
    assert detail.owner.org_name == "Bangkok Yoga"
    assert detail.last_payment.amount == 50000
    assert detail.last_payment.status == PaymentStatus.SUCCESSFUL.value


@pytest.mark.asyncio
async def test_get_for_member_hides_other_members_rows(session, gateway, directory):
    subscription_id = await paid_subscription(session, gateway, directory)

    with pytest.raises(NotFoundError):
        await SubscriptionService(session).get_for_member(directory.other_member.id, subscription_id)
    with pytest.raises(NotFoundError):
        await SubscriptionService(session).get_for_member(directory.member.id, uuid.uuid4())


async def seed_mixed_history(session, gateway, directory):
    """One paid active row plus a lapsed active, an expired and a cancelled row."""
    await paid_subscription(session, gateway, directory)
    now = utcnow()
    repo = SubscriptionRepository(session)
    await repo.create(
        member_id=directory.member.id,
        plan_id=directory.promptpay_plan.id,
        status=SubscriptionStatus.ACTIVE.value,
        start_date=now - timedelta(days=17),
        end_date=now - timedelta(days=10),
    )
    await repo.create(
        member_id=directory.member.id,
        plan_id=directory.plan.id,
        status=SubscriptionStatus.EXPIRED.value,
        start_date=now - timedelta(days=90),
        end_date=now - timedelta(days=60),
    )
    await repo.create(
        member_id=directory.member.id,
        plan_id=directory.other_owner_plan.id,
        status=SubscriptionStatus.CANCELLED.value,
        start_date=now - timedelta(days=5),
        end_date=now + timedelta(days=25),
        cancelled_at=now,
    )
    await session.commit()


@pytest.mark.asyncio
async def test_stats_count_lapsed_active_rows_as_expired(session, gateway, directory):
    await seed_mixed_history(session, gateway, directory)

    stats = await SubscriptionService(session).get_stats(directory.member.id)

    assert stats == {
        "total_subscriptions": 4,
        "active_subscriptions": 1,
        "expired_subscriptions": 2,
        "cancelled_subscriptions": 1,
        "total_spent": 50000,
    }


@pytest.mark.asyncio
async def test_stats_for_member_without_history(session, directory):
    stats = await SubscriptionService(session).get_stats(directory.other_member.id)

    assert stats == {
        "total_subscriptions": 0,
        "active_subscriptions": 0,
        "expired_subscriptions": 0,
        "cancelled_subscriptions": 0,
        "total_spent": 0,
    }

# ==================== HTTP ====================

@pytest.mark.asyncio
async def test_list_and_cancel_over_http(client, session, gateway, directory, auth_headers):
    subscription_id = await paid_subscription(session, gateway, directory)
    headers = auth_headers(directory.member)

    listed = await client.get(PREFIX, headers=headers)
    assert listed.status_code == 200
    [item] = listed.json()
    assert item["id"] == str(subscription_id)
    assert item["planName"] == "Monthly"
    assert item["isActive"] is True
    assert item["isExpired"] is False
    assert item["daysRemaining"] == 30

    cancelled = await client.post(f"{PREFIX}/{subscription_id}/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["isActive"] is False

    again = await client.post(f"{PREFIX}/{subscription_id}/cancel", headers=headers)
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_cancel_over_http_for_other_member(client, session, gateway, directory, auth_headers):
    subscription_id = await paid_subscription(session, gateway, directory)

    response = await client.post(
        f"{PREFIX}/{subscription_id}/cancel", headers=auth_headers(directory.other_member)
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_subscriptions_require_auth(client, directory):
    response = await client.get(PREFIX)

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_subscription_over_http(client, session, gateway, directory, auth_headers):
    subscription_id = await paid_subscription(session, gateway, directory)
    headers = auth_headers(directory.member)
    other_headers = auth_headers(directory.other_member)

    response = await client.get(f"{PREFIX}/{subscription_id}", headers=headers)

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == str(subscription_id)
    assert data["planName"] == "Monthly"
    assert data["daysRemaining"] == 30
    assert data["owner"] == {"orgName": "Bangkok Yoga", "email": "owner@yoga.example"}
    assert data["lastPayment"]["amount"] == 50000
    assert data["lastPayment"]["status"] == "successful"
    assert data["lastPayment"]["paymentMethod"] == "card"

    assert (await client.get(f"{PREFIX}/{subscription_id}", headers=other_headers)).status_code == 404
    assert (await client.get(f"{PREFIX}/{uuid.uuid4()}", headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_subscription_stats_over_http(client, session, gateway, directory, auth_headers):
    await seed_mixed_history(session, gateway, directory)

    response = await client.get(f"{PREFIX}/stats", headers=auth_headers(directory.member))

    assert response.status_code == 200
    assert response.json() == {
        "totalSubscriptions": 4,
        "activeSubscriptions": 1,
        "expiredSubscriptions": 2,
        "cancelledSubscriptions": 1,
        "totalSpent": 50000,
        "currency": "THB",
    }
