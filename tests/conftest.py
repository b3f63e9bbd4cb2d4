"""Shared fixtures: in-memory database, seeded directory data and a scripted gateway."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_JSON", "false")

import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from datetime import timedelta
from typing import Mapping, Optional

import httpx
import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from membella.core.clock import utcnow
from membella.core.config import settings
from membella.core.database import Base, get_session
from membella.core.exceptions import GatewayError
from membella.core.rate_limit import limiter
from membella.modules.member.models import Member, Owner, Plan
from membella.main import app
from membella.modules.payment import models as payment_models  # noqa: F401
from membella.modules.payment.gateways import get_gateway
from membella.modules.payment.interface import (
    ChargeRequest,
    ChargeResult,
    ChargeSnapshot,
    PaymentGatewayInterface,
)
from membella.modules.payment.models import PaymentMethod, PaymentStatus
from membella.modules.subscription import models as subscription_models  # noqa: F401


class ScriptedGateway(PaymentGatewayInterface):
    """Gateway double whose answers are set by the test."""

    name = "scripted"

    def __init__(self):
        self.create_calls: list[ChargeRequest] = []
        self.get_calls: list[str] = []
        self.create_status = PaymentStatus.PENDING
        self.create_error: Optional[GatewayError] = None
        self.failure_code: Optional[str] = None
        self.failure_message: Optional[str] = None
        self.charge_statuses: dict[str, list[PaymentStatus]] = {}
        self.get_error: Optional[GatewayError] = None
        self.verified = True

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        self.create_calls.append(request)
        if self.create_error is not None:
            raise self.create_error
        charge_id = f"chrg_test_{len(self.create_calls)}"
        is_promptpay = request.method == PaymentMethod.PROMPTPAY
        return ChargeResult(
            charge_id=charge_id,
            status=self.create_status,
            source_id="src_test_1" if is_promptpay else None,
            qr_code_url="https://assets.example.test/qr/chrg.png" if is_promptpay else None,
            failure_code=self.failure_code,
            failure_message=self.failure_message,
            gateway_response={"id": charge_id, "status": self.create_status.value},
        )

    async def get_charge(self, charge_id: str) -> ChargeSnapshot:
        self.get_calls.append(charge_id)
        if self.get_error is not None:
            raise self.get_error
        sequence = self.charge_statuses.get(charge_id) or [PaymentStatus.PENDING]
        status = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        return ChargeSnapshot(
            charge_id=charge_id,
            status=status,
            gateway_response={"id": charge_id, "status": status.value},
        )

    def verify_webhook_signature(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        return self.verified

    def get_public_key(self) -> Optional[str]:
        return "pkey_test_123"


@dataclass
class Directory:
    owner: Owner
    member: Member
    plan: Plan
    promptpay_plan: Plan
    other_owner_plan: Plan
    other_member: Member


async def create_schema(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def make_engine():
    return create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


async def seed_directory(session: AsyncSession) -> Directory:
    owner = Owner(id=uuid.uuid4(), org_name="Bangkok Yoga", email="owner@yoga.example")
    other_owner = Owner(id=uuid.uuid4(), org_name="Chiang Mai Gym", email="owner@gym.example")
    member = Member(
        id=uuid.uuid4(), owner_id=owner.id, full_name="Somchai P", email="somchai@example.test"
    )
    other_member = Member(
        id=uuid.uuid4(), owner_id=owner.id, full_name="Malee K", email="malee@example.test"
    )
    plan = Plan(
        id=uuid.uuid4(), owner_id=owner.id, name="Monthly", price=Decimal("500.00"), duration=30
    )
    promptpay_plan = Plan(
        id=uuid.uuid4(), owner_id=owner.id, name="Weekly", price=Decimal("150.00"), duration=7
    )
    other_owner_plan = Plan(
        id=uuid.uuid4(), owner_id=other_owner.id, name="Gym Pass", price=Decimal("900.00"), duration=30
    )
    session.add_all([owner, other_owner])
    await session.flush()
    session.add_all([member, other_member, plan, promptpay_plan, other_owner_plan])
    await session.commit()
    return Directory(owner, member, plan, promptpay_plan, other_owner_plan, other_member)


@pytest_asyncio.fixture
async def engine():
    engine = make_engine()
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        yield session


@pytest_asyncio.fixture
async def directory(session) -> Directory:
    return await seed_directory(session)


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def fresh_world():
    """Factory for a throwaway database, for tests that build one per example.

    Usage::

        async with fresh_world() as (session, directory, gateway):
            ...
    """
    @asynccontextmanager
    async def build():
        engine = make_engine()
        await create_schema(engine)
        maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with maker() as session:
                directory = await seed_directory(session)
                yield session, directory, ScriptedGateway()
        finally:
            await engine.dispose()

    return build


def _access_token(member_id, expires_in: timedelta = timedelta(minutes=15), token_type: str = "access") -> str:
    claims = {"sub": str(member_id), "exp": utcnow() + expires_in, "type": token_type}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def make_token():
    """Signs member access tokens with the configured secret."""
    return _access_token


@pytest.fixture
def auth_headers():
    def build(member) -> dict[str, str]:
        return {"Authorization": f"Bearer {_access_token(member.id)}"}

    return build


@pytest_asyncio.fixture
async def client(session, gateway):
    """HTTP client against the app, sharing the test session and gateway."""
    async def override_session():
        yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    limiter.reset()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()
