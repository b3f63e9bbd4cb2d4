"""Payments router.

Checkout, payment lookup, polling, history and the gateway webhook.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from membella.core.config import settings
from membella.core.database import get_session
from membella.core.exceptions import AppError, AuthorizationError, InternalError
from membella.core.logging import log_error, log_warning
from membella.core.rate_limit import CHECKOUT_LIMIT_MESSAGE, WEBHOOK_LIMIT_MESSAGE, limiter
from membella.core.security import get_current_member
from membella.modules.member.models import Member
from membella.modules.member.repository import MemberRepository
from membella.modules.payment.gateways import get_gateway
from membella.modules.payment.interface import PaymentGatewayInterface
from membella.modules.payment.models import Payment, PaymentStatus
from membella.modules.payment.poller import StatusPoller
from membella.modules.payment.schemas import (
    PaymentHistoryResponse,
    PaymentMethodInfo,
    PaymentMethodsResponse,
    PaymentResponse,
    PaymentStatisticsResponse,
    PublicKeyResponse,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionSummary,
    WebhookAck,
)
from membella.modules.payment.service import AMOUNT_LIMITS, PaymentService
from membella.modules.payment.webhook import WebhookEvent, WebhookReconciler
from membella.modules.subscription.repository import SubscriptionRepository
from membella.modules.subscription.service import days_remaining

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def get_payment_service(
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGatewayInterface = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(session, gateway)


async def _payment_response(session: AsyncSession, payment: Payment) -> PaymentResponse:
    plan = await MemberRepository(session).get_plan(payment.plan_id)

    summary = None
    if payment.subscription_id is not None:
        subscription = await SubscriptionRepository(session).get_by_id(payment.subscription_id)
        if subscription is not None:
            summary = SubscriptionSummary(
                id=subscription.id,
                status=subscription.status,
                start_date=subscription.start_date,
                end_date=subscription.end_date,
                days_remaining=days_remaining(subscription.end_date),
            )

    return PaymentResponse(
        id=payment.id,
        plan_id=payment.plan_id,
        plan_name=plan.name if plan else None,
        amount=payment.amount,
        currency=payment.currency,
        payment_method=payment.payment_method,
        status=payment.status,
        description=payment.description,
        qr_code_url=payment.qr_code_url,
        authorize_uri=payment.authorize_uri,
        expires_at=payment.expires_at,
        failure_code=payment.failure_code,
        failure_message=payment.failure_message,
        can_refresh=payment.can_refresh(),
        created_at=payment.created_at,
        updated_at=payment.updated_at,
        completed_at=payment.completed_at,
        subscription=summary,
    )


async def _owned_payment(service: PaymentService, payment_id: uuid.UUID, member: Member) -> Payment:
    payment = await service.get_payment(payment_id)
    if payment.member_id != member.id:
        raise AuthorizationError("You do not have access to this payment")
    return payment


# ==================== Checkout ====================

@router.post("/subscribe", response_model=SubscribeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_CHECKOUT, error_message=CHECKOUT_LIMIT_MESSAGE)
async def subscribe(
    request: Request,
    data: SubscribeRequest,
    member: Member = Depends(get_current_member),
    service: PaymentService = Depends(get_payment_service),
):
    """Start a checkout for a plan.

    Card payments confirmed instantly come back ``successful`` with the
    subscription already active. PromptPay payments come back ``pending``
    with a QR code to scan.
    """
    payment = await service.create_payment(
        member_id=member.id,
        plan_id=data.plan_id,
        method=data.payment_method,
        source=data.payment_source,
        customer_data=data.customer_data,
    )
    return SubscribeResponse(
        payment_id=payment.id,
        status=payment.status,
        amount=payment.amount,
        currency=payment.currency,
        qr_code_url=payment.qr_code_url,
        authorize_uri=payment.authorize_uri,
        expires_at=payment.expires_at,
        subscription_id=payment.subscription_id,
    )


# ==================== Webhook ====================

@router.post("/webhook", response_model=WebhookAck)
@limiter.limit(settings.RATE_LIMIT_WEBHOOK, error_message=WEBHOOK_LIMIT_MESSAGE)
async def receive_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGatewayInterface = Depends(get_gateway),
):
    """Receive a gateway event.

    Always acknowledges with 200 so the gateway does not retry deliveries we
    cannot use; problems are logged instead.
    """
    raw_body = await request.body()
    try:
        event = WebhookEvent.parse(raw_body, request.headers)
        reconciler = WebhookReconciler(PaymentService(session, gateway), gateway)
        await reconciler.ingest(event)
    except AppError as e:
        await session.rollback()
        log_warning(
            logger,
            f"Webhook not applied: {e.message}",
            error_type=type(e).__name__,
            status_code=e.status_code,
        )
    except Exception as e:
        await session.rollback()
        log_error(logger, "Webhook processing failed", exception=e)
    return WebhookAck(received=True)


# ==================== Specific routes before parameterized routes ====================

@router.get("/history", response_model=PaymentHistoryResponse)
async def get_payment_history(
    limit: int = Query(20, description="Page size, clamped to 1..100"),
    offset: int = Query(0, description="Rows to skip, negative treated as 0"),
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    member: Member = Depends(get_current_member),
    service: PaymentService = Depends(get_payment_service),
):
    """Get the authenticated member's payments, newest first."""
    payments, total, limit, offset = await service.get_history(
        member.id, limit=limit, offset=offset, status=status_filter
    )
    items = [await _payment_response(service.session, p) for p in payments]
    return PaymentHistoryResponse(items=items, total=total, limit=limit, offset=offset)


@router.get("/methods", response_model=PaymentMethodsResponse)
async def list_payment_methods():
    """Supported payment methods and their amount limits in minor units."""
    return PaymentMethodsResponse(
        methods=[
            PaymentMethodInfo(
                method=method,
                currency=settings.PAYMENT_CURRENCY,
                min_amount=minimum,
                max_amount=maximum,
            )
            for method, (minimum, maximum) in AMOUNT_LIMITS.items()
        ]
    )


@router.get("/public-key", response_model=PublicKeyResponse)
async def get_public_key(gateway: PaymentGatewayInterface = Depends(get_gateway)):
    """Gateway public key used by clients to tokenise cards."""
    public_key = gateway.get_public_key()
    if not public_key:
        raise InternalError("Payment gateway public key not configured")
    return PublicKeyResponse(public_key=public_key)


@router.get("/statistics", response_model=PaymentStatisticsResponse)
async def get_payment_statistics(
    member: Member = Depends(get_current_member),
    service: PaymentService = Depends(get_payment_service),
):
    stats = await service.get_statistics(member.id)
    return PaymentStatisticsResponse(currency=settings.PAYMENT_CURRENCY, **stats)


# ==================== Payment by ID ====================

@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: uuid.UUID,
    member: Member = Depends(get_current_member),
    service: PaymentService = Depends(get_payment_service),
):
    """Get a payment with its subscription summary."""
    payment = await _owned_payment(service, payment_id, member)
    return await _payment_response(service.session, payment)


@router.get("/{payment_id}/poll", response_model=PaymentResponse)
async def poll_payment(
    payment_id: uuid.UUID,
    max_attempts: Optional[int] = Query(None, alias="maxAttempts", description="Clamped to 1..300"),
    member: Member = Depends(get_current_member),
    service: PaymentService = Depends(get_payment_service),
):
    """Wait for a payment to reach a terminal status.

    Responds 408 with the last known status if it does not get there in time.
    """
    await _owned_payment(service, payment_id, member)
    payment = await StatusPoller(service).poll(payment_id, max_attempts)
    return await _payment_response(service.session, payment)


@router.post("/{payment_id}/refresh", response_model=PaymentResponse)
async def refresh_payment(
    payment_id: uuid.UUID,
    member: Member = Depends(get_current_member),
    service: PaymentService = Depends(get_payment_service),
):
    """Check the charge with the gateway once and apply its status."""
    await _owned_payment(service, payment_id, member)
    result = await service.refresh_from_gateway(payment_id)
    return await _payment_response(service.session, result.payment)
