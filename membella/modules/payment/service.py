"""Payment workflow: checkout, status transitions and gateway refresh.

All status changes funnel through :meth:`PaymentService.transition`, which
uses a conditional update so that, of any number of concurrent callers, only
one observes the change. That caller alone activates the subscription.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from membella.core.clock import utcnow
from membella.core.config import settings
from membella.core.exceptions import (
    DuplicateActiveSubscription,
    GatewayError,
    InvalidPaymentMethod,
    InvalidPaymentSource,
    NotFoundError,
    PaymentNotFound,
    PlanNotFound,
    ValidationError,
)
from membella.core.metrics import PAYMENT_TRANSITIONS_TOTAL, PAYMENTS_CREATED_TOTAL
from membella.modules.member.repository import MemberRepository
from membella.modules.payment.interface import ChargeRequest, PaymentGatewayInterface
from membella.modules.payment.models import Payment, PaymentMethod, PaymentStatus
from membella.modules.payment.repository import PaymentRepository
from membella.modules.payment.state import TransitionOutcome, can_transition
from membella.modules.subscription.repository import SubscriptionRepository
from membella.modules.subscription.service import SubscriptionActivationEngine

logger = logging.getLogger(__name__)


CARD_TOKEN_PREFIX = "tokn_"

# Per-method limits in minor units (satang)
AMOUNT_LIMITS: dict[PaymentMethod, tuple[int, int]] = {
    PaymentMethod.CARD: (100, 20_000_000),
    PaymentMethod.PROMPTPAY: (2_000, 5_000_000),
}

MAX_HISTORY_LIMIT = 100
DEFAULT_HISTORY_LIMIT = 20


def to_minor_units(price: Decimal) -> int:
    """Convert a major-unit price to integer minor units, rounding half up."""
    return int((Decimal(price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def clamp_page(limit: Optional[int], offset: Optional[int]) -> tuple[int, int]:
    """Clamp history paging to ``1 <= limit <= 100`` and ``offset >= 0``."""
    if limit is None:
        limit = DEFAULT_HISTORY_LIMIT
    return max(1, min(limit, MAX_HISTORY_LIMIT)), max(0, offset or 0)


def parse_method(method: Any) -> PaymentMethod:
    try:
        return PaymentMethod(method)
    except ValueError:
        raise InvalidPaymentMethod() from None


def validate_source(method: PaymentMethod, source: Optional[str]) -> Optional[str]:
    """Check the payment source matches the method.

    Card payments need a gateway card token; PromptPay takes none.
    """
    if method == PaymentMethod.CARD:
        if not source or not isinstance(source, str) or not source.startswith(CARD_TOKEN_PREFIX):
            raise InvalidPaymentSource("Valid card token is required for card payments")
        return source
    if source:
        raise InvalidPaymentSource("PromptPay payments do not take a payment source")
    return None


def validate_amount(method: PaymentMethod, amount: int) -> None:
    minimum, maximum = AMOUNT_LIMITS[method]
    if amount < minimum:
        raise ValidationError(
            f"Minimum {method.value} payment is {minimum / 100:.2f} {settings.PAYMENT_CURRENCY}"
        )
    if amount > maximum:
        raise ValidationError(
            f"Maximum {method.value} payment is {maximum / 100:.2f} {settings.PAYMENT_CURRENCY}"
        )


@dataclass
class TransitionResult:
    """Outcome of a requested status change."""
    payment: Payment
    previous_status: PaymentStatus
    outcome: TransitionOutcome

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


class PaymentService:
    """Service for the payment state machine."""

    def __init__(self, session: AsyncSession, gateway: PaymentGatewayInterface):
        self.session = session
        self.gateway = gateway
        self.payment_repo = PaymentRepository(session)
        self.member_repo = MemberRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.activation = SubscriptionActivationEngine(session)

    # ==================== Checkout ====================

    async def create_payment(
        self,
        member_id: uuid.UUID,
        plan_id: uuid.UUID,
        method: Any,
        source: Optional[str] = None,
        customer_data: Optional[dict[str, Any]] = None,
    ) -> Payment:
        """Create a payment for a plan and submit the charge to the gateway.

        All validation happens before the gateway is contacted.

        Args:
            member_id: Paying member
            plan_id: Plan being bought
            method: ``card`` or ``promptpay``
            source: Card token for card payments
            customer_data: Free-form customer details kept in metadata

        Returns:
            The payment: ``successful`` for an instantly confirmed card,
            ``pending`` for PromptPay or a card awaiting authorisation

        Raises:
            NotFoundError: Member not found or inactive
            InvalidPaymentMethod: Unknown method
            InvalidPaymentSource: Source does not match the method
            PlanNotFound: Plan missing or not offered by the member's owner
            DuplicateActiveSubscription: Member already subscribed to the plan
            ValidationError: Amount outside the method's limits
            GatewayError: The gateway rejected or declined the charge
        """
        member = await self.member_repo.get_member(member_id)
        if member is None or not member.is_active:
            raise NotFoundError("Member not found")

        payment_method = parse_method(method)
        source = validate_source(payment_method, source)

        plan = await self.member_repo.get_plan_for_owner(plan_id, member.owner_id)
        if plan is None:
            raise PlanNotFound()

        if await self.subscription_repo.get_active(member.id, plan.id) is not None:
            raise DuplicateActiveSubscription()

        amount = to_minor_units(plan.price)
        validate_amount(payment_method, amount)

        owner = await self.member_repo.get_owner(member.owner_id)
        if owner is None:
            raise NotFoundError("Organization not found")
        description = f"Subscription: {plan.name} - {owner.org_name}"
        metadata = {
            "plan_name": plan.name,
            "organization": owner.org_name,
            "member_email": member.email,
            "member_name": member.full_name,
            "customer_data": customer_data or {},
        }

        payment = await self.payment_repo.create(
            member_id=member.id,
            plan_id=plan.id,
            amount=amount,
            currency=settings.PAYMENT_CURRENCY,
            payment_method=payment_method.value,
            status=PaymentStatus.PENDING.value,
            description=description,
            payment_metadata=metadata,
        )
        await self.session.commit()
        PAYMENTS_CREATED_TOTAL.labels(method=payment_method.value).inc()

        logger.info(
            "Payment created",
            extra={
                "payment_id": str(payment.id),
                "member_id": str(member.id),
                "plan_id": str(plan.id),
                "method": payment_method.value,
                "amount": amount,
            },
        )

        try:
            charge = await self.gateway.create_charge(
                ChargeRequest(
                    amount=amount,
                    currency=settings.PAYMENT_CURRENCY,
                    method=payment_method,
                    description=description,
                    source=source,
                    return_uri=settings.PAYMENT_RETURN_URI,
                    metadata={
                        "payment_id": str(payment.id),
                        "member_id": str(member.id),
                        "plan_id": str(plan.id),
                        "plan_name": plan.name,
                        "organization": owner.org_name,
                    },
                )
            )
        except GatewayError as e:
            logger.warning(
                f"Gateway rejected charge: {e.message}",
                extra={"payment_id": str(payment.id), "gateway_code": e.code},
            )
            await self.transition(
                payment.id,
                PaymentStatus.FAILED,
                failure_code=e.code,
                failure_message=e.message,
            )
            raise

        await self.payment_repo.update_fields(
            payment.id,
            gateway_charge_id=charge.charge_id or None,
            gateway_source_id=charge.source_id,
            qr_code_url=charge.qr_code_url,
            authorize_uri=charge.authorize_uri,
            expires_at=charge.expires_at,
            gateway_response=charge.gateway_response,
        )
        await self.session.commit()

        if charge.status == PaymentStatus.PENDING:
            return await self._reload(payment.id)

        result = await self.transition(
            payment.id,
            charge.status,
            failure_code=charge.failure_code,
            failure_message=charge.failure_message,
        )

        if result.payment.status == PaymentStatus.FAILED.value:
            raise GatewayError(
                charge.failure_message or "Payment was declined",
                code=charge.failure_code,
                details={"paymentId": str(payment.id)},
            )
        return result.payment

    # ==================== State machine ====================

    async def transition(
        self,
        payment_id: uuid.UUID,
        new_status: PaymentStatus,
        **fields: Any,
    ) -> TransitionResult:
        """Move a payment to ``new_status`` if the transition table allows it.

        A same-status request or a disallowed edge is a no-op rather than an
        error. The change is committed before returning; a move into
        ``successful`` activates the subscription in the same transaction.

        Args:
            payment_id: Payment UUID
            new_status: Target status
            **fields: Extra columns to store with the change
                (``failure_code``, ``failure_message``, ``gateway_response``)

        Raises:
            PaymentNotFound: If the payment does not exist
        """
        new_status = PaymentStatus(new_status)
        payment = await self.payment_repo.get_by_id(payment_id, fresh=True)
        if payment is None:
            raise PaymentNotFound()

        current = PaymentStatus(payment.status)
        fields = {k: v for k, v in fields.items() if v is not None}

        if current == new_status:
            if fields:
                await self.payment_repo.update_fields(payment_id, **fields)
                await self.session.commit()
                payment = await self._reload(payment_id)
            return self._record(payment, current, new_status, TransitionOutcome.UNCHANGED)

        if not can_transition(current, new_status):
            logger.warning(
                f"Ignoring disallowed payment transition {current.value} -> {new_status.value}",
                extra={"payment_id": str(payment_id)},
            )
            return self._record(payment, current, new_status, TransitionOutcome.REJECTED)

        if new_status in (PaymentStatus.SUCCESSFUL, PaymentStatus.FAILED, PaymentStatus.EXPIRED):
            fields.setdefault("completed_at", utcnow())

        won = await self.payment_repo.compare_and_set_status(payment_id, current, new_status, **fields)
        if not won:
            await self.session.commit()
            payment = await self._reload(payment_id)
            logger.info(
                "Payment transition lost to a concurrent update",
                extra={"payment_id": str(payment_id), "status": payment.status},
            )
            return self._record(payment, current, new_status, TransitionOutcome.LOST_RACE)

        try:
            if new_status == PaymentStatus.SUCCESSFUL:
                payment = await self._reload(payment_id)
                activation = await self.activation.activate(payment)
                await self.payment_repo.update_fields(
                    payment_id, subscription_id=activation.subscription.id
                )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        payment = await self._reload(payment_id)
        logger.info(
            f"Payment {current.value} -> {new_status.value}",
            extra={"payment_id": str(payment_id), "member_id": str(payment.member_id)},
        )
        return self._record(payment, current, new_status, TransitionOutcome.APPLIED)

    async def refresh_from_gateway(self, payment_id: uuid.UUID) -> TransitionResult:
        """Ask the gateway for the charge's status and apply it.

        Raises:
            PaymentNotFound: If the payment does not exist
            ValidationError: If the payment has no gateway charge yet
            GatewayError: If the gateway cannot be queried
        """
        payment = await self.payment_repo.get_by_id(payment_id, fresh=True)
        if payment is None:
            raise PaymentNotFound()
        if not payment.gateway_charge_id:
            raise ValidationError("Payment has no gateway charge to refresh")

        snapshot = await self.gateway.get_charge(payment.gateway_charge_id)
        return await self.transition(
            payment_id,
            snapshot.status,
            failure_code=snapshot.failure_code,
            failure_message=snapshot.failure_message,
            gateway_response=snapshot.gateway_response,
        )

    # ==================== Queries ====================

    async def get_payment(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.payment_repo.get_by_id(payment_id, fresh=True)
        if payment is None:
            raise PaymentNotFound()
        return payment

    async def get_history(
        self,
        member_id: uuid.UUID,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        status: Optional[PaymentStatus] = None,
    ) -> tuple[list[Payment], int, int, int]:
        """Page through a member's payments.

        Returns:
            (payments, total, limit, offset) with the clamped paging values
        """
        limit, offset = clamp_page(limit, offset)
        payments = await self.payment_repo.list_by_member(member_id, limit, offset, status)
        total = await self.payment_repo.count_by_member(member_id, status)
        return payments, total, limit, offset

    async def get_statistics(self, member_id: uuid.UUID) -> dict[str, Any]:
        return await self.payment_repo.get_statistics(member_id)

    async def _reload(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.payment_repo.get_by_id(payment_id, fresh=True)
        if payment is None:
            raise PaymentNotFound()
        return payment

    def _record(
        self,
        payment: Payment,
        previous: PaymentStatus,
        requested: PaymentStatus,
        outcome: TransitionOutcome,
    ) -> TransitionResult:
        PAYMENT_TRANSITIONS_TOTAL.labels(
            from_status=previous.value, to_status=requested.value, outcome=outcome.value
        ).inc()
        return TransitionResult(payment=payment, previous_status=previous, outcome=outcome)
