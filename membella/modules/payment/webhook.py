"""Gateway webhook reconciliation.

Deliveries may repeat or arrive out of order. Nothing is stored to
deduplicate them: replaying an event asks for a transition the payment has
already made, which the state machine treats as a no-op.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from membella.core.exceptions import InvalidEventStructure, PaymentNotFound, UnverifiedEvent
from membella.core.metrics import WEBHOOK_EVENTS_TOTAL
from membella.modules.payment.interface import PaymentGatewayInterface
from membella.modules.payment.models import Payment, PaymentStatus
from membella.modules.payment.repository import PaymentRepository
from membella.modules.payment.service import PaymentService
from membella.modules.payment.state import TransitionOutcome

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Webhook event keys the reconciler acts on."""
    CHARGE_COMPLETE = "charge.complete"
    CHARGE_SUCCESSFUL = "charge.successful"
    CHARGE_FAILED = "charge.failed"
    CHARGE_EXPIRED = "charge.expired"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def from_key(cls, key: str) -> "EventKind":
        try:
            kind = cls(key)
        except ValueError:
            return cls.UNRECOGNIZED
        return kind


EVENT_TARGET_STATUS: dict[EventKind, PaymentStatus] = {
    EventKind.CHARGE_COMPLETE: PaymentStatus.SUCCESSFUL,
    EventKind.CHARGE_SUCCESSFUL: PaymentStatus.SUCCESSFUL,
    EventKind.CHARGE_FAILED: PaymentStatus.FAILED,
    EventKind.CHARGE_EXPIRED: PaymentStatus.EXPIRED,
}


@dataclass
class WebhookEvent:
    """A parsed webhook delivery plus what is needed to verify it."""
    key: str
    data: dict[str, Any]
    raw_body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)
    event_id: Optional[str] = None

    @classmethod
    def parse(cls, raw_body: bytes, headers: Mapping[str, str]) -> "WebhookEvent":
        """Parse a delivery body.

        Raises:
            InvalidEventStructure: If the body is not a JSON object with a
                string ``key`` and an object ``data``
        """
        try:
            body = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidEventStructure("Webhook body is not valid JSON") from e

        if not isinstance(body, dict):
            raise InvalidEventStructure()
        key = body.get("key")
        data = body.get("data")
        if not isinstance(key, str) or not key:
            raise InvalidEventStructure("Webhook event has no key")
        if not isinstance(data, dict):
            raise InvalidEventStructure("Webhook event has no data")

        return cls(
            key=key,
            data=data,
            raw_body=raw_body,
            headers=dict(headers),
            event_id=body.get("id"),
        )

    @property
    def kind(self) -> EventKind:
        return EventKind.from_key(self.key)

    @property
    def charge_id(self) -> Optional[str]:
        charge_id = self.data.get("id")
        return charge_id if isinstance(charge_id, str) else None

    @property
    def metadata_payment_id(self) -> Optional[uuid.UUID]:
        metadata = self.data.get("metadata")
        if not isinstance(metadata, dict) or not metadata.get("payment_id"):
            return None
        try:
            return uuid.UUID(str(metadata["payment_id"]))
        except ValueError:
            return None


@dataclass
class ReconcileOutcome:
    kind: EventKind
    payment_id: Optional[uuid.UUID] = None
    previous_status: Optional[PaymentStatus] = None
    status: Optional[PaymentStatus] = None
    applied: bool = False


# Charge statuses a ``charge.complete`` payload may carry
CARRIED_CHARGE_STATUS: dict[str, PaymentStatus] = {
    "successful": PaymentStatus.SUCCESSFUL,
    "failed": PaymentStatus.FAILED,
    "expired": PaymentStatus.EXPIRED,
    "pending": PaymentStatus.PENDING,
    "reversed": PaymentStatus.REFUNDED,
    "refunded": PaymentStatus.REFUNDED,
}


def target_status(event: WebhookEvent) -> Optional[PaymentStatus]:
    """Status an event asks for, or None for events to ignore.

    ``charge.complete`` is sent for every completed charge, so the status in
    its payload decides. Only a payload without a status is read as
    ``successful``; a status we do not know is ignored.
    """
    kind = event.kind
    if kind == EventKind.CHARGE_COMPLETE:
        carried = str(event.data.get("status") or "").lower()
        if carried:
            return CARRIED_CHARGE_STATUS.get(carried)
    return EVENT_TARGET_STATUS.get(kind)


class WebhookReconciler:
    """Applies verified gateway events to payments."""

    def __init__(self, payment_service: PaymentService, gateway: PaymentGatewayInterface):
        self.payment_service = payment_service
        self.gateway = gateway
        self.payment_repo: PaymentRepository = payment_service.payment_repo

    async def ingest(self, event: WebhookEvent) -> ReconcileOutcome:
        """Verify an event and drive the matching payment's status.

        Raises:
            UnverifiedEvent: If the gateway does not vouch for the delivery
            PaymentNotFound: If no payment matches the event's charge
        """
        if not self.gateway.verify_webhook_signature(event.raw_body, event.headers):
            WEBHOOK_EVENTS_TOTAL.labels(kind=event.kind.value, outcome="unverified").inc()
            raise UnverifiedEvent()

        kind = event.kind
        new_status = target_status(event)
        if new_status is None:
            WEBHOOK_EVENTS_TOTAL.labels(kind=kind.value, outcome="ignored").inc()
            logger.info(f"Ignoring webhook event {event.key}", extra={"event_id": event.event_id})
            return ReconcileOutcome(kind=kind)

        payment = await self._find_payment(event)
        if payment is None:
            WEBHOOK_EVENTS_TOTAL.labels(kind=kind.value, outcome="not_found").inc()
            raise PaymentNotFound(f"No payment for charge {event.charge_id}")

        result = await self.payment_service.transition(
            payment.id,
            new_status,
            failure_code=event.data.get("failure_code"),
            failure_message=event.data.get("failure_message"),
            gateway_response=event.data,
        )

        WEBHOOK_EVENTS_TOTAL.labels(kind=kind.value, outcome=result.outcome.value).inc()
        logger.info(
            f"Webhook {event.key} reconciled: {result.outcome.value}",
            extra={
                "event_id": event.event_id,
                "charge_id": event.charge_id,
                "payment_id": str(payment.id),
                "status": result.payment.status,
            },
        )
        return ReconcileOutcome(
            kind=kind,
            payment_id=payment.id,
            previous_status=result.previous_status,
            status=PaymentStatus(result.payment.status),
            applied=result.outcome == TransitionOutcome.APPLIED,
        )

    async def _find_payment(self, event: WebhookEvent) -> Optional[Payment]:
        if event.charge_id:
            payment = await self.payment_repo.get_by_charge_id(event.charge_id)
            if payment is not None:
                return payment
        payment_id = event.metadata_payment_id
        if payment_id is not None:
            payment = await self.payment_repo.get_by_id(payment_id, fresh=True)
            if payment is not None and payment.gateway_charge_id in (None, event.charge_id):
                return payment
        return None
