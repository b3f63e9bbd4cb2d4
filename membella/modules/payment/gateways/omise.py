"""Omise payment gateway implementation.

Supports card charges (client-side tokens, ``tokn_...``) and PromptPay QR
charges, both in THB satang.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import httpx

from membella.core.config import Settings
from membella.core.exceptions import GatewayError
from membella.core.logging import log_error
from membella.core.metrics import GATEWAY_REQUESTS_TOTAL
from membella.modules.payment.interface import (
    ChargeRequest,
    ChargeResult,
    ChargeSnapshot,
    PaymentGatewayInterface,
)
from membella.modules.payment.models import PaymentMethod, PaymentStatus

logger = logging.getLogger(__name__)


OMISE_STATUS_MAP: dict[str, PaymentStatus] = {
    "pending": PaymentStatus.PENDING,
    "successful": PaymentStatus.SUCCESSFUL,
    "failed": PaymentStatus.FAILED,
    "expired": PaymentStatus.EXPIRED,
    "reversed": PaymentStatus.REFUNDED,
    "voided": PaymentStatus.FAILED,
}

DECLINE_MESSAGES: dict[str, str] = {
    "invalid_card": "Invalid card information. Please check your card details.",
    "insufficient_fund": "Insufficient funds. Please use a different card.",
    "insufficient_funds": "Insufficient funds. Please use a different card.",
    "stolen_or_lost_card": "This card has been reported as lost or stolen.",
    "expired_card": "Your card has expired. Please use a different card.",
    "processing_error": "Payment processing error. Please try again.",
    "failed_processing": "Payment processing failed. Please try again.",
    "invalid_security_code": "Invalid security code (CVV). Please check and try again.",
    "limit_exceeded": "Card limit exceeded. Please use a different card.",
}

# Codes that mean the request itself was malformed rather than declined
INVALID_REQUEST_CODES = frozenset({
    "invalid_card",
    "invalid_security_code",
    "invalid_charge",
    "invalid_amount",
    "bad_request",
    "not_found",
    "used_token",
})


def map_charge_status(omise_status: Optional[str]) -> PaymentStatus:
    """Map an Omise charge status onto a payment status; unknown maps to pending."""
    return OMISE_STATUS_MAP.get((omise_status or "").lower(), PaymentStatus.PENDING)


def decline_message(code: Optional[str], message: Optional[str]) -> str:
    """Human readable message for an Omise failure code."""
    if code and code in DECLINE_MESSAGES:
        return DECLINE_MESSAGES[code]
    return f"Card payment failed: {message or code or 'unknown error'}"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable Omise timestamp: {value!r}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _qr_code_url(obj: Optional[dict]) -> Optional[str]:
    """Extract ``scannable_code.image.download_uri`` from a source object."""
    if not obj:
        return None
    image = (obj.get("scannable_code") or {}).get("image") or {}
    return image.get("download_uri")


class OmiseGateway(PaymentGatewayInterface):
    """Omise payment gateway over its REST API.

    Webhook deliveries are authenticated with the ``Omise-Signature`` and
    ``Omise-Signature-Timestamp`` headers: an HMAC-SHA256 of
    ``"<timestamp>.<body>"`` keyed with the base64-decoded webhook secret.
    """

    name = "omise"

    SIGNATURE_HEADER = "omise-signature"
    TIMESTAMP_HEADER = "omise-signature-timestamp"

    def __init__(
        self,
        secret_key: str,
        public_key: str = "",
        webhook_secret: Optional[str] = None,
        api_url: str = "https://api.omise.co",
        api_version: str = "2019-05-29",
        timeout: float = 30.0,
        signature_tolerance_seconds: int = 300,
        allow_unsigned_webhooks: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.public_key = public_key
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.signature_tolerance_seconds = signature_tolerance_seconds
        self.allow_unsigned_webhooks = allow_unsigned_webhooks
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "OmiseGateway":
        return cls(
            secret_key=settings.OMISE_SECRET_KEY,
            public_key=settings.OMISE_PUBLIC_KEY,
            webhook_secret=settings.OMISE_WEBHOOK_SECRET,
            api_url=settings.OMISE_API_URL,
            api_version=settings.OMISE_API_VERSION,
            timeout=settings.OMISE_TIMEOUT_SECONDS,
            signature_tolerance_seconds=settings.OMISE_WEBHOOK_TOLERANCE_SECONDS,
            allow_unsigned_webhooks=not settings.is_production,
        )

    def get_public_key(self) -> Optional[str]:
        return self.public_key or None

    def _get_auth_header(self) -> str:
        """Get Basic auth header for the Omise API."""
        auth = base64.b64encode(f"{self.secret_key}:".encode()).decode()
        return f"Basic {auth}"

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        operation: str,
        data: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request to the Omise API.

        Raises:
            GatewayError: On an Omise error object, a non-2xx response or a
                transport failure
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method=method,
                    url=f"{self.api_url}{endpoint}",
                    headers={
                        "Authorization": self._get_auth_header(),
                        "Omise-Version": self.api_version,
                        "Content-Type": "application/json",
                    },
                    json=data,
                )
        except httpx.HTTPError as e:
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, status="unreachable").inc()
            log_error(logger, f"Omise {operation} transport error", exception=e, operation=operation)
            raise GatewayError(
                "Payment gateway is unavailable. Please try again later.",
                code="gateway_unavailable",
                status_code=502,
            ) from e

        body: dict[str, Any] = {}
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = {}

        if response.is_error or body.get("object") == "error":
            code = body.get("code") or f"http_{response.status_code}"
            message = body.get("message") or response.reason_phrase
            GATEWAY_REQUESTS_TOTAL.labels(operation=operation, status="error").inc()
            logger.warning(
                f"Omise {operation} rejected: {code}",
                extra={"omise_code": code, "omise_message": message, "http_status": response.status_code},
            )
            raise GatewayError(
                decline_message(code, message),
                code=code,
                status_code=400 if code in INVALID_REQUEST_CODES else 402,
            )

        GATEWAY_REQUESTS_TOTAL.labels(operation=operation, status="ok").inc()
        return body

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Create a card or PromptPay charge.

        PromptPay first creates a ``promptpay`` source, then an uncaptured
        charge against it; the QR image URL comes from the source.
        """
        metadata = {**request.metadata, "payment_method": request.method.value}

        source: Optional[dict] = None
        charge_data: dict[str, Any] = {
            "amount": request.amount,
            "currency": request.currency.upper(),
            "description": request.description,
            "metadata": metadata,
        }

        if request.method == PaymentMethod.CARD:
            charge_data["card"] = request.source
            charge_data["capture"] = True
            if request.return_uri:
                charge_data["return_uri"] = request.return_uri
        elif request.method == PaymentMethod.PROMPTPAY:
            source = await self._make_request(
                "POST",
                "/sources",
                "create_source",
                {
                    "type": "promptpay",
                    "amount": request.amount,
                    "currency": request.currency.upper(),
                },
            )
            if not source.get("id"):
                raise GatewayError("Failed to create PromptPay source", code="source_missing")
            charge_data["source"] = source["id"]
            charge_data["capture"] = False
        else:
            raise GatewayError(f"Unsupported payment method: {request.method}", status_code=400)

        charge = await self._make_request("POST", "/charges", "create_charge", charge_data)
        charge_source = charge.get("source") if isinstance(charge.get("source"), dict) else None

        status = map_charge_status(charge.get("status"))
        if request.method == PaymentMethod.CARD and charge.get("paid"):
            status = PaymentStatus.SUCCESSFUL

        logger.info(
            f"Omise charge created: {charge.get('id')}",
            extra={
                "charge_id": charge.get("id"),
                "omise_status": charge.get("status"),
                "payment_method": request.method.value,
                "amount": request.amount,
            },
        )

        return ChargeResult(
            charge_id=charge.get("id", ""),
            status=status,
            source_id=(source or charge_source or {}).get("id"),
            qr_code_url=_qr_code_url(source) or _qr_code_url(charge_source),
            authorize_uri=charge.get("authorize_uri") if status == PaymentStatus.PENDING else None,
            expires_at=_parse_timestamp(
                (source or {}).get("expires_at")
                or (charge_source or {}).get("expires_at")
                or charge.get("expires_at")
            ),
            failure_code=charge.get("failure_code"),
            failure_message=(
                decline_message(charge.get("failure_code"), charge.get("failure_message"))
                if status == PaymentStatus.FAILED
                else charge.get("failure_message")
            ),
            gateway_response=charge,
        )

    async def get_charge(self, charge_id: str) -> ChargeSnapshot:
        charge = await self._make_request("GET", f"/charges/{charge_id}", "get_charge")
        return ChargeSnapshot(
            charge_id=charge.get("id", charge_id),
            status=map_charge_status(charge.get("status")),
            failure_code=charge.get("failure_code"),
            failure_message=charge.get("failure_message"),
            gateway_response=charge,
        )

    def _signing_key(self) -> bytes:
        secret = self.webhook_secret or ""
        try:
            return base64.b64decode(secret, validate=True)
        except (binascii.Error, ValueError):
            return secret.encode()

    def verify_webhook_signature(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> bool:
        if not self.webhook_secret:
            if self.allow_unsigned_webhooks:
                logger.warning("Omise webhook secret not configured; accepting unsigned event")
                return True
            logger.error("Omise webhook secret not configured; rejecting event")
            return False

        lowered = {k.lower(): v for k, v in headers.items()}
        signatures = lowered.get(self.SIGNATURE_HEADER)
        timestamp = lowered.get(self.TIMESTAMP_HEADER)
        if not signatures or not timestamp:
            return False

        try:
            sent_at = int(timestamp)
        except ValueError:
            return False
        if abs(time.time() - sent_at) > self.signature_tolerance_seconds:
            logger.warning("Omise webhook timestamp outside tolerance", extra={"timestamp": timestamp})
            return False

        signed = timestamp.encode() + b"." + payload
        expected = hmac.new(self._signing_key(), signed, hashlib.sha256).hexdigest()
        return any(
            hmac.compare_digest(expected, candidate.strip())
            for candidate in signatures.split(",")
        )
