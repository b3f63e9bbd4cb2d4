"""Tests for the Omise gateway adapter over a mocked HTTP transport."""

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime

import httpx
import pytest
from hypothesis import given, strategies as st

from membella.core.exceptions import GatewayError
from membella.modules.payment.gateways.omise import (
    DECLINE_MESSAGES,
    OMISE_STATUS_MAP,
    OmiseGateway,
    decline_message,
    map_charge_status,
)
from membella.modules.payment.interface import ChargeRequest
from membella.modules.payment.models import PaymentMethod, PaymentStatus

WEBHOOK_SECRET = base64.b64encode(b"whsec-test-bytes").decode()


class OmiseStub:
    """Records requests and answers from a route table."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, body = self.routes[(request.method, request.url.path)]
        return httpx.Response(status_code, json=body)

    def json_body(self, index: int) -> dict:
        return json.loads(self.requests[index].content)


def make_gateway(handler, **kwargs) -> OmiseGateway:
    return OmiseGateway(
        secret_key="skey_test_123",
        public_key="pkey_test_123",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def card_request(**overrides) -> ChargeRequest:
    values = dict(
        amount=50000,
        currency="thb",
        method=PaymentMethod.CARD,
        description="Subscription: Monthly - Bangkok Yoga",
        source="tokn_test_5xyz",
        metadata={"payment_id": "p-1"},
    )
    values.update(overrides)
    return ChargeRequest(**values)


# ==================== Status mapping ====================

@given(st.sampled_from(sorted(OMISE_STATUS_MAP)))
def test_known_statuses_map_case_insensitively(omise_status):
    assert map_charge_status(omise_status) == OMISE_STATUS_MAP[omise_status]
    assert map_charge_status(omise_status.upper()) == OMISE_STATUS_MAP[omise_status]


@given(st.text().filter(lambda s: s.lower() not in OMISE_STATUS_MAP))
def test_unknown_statuses_map_to_pending(omise_status):
    assert map_charge_status(omise_status) == PaymentStatus.PENDING


def test_decline_messages():
    assert decline_message("insufficient_fund", "x") == DECLINE_MESSAGES["insufficient_fund"]
    assert decline_message("weird_code", "bank said no") == "Card payment failed: bank said no"
    assert decline_message(None, None) == "Card payment failed: unknown error"


# ==================== Charges ====================

@pytest.mark.asyncio
async def test_card_charge_paid_is_successful():
    stub = OmiseStub({("POST", "/charges"): (200, {"object": "charge", "id": "chrg_1", "status": "successful", "paid": True})})
    gateway = make_gateway(stub)

    result = await gateway.create_charge(card_request())

    assert result.charge_id == "chrg_1"
    assert result.status == PaymentStatus.SUCCESSFUL
    sent = stub.json_body(0)
    assert sent["card"] == "tokn_test_5xyz"
    assert sent["capture"] is True
    assert sent["currency"] == "THB"
    assert sent["metadata"] == {"payment_id": "p-1", "payment_method": "card"}
    request = stub.requests[0]
    assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"skey_test_123:").decode()
    assert request.headers["Omise-Version"] == "2019-05-29"


@pytest.mark.asyncio
async def test_card_charge_sends_return_uri_when_given():
    stub = OmiseStub({("POST", "/charges"): (200, {"object": "charge", "id": "chrg_3ds", "status": "pending", "authorize_uri": "https://pay.omise.co/3ds/chrg_3ds"})})
    gateway = make_gateway(stub)

    result = await gateway.create_charge(card_request(return_uri="https://app.membella.test/payments/return"))

    assert stub.json_body(0)["return_uri"] == "https://app.membella.test/payments/return"
    assert result.status == PaymentStatus.PENDING
    assert result.authorize_uri == "https://pay.omise.co/3ds/chrg_3ds"


@pytest.mark.asyncio
async def test_promptpay_creates_source_then_charge():
    source = {
        "object": "source",
        "id": "src_1",
        "type": "promptpay",
        "scannable_code": {"image": {"download_uri": "https://api.omise.co/qr/src_1.png"}},
        "expires_at": "2026-10-18T10:00:00Z",
    }
    stub = OmiseStub({
        ("POST", "/sources"): (200, source),
        ("POST", "/charges"): (200, {"object": "charge", "id": "chrg_2", "status": "pending", "paid": False}),
    })
    gateway = make_gateway(stub)

    result = await gateway.create_charge(
        card_request(method=PaymentMethod.PROMPTPAY, source=None, amount=15000)
    )

    assert [r.url.path for r in stub.requests] == ["/sources", "/charges"]
    assert stub.json_body(0) == {"type": "promptpay", "amount": 15000, "currency": "THB"}
    assert stub.json_body(1)["source"] == "src_1"
    assert stub.json_body(1)["capture"] is False
    assert result.status == PaymentStatus.PENDING
    assert result.source_id == "src_1"
    assert result.qr_code_url == "https://api.omise.co/qr/src_1.png"
    assert result.expires_at == datetime(2026, 10, 18, 10, 0, 0)


@pytest.mark.asyncio
async def test_failed_charge_carries_mapped_message():
    stub = OmiseStub({("POST", "/charges"): (200, {
        "object": "charge",
        "id": "chrg_3",
        "status": "failed",
        "failure_code": "insufficient_fund",
        "failure_message": "insufficient funds in the account",
    })})

    result = await make_gateway(stub).create_charge(card_request())

    assert result.status == PaymentStatus.FAILED
    assert result.failure_code == "insufficient_fund"
    assert result.failure_message == DECLINE_MESSAGES["insufficient_fund"]


@pytest.mark.asyncio
async def test_error_object_raises_payment_required():
    stub = OmiseStub({("POST", "/charges"): (402, {
        "object": "error", "code": "stolen_or_lost_card", "message": "card stolen",
    })})

    with pytest.raises(GatewayError) as exc_info:
        await make_gateway(stub).create_charge(card_request())

    assert exc_info.value.status_code == 402
    assert exc_info.value.code == "stolen_or_lost_card"
    assert exc_info.value.message == DECLINE_MESSAGES["stolen_or_lost_card"]


@pytest.mark.asyncio
async def test_invalid_card_raises_bad_request():
    stub = OmiseStub({("POST", "/charges"): (400, {
        "object": "error", "code": "invalid_card", "message": "number is invalid",
    })})

    with pytest.raises(GatewayError) as exc_info:
        await make_gateway(stub).create_charge(card_request())

    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_transport_failure_raises_bad_gateway():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError) as exc_info:
        await make_gateway(unreachable).get_charge("chrg_1")

    assert exc_info.value.status_code == 502
    assert exc_info.value.code == "gateway_unavailable"


@pytest.mark.asyncio
async def test_get_charge_maps_status():
    stub = OmiseStub({("GET", "/charges/chrg_9"): (200, {"object": "charge", "id": "chrg_9", "status": "expired"})})

    snapshot = await make_gateway(stub).get_charge("chrg_9")

    assert snapshot.charge_id == "chrg_9"
    assert snapshot.status == PaymentStatus.EXPIRED


def test_public_key():
    assert make_gateway(lambda r: httpx.Response(200)).get_public_key() == "pkey_test_123"
    assert OmiseGateway(secret_key="skey").get_public_key() is None


# ==================== Webhook signatures ====================

def sign(body: bytes, timestamp: int, secret: str = WEBHOOK_SECRET) -> str:
    key = base64.b64decode(secret)
    return hmac.new(key, str(timestamp).encode() + b"." + body, hashlib.sha256).hexdigest()


def signed_headers(body: bytes, timestamp: int, signature: str) -> dict:
    return {"Omise-Signature": signature, "Omise-Signature-Timestamp": str(timestamp)}


BODY = b'{"key": "charge.complete", "data": {"id": "chrg_1"}}'


def test_valid_signature_accepted():
    gateway = OmiseGateway(secret_key="skey", webhook_secret=WEBHOOK_SECRET)
    now = int(time.time())

    assert gateway.verify_webhook_signature(BODY, signed_headers(BODY, now, sign(BODY, now)))


def test_any_of_several_signatures_accepted():
    """During secret rotation the header carries a comma separated list."""
    gateway = OmiseGateway(secret_key="skey", webhook_secret=WEBHOOK_SECRET)
    now = int(time.time())
    header = f"deadbeef,{sign(BODY, now)}"

    assert gateway.verify_webhook_signature(BODY, signed_headers(BODY, now, header))


def test_tampered_body_rejected():
    gateway = OmiseGateway(secret_key="skey", webhook_secret=WEBHOOK_SECRET)
    now = int(time.time())
    signature = sign(BODY, now)

    assert not gateway.verify_webhook_signature(BODY + b" ", signed_headers(BODY, now, signature))


def test_stale_timestamp_rejected():
    gateway = OmiseGateway(secret_key="skey", webhook_secret=WEBHOOK_SECRET, signature_tolerance_seconds=300)
    old = int(time.time()) - 3600

    assert not gateway.verify_webhook_signature(BODY, signed_headers(BODY, old, sign(BODY, old)))


def test_missing_headers_rejected():
    gateway = OmiseGateway(secret_key="skey", webhook_secret=WEBHOOK_SECRET)

    assert not gateway.verify_webhook_signature(BODY, {})
    assert not gateway.verify_webhook_signature(
        BODY, {"Omise-Signature": "abc", "Omise-Signature-Timestamp": "yesterday"}
    )


def test_unsigned_events_depend_on_configuration():
    assert OmiseGateway(secret_key="skey", allow_unsigned_webhooks=True).verify_webhook_signature(BODY, {})
    assert not OmiseGateway(secret_key="skey").verify_webhook_signature(BODY, {})
