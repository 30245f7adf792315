"""Signature checks, event parsing and status mapping for every gateway adapter."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from decimal import Decimal

import httpx
import pytest
import stripe

from alivehome.config import Settings
from alivehome.models import GatewayProvider, PaymentMethod, PaymentStatus
from alivehome.services import ledger
from alivehome.services.gateway_base import ChargeContext, decode_event_type
from alivehome.services.gateway_registry import GatewayRegistry, build_gateway_registry, resolve_provider
from alivehome.services.psp_flutterwave import FlutterwaveAdapter
from alivehome.services.psp_manual import ManualAdapter
from alivehome.services.psp_paypal import PayPalAdapter
from alivehome.services.psp_paystack import PaystackAdapter
from alivehome.services.psp_razorpay import RazorpayAdapter
from alivehome.services.psp_stripe import StripeAdapter
from alivehome.utils.errors import GatewayRejected, GatewayUnavailable, MalformedWebhook, UnsupportedGateway

BODY = json.dumps({"id": "evt_1", "event": "charge.success", "data": {"id": 1, "reference": "12"}}).encode()


def _hex(secret: str, body: bytes, digest=hashlib.sha256) -> str:
    return hmac.new(secret.encode(), body, digest).hexdigest()


def _stripe_header(secret: str, body: bytes, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + body
    return f"t={timestamp},v1={_hex(secret, signed)}"


WEBHOOK_STATUSES = {PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.PENDING}

ALL_ADAPTERS = [
    StripeAdapter(secret_key="sk_test_123", webhook_secret="whsec_test"),
    PayPalAdapter(client_id="id", client_secret="secret", webhook_id="WH-1"),
    RazorpayAdapter(key_id="rzp", key_secret="rzp_secret", webhook_secret="rzp_hook"),
    FlutterwaveAdapter(secret_key="FLWSECK", secret_hash="flw_hash"),
    PaystackAdapter(secret_key="sk_paystack"),
]


def test_razorpay_signature_is_hmac_sha256():
    adapter = RazorpayAdapter(key_id="rzp", key_secret="rzp_secret", webhook_secret="rzp_hook")

    assert adapter.verify_signature(BODY, {"X-Razorpay-Signature": _hex("rzp_hook", BODY)}, "rzp_hook")
    assert not adapter.verify_signature(BODY + b" ", {"X-Razorpay-Signature": _hex("rzp_hook", BODY)}, "rzp_hook")
    assert not adapter.verify_signature(BODY, {}, "rzp_hook")
    assert not adapter.verify_signature(BODY, {"X-Razorpay-Signature": _hex("rzp_hook", BODY)}, None)


def test_flutterwave_signature_header_is_case_insensitive():
    adapter = FlutterwaveAdapter(secret_key="FLWSECK", secret_hash="flw_hash")

    assert adapter.verify_signature(BODY, {"Verif-Hash": _hex("flw_hash", BODY)}, "flw_hash")
    assert not adapter.verify_signature(BODY, {"verif-hash": _hex("other", BODY)}, "flw_hash")


def test_paystack_signature_uses_sha512():
    adapter = PaystackAdapter(secret_key="sk_paystack")

    sha512 = _hex("sk_paystack", BODY, hashlib.sha512)
    assert adapter.verify_signature(BODY, {"X-Paystack-Signature": sha512}, adapter.webhook_secret)
    sha256 = _hex("sk_paystack", BODY)
    assert not adapter.verify_signature(BODY, {"X-Paystack-Signature": sha256}, adapter.webhook_secret)


def test_stripe_signature_checks_tolerance():
    adapter = StripeAdapter(secret_key="sk_test_123", webhook_secret="whsec_test", tolerance_seconds=300)

    assert adapter.verify_signature(BODY, {"Stripe-Signature": _stripe_header("whsec_test", BODY)}, "whsec_test")
    stale = _stripe_header("whsec_test", BODY, timestamp=int(time.time()) - 3600)
    assert not adapter.verify_signature(BODY, {"Stripe-Signature": stale}, "whsec_test")
    assert not adapter.verify_signature(BODY, {"Stripe-Signature": "garbage"}, "whsec_test")


def test_manual_adapters_never_verify():
    adapter = ManualAdapter(GatewayProvider.CASH)

    assert adapter.verify_signature(BODY, {"anything": "x"}, "secret") is False


def test_paypal_signature_is_verified_remotely():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AA", "expires_in": 32400})
        seen.append(json.loads(request.content))
        assert request.headers["Authorization"] == "Bearer A21AA"
        return httpx.Response(200, json={"verification_status": "SUCCESS"})

    client = httpx.Client(base_url="https://paypal.test", transport=httpx.MockTransport(handler))
    adapter = PayPalAdapter(client_id="id", client_secret="secret", webhook_id="WH-1", http_client=client)
    headers = {
        "PAYPAL-TRANSMISSION-ID": "t-1",
        "PAYPAL-TRANSMISSION-TIME": "2026-10-19T10:00:00Z",
        "PAYPAL-TRANSMISSION-SIG": "sig",
        "PAYPAL-CERT-URL": "https://api.paypal.com/cert",
        "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    }

    assert adapter.verify_signature(BODY, headers, "WH-1") is True
    assert seen[0]["webhook_id"] == "WH-1"
    assert seen[0]["transmission_id"] == "t-1"

    # Missing transmission headers never reach the API.
    assert adapter.verify_signature(BODY, {"PAYPAL-TRANSMISSION-ID": "t-1"}, "WH-1") is False
    assert len(seen) == 1


@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda adapter: adapter.provider.value)
def test_status_map_covers_every_event_type(adapter):
    assert adapter.EVENT_TYPES is not None
    assert set(adapter.STATUS_MAP) == set(adapter.EVENT_TYPES)
    assert set(adapter.STATUS_MAP.values()) <= WEBHOOK_STATUSES


@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda adapter: adapter.provider.value)
def test_unknown_event_type_maps_to_pending(adapter):
    assert decode_event_type(adapter.EVENT_TYPES, "something.unheard_of") is None

    body = json.dumps(
        {
            "id": "evt_unknown",
            "type": "something.unheard_of",
            "event": "something.unheard_of",
            "event_type": "SOMETHING.UNHEARD_OF",
            "data": {"id": 1, "status": "mystery", "object": {"id": "pi_1"}},
        }
    ).encode()
    event = adapter.parse_event(body, {})

    assert event.event_type is None
    assert adapter.map_event_to_status(event) == PaymentStatus.PENDING


WRONGLY_TYPED_BODIES = {
    GatewayProvider.STRIPE: {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": "pi_1"}},
    GatewayProvider.PAYPAL: {
        "id": "WH-EVT-1",
        "event_type": "CHECKOUT.ORDER.APPROVED",
        "resource": {"id": "ORDER-1", "purchase_units": ["12"]},
    },
    GatewayProvider.RAZORPAY: {"event": "payment.captured", "payload": {"payment": {"entity": "pay_1"}}},
    GatewayProvider.FLUTTERWAVE: {"event": "charge.completed", "data": [{"id": 1}]},
    GatewayProvider.PAYSTACK: {"event": "charge.success", "data": "oops"},
}


@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda adapter: adapter.provider.value)
def test_wrongly_typed_nested_field_is_malformed(adapter):
    body = json.dumps(WRONGLY_TYPED_BODIES[adapter.provider]).encode()

    with pytest.raises(MalformedWebhook):
        adapter.parse_event(body, {})


@pytest.mark.parametrize("adapter", ALL_ADAPTERS, ids=lambda adapter: adapter.provider.value)
def test_object_where_identifier_expected_is_malformed(adapter):
    body = json.dumps(
        {
            "id": {"nested": True},
            "type": "payment_intent.succeeded",
            "event": "charge.success",
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
        }
    ).encode()

    with pytest.raises(MalformedWebhook):
        adapter.parse_event(body, {})


def test_paystack_parse_event_extracts_references():
    adapter = PaystackAdapter(secret_key="sk_paystack")

    event = adapter.parse_event(BODY, {})

    assert event.event_id == "evt_1"
    assert event.payment_ref == "12"
    assert event.gateway_reference == "1"
    assert adapter.map_event_to_status(event) == PaymentStatus.CAPTURED


def test_http_errors_are_classified(make_transaction, db_session):
    responses = iter(
        [
            httpx.Response(503, json={"message": "maintenance"}),
            httpx.Response(400, json={"status": False, "message": "Invalid email"}),
        ]
    )
    client = httpx.Client(
        base_url="https://paystack.test", transport=httpx.MockTransport(lambda request: next(responses))
    )
    adapter = PaystackAdapter(secret_key="sk_paystack", http_client=client)
    transaction = make_transaction()
    payment = ledger.create_payment(
        db_session, transaction, provider=GatewayProvider.PAYSTACK, payment_method=PaymentMethod.CREDIT_CARD
    )
    context = ChargeContext(customer_email="buyer@example.com")

    with pytest.raises(GatewayUnavailable):
        adapter.create_intent(payment, context)
    with pytest.raises(GatewayRejected) as excinfo:
        adapter.create_intent(payment, context)
    assert excinfo.value.message == "Invalid email"


def test_timeouts_are_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = httpx.Client(base_url="https://rzp.test", transport=httpx.MockTransport(handler))
    adapter = RazorpayAdapter(key_id="rzp", key_secret="rzp_secret", http_client=client)

    with pytest.raises(GatewayUnavailable) as excinfo:
        adapter._request("GET", "/payments/pay_1")
    assert excinfo.value.retryable is True


def _card_payment(db_session, make_transaction, provider: GatewayProvider):
    transaction = make_transaction(amount="250.00")
    return ledger.create_payment(db_session, transaction, provider=provider, payment_method=PaymentMethod.CREDIT_CARD)


def test_stripe_refund_carries_idempotency_key(monkeypatch, make_transaction, db_session):
    seen: list[dict] = []

    def fake_create(**kwargs):
        seen.append(kwargs)
        return {"id": "re_1", "status": "succeeded", "amount": kwargs.get("amount")}

    monkeypatch.setattr(stripe.Refund, "create", fake_create)
    adapter = StripeAdapter(secret_key="sk_test_123", webhook_secret="whsec_test")
    payment = _card_payment(db_session, make_transaction, GatewayProvider.STRIPE)
    payment.gateway_transaction_id = "pi_1"

    result = adapter.refund(payment, ChargeContext(amount=Decimal("100.00"), idempotency_key="refund-abc"))

    assert result.status == PaymentStatus.REFUNDED
    assert seen[0]["idempotency_key"] == "refund-abc"
    assert seen[0]["amount"] == 10000

    adapter.refund(payment, ChargeContext())
    assert seen[1]["idempotency_key"] == f"refund-{payment.id}"


def test_razorpay_and_paypal_refunds_carry_idempotency_key(make_transaction, db_session):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AA", "expires_in": 32400})
        seen.append(request)
        return httpx.Response(200, json={"id": "rf_1", "status": "COMPLETED", "amount": 10000})

    transport = httpx.MockTransport(handler)
    razorpay = RazorpayAdapter(
        key_id="rzp",
        key_secret="rzp_secret",
        http_client=httpx.Client(base_url="https://rzp.test", transport=transport),
    )
    paypal = PayPalAdapter(
        client_id="id",
        client_secret="secret",
        webhook_id="WH-1",
        http_client=httpx.Client(base_url="https://paypal.test", transport=transport),
    )
    context = ChargeContext(amount=Decimal("100.00"), idempotency_key="refund-77")

    rzp_payment = _card_payment(db_session, make_transaction, GatewayProvider.RAZORPAY)
    rzp_payment.gateway_reference = "pay_1"
    razorpay.refund(rzp_payment, context)
    assert json.loads(seen[0].content)["receipt"] == "refund-77"

    pp_payment = _card_payment(db_session, make_transaction, GatewayProvider.PAYPAL)
    pp_payment.gateway_reference = "CAP-1"
    paypal.refund(pp_payment, context)
    assert seen[1].headers["PayPal-Request-Id"] == "refund-77"



def test_registry_resolves_names_and_rejects_unknown():
    registry = GatewayRegistry([ManualAdapter(GatewayProvider.CASH)])

    assert registry.get("cash").provider == GatewayProvider.CASH
    assert resolve_provider("bank-transfer") == GatewayProvider.BANK_TRANSFER
    with pytest.raises(UnsupportedGateway):
        registry.get("STRIPE")
    with pytest.raises(UnsupportedGateway):
        resolve_provider("bitcoin")


def test_registry_only_registers_configured_providers():
    settings = Settings(
        database_url="sqlite://",
        STRIPE_SECRET_KEY="sk_test_123",
        PAYSTACK_SECRET_KEY="   ",
        RAZORPAY_KEY_ID="rzp",
    )

    registry = build_gateway_registry(settings)

    assert registry.providers() == [
        GatewayProvider.BANK_TRANSFER,
        GatewayProvider.CASH,
        GatewayProvider.STRIPE,
    ]


def test_paypal_capture_reversal_does_not_move_the_payment():
    adapter = PayPalAdapter(client_id="id", client_secret="secret", webhook_id="WH-1")
    body = json.dumps(
        {"id": "WH-EVT-9", "event_type": "PAYMENT.CAPTURE.REVERSED", "resource": {"id": "CAP-1", "custom_id": "12"}}
    ).encode()

    event = adapter.parse_event(body, {})

    assert event.payment_ref == "12"
    assert adapter.map_event_to_status(event) == PaymentStatus.PENDING
