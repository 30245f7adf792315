"""Tests for redaction and masking helpers."""
from decimal import Decimal

from alivehome.models import PaymentStatus
from alivehome.utils.audit import sanitize_payload_for_audit
from alivehome.utils.masking import REDACTED, mask_reference, redact_sensitive, secret_fingerprint


def test_redact_sensitive_walks_nested_payloads():
    payload = {
        "data": {
            "authorization": {"cardNumber": "4084084084084081", "CVV": "408", "last4": "4081"},
            "customer": {"email": "buyer@example.com"},
        },
        "items": [{"card_number": "4111111111111111"}, {"amount": 10}],
        "client_secret": "pi_123_secret_456",
        "key": "sk_live",
    }

    redacted = redact_sensitive(payload)

    assert redacted["data"]["authorization"] == {"cardNumber": REDACTED, "CVV": REDACTED, "last4": "4081"}
    assert redacted["data"]["customer"]["email"] == "buyer@example.com"
    assert redacted["items"] == [{"card_number": REDACTED}, {"amount": 10}]
    assert redacted["client_secret"] == REDACTED
    assert redacted["key"] == REDACTED
    # The input is left untouched.
    assert payload["data"]["authorization"]["cardNumber"] == "4084084084084081"


def test_short_keys_are_not_matched_as_fragments():
    redacted = redact_sensitive({"monkey": "banana", "pin": "1234", "pinned": True})

    assert redacted == {"monkey": "banana", "pin": REDACTED, "pinned": True}


def test_mask_reference_keeps_only_the_tail():
    assert mask_reference("pi_3NqA8x2eZvKYlo2C1") == "***o2C1"
    assert mask_reference("abc") == "***"
    assert mask_reference(None) is None


def test_secret_fingerprint_is_stable_and_opaque():
    fingerprint = secret_fingerprint("whsec_test")

    assert fingerprint == secret_fingerprint("whsec_test")
    assert fingerprint.startswith("sha256:")
    assert "whsec" not in fingerprint
    assert secret_fingerprint(None) is None


def test_audit_payload_is_json_safe_and_masked():
    sanitized = sanitize_payload_for_audit(
        {
            "amount": Decimal("10.50"),
            "status": PaymentStatus.CAPTURED,
            "email": "buyer@example.com",
            "gateway_transaction_id": "pi_1234567890",
            "payment_token": "tok_visa",
        }
    )

    assert sanitized == {
        "amount": "10.50",
        "status": "CAPTURED",
        "email": "***@example.com",
        "gateway_transaction_id": "***7890",
        "payment_token": REDACTED,
    }
