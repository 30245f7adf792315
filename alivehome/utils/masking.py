"""Redaction of sensitive fields before gateway payloads are persisted."""
from __future__ import annotations

import hashlib
from typing import Any, Mapping

REDACTED = "[REDACTED]"

# Matched anywhere inside the normalised key name.
SENSITIVE_KEY_FRAGMENTS = (
    "cardnumber",
    "cardno",
    "cvv",
    "cvc",
    "securitycode",
    "password",
    "passphrase",
    "secret",
    "token",
    "apikey",
    "privatekey",
    "authorization",
    "accountnumber",
    "routingnumber",
    "iban",
)

# Too short to match as fragments without catching unrelated keys.
SENSITIVE_KEY_EXACT = {"pan", "pin", "ssn", "sin", "key", "cvn", "expiry", "exp_month", "exp_year"}


def _normalise_key(key: str) -> str:
    return "".join(ch for ch in key.lower() if ch.isalnum())


def is_sensitive_key(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    if key.lower() in SENSITIVE_KEY_EXACT:
        return True
    normalised = _normalise_key(key)
    return any(fragment in normalised for fragment in SENSITIVE_KEY_FRAGMENTS)


def redact_sensitive(data: Any) -> Any:
    """Return a deep copy of ``data`` with sensitive keys replaced by ``REDACTED``.

    Objects and arrays under a sensitive key are walked rather than dropped,
    so a Paystack ``authorization`` block keeps its ``last4``.
    """

    if isinstance(data, Mapping):
        return {
            key: (
                REDACTED
                if is_sensitive_key(key) and not isinstance(value, (Mapping, list, tuple))
                else redact_sensitive(value)
            )
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item) for item in data]
    return data


def mask_reference(value: str | None) -> str | None:
    """Show only the tail of a gateway reference in logs."""

    if not value:
        return None
    text = str(value)
    if len(text) <= 6:
        return "***"
    return f"***{text[-4:]}"


def secret_fingerprint(secret: str | None) -> str | None:
    """Deterministic marker for a configured secret, safe to log."""

    if not secret:
        return None
    return f"sha256:{hashlib.sha256(secret.encode()).hexdigest()[:8]}"


__all__ = [
    "REDACTED",
    "is_sensitive_key",
    "redact_sensitive",
    "mask_reference",
    "secret_fingerprint",
]
