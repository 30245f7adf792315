"""Typed payment errors and the standardized error payload."""
from __future__ import annotations

from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class PaymentError(Exception):
    """Base class for every error the payment core raises on purpose.

    ``code`` is machine readable, ``status_code`` is the HTTP status the API
    layer maps the error to, and ``retryable`` tells callers whether repeating
    the same call can succeed.
    """

    code = "PAYMENT_ERROR"
    status_code = 400
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_response(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details)


class ValidationError(PaymentError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(PaymentError):
    code = "NOT_FOUND"
    status_code = 404


class PreconditionFailed(PaymentError):
    """State-machine violation detected before any gateway call."""

    code = "PRECONDITION_FAILED"
    status_code = 409


class InvalidTransition(PreconditionFailed):
    code = "INVALID_TRANSITION"


class GatewayError(PaymentError):
    """Failure reported by, or while talking to, an external gateway."""

    code = "GATEWAY_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        raw_response: Any = None,
    ) -> None:
        merged = dict(details or {})
        if provider:
            merged.setdefault("provider", provider)
        super().__init__(message, code=code, details=merged)
        self.provider = provider
        self.raw_response = raw_response


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or 5xx from the provider."""

    code = "GATEWAY_UNAVAILABLE"
    status_code = 503
    retryable = True


class GatewayRejected(GatewayError):
    """Provider declined the request (4xx, validation, card decline)."""

    code = "GATEWAY_REJECTED"
    status_code = 402


class SignatureInvalid(PaymentError):
    code = "SIGNATURE_INVALID"
    status_code = 401


class ConfigurationError(PaymentError):
    """Deployment or configuration bug; never retried."""

    code = "CONFIGURATION_ERROR"
    status_code = 500


class UnsupportedGateway(ConfigurationError):
    code = "UNSUPPORTED_GATEWAY"
    status_code = 400


class UnsupportedOperation(ConfigurationError):
    code = "UNSUPPORTED_OPERATION"
    status_code = 400


class MalformedWebhook(PaymentError):
    """Authenticated webhook whose body cannot be interpreted."""

    code = "MALFORMED_WEBHOOK"
    status_code = 400


__all__ = [
    "error_response",
    "PaymentError",
    "ValidationError",
    "NotFound",
    "PreconditionFailed",
    "InvalidTransition",
    "GatewayError",
    "GatewayUnavailable",
    "GatewayRejected",
    "SignatureInvalid",
    "ConfigurationError",
    "UnsupportedGateway",
    "UnsupportedOperation",
    "MalformedWebhook",
]
