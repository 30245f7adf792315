"""Stripe adapter built on the official Stripe Python SDK."""
from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any, Mapping

import stripe

from alivehome.models.payment import GatewayProvider, PaymentStatus
from alivehome.services.gateway_base import (
    ChargeContext,
    GatewayAdapter,
    GatewayEvent,
    GatewayResult,
    decode_event_type,
    decode_json_body,
    dig,
    get_header,
    json_object,
    json_scalar,
    to_minor_units,
)
from alivehome.utils.errors import GatewayRejected, GatewayUnavailable

if TYPE_CHECKING:  # pragma: no cover - hints only
    from alivehome.models import Payment

logger = logging.getLogger(__name__)


class StripeEventType(str, enum.Enum):
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_PAYMENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    PAYMENT_INTENT_PROCESSING = "payment_intent.processing"
    PAYMENT_INTENT_REQUIRES_ACTION = "payment_intent.requires_action"
    PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED = "payment_intent.amount_capturable_updated"


# PaymentIntent.status -> canonical status for synchronous responses.
INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.CAPTURED,
    "requires_capture": PaymentStatus.AUTHORIZED,
    "canceled": PaymentStatus.CANCELLED,
    "processing": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_payment_method": PaymentStatus.PENDING,
}


def _as_dict(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeAdapter(GatewayAdapter):
    """Card processor with an explicit authorize/capture split."""

    provider = GatewayProvider.STRIPE
    EVENT_TYPES = StripeEventType
    STATUS_MAP = {
        StripeEventType.PAYMENT_INTENT_SUCCEEDED: PaymentStatus.CAPTURED,
        StripeEventType.PAYMENT_INTENT_PAYMENT_FAILED: PaymentStatus.FAILED,
        StripeEventType.PAYMENT_INTENT_CANCELED: PaymentStatus.CANCELLED,
        StripeEventType.PAYMENT_INTENT_PROCESSING: PaymentStatus.PENDING,
        StripeEventType.PAYMENT_INTENT_REQUIRES_ACTION: PaymentStatus.PENDING,
        StripeEventType.PAYMENT_INTENT_AMOUNT_CAPTURABLE_UPDATED: PaymentStatus.PENDING,
    }

    def __init__(
        self,
        *,
        secret_key: str,
        webhook_secret: str | None = None,
        tolerance_seconds: int = 300,
    ) -> None:
        if not secret_key:
            raise ValueError("Stripe secret key is required")
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance_seconds
        stripe.api_key = secret_key
        stripe.max_network_retries = 0

    @property
    def webhook_secret(self) -> str | None:
        return self._webhook_secret

    def _metadata(self, payment: "Payment", context: ChargeContext) -> dict[str, str]:
        metadata = {"payment_id": str(payment.id), "transaction_id": str(payment.transaction_id)}
        for key, value in context.metadata.items():
            metadata.setdefault(str(key), str(value))
        return metadata

    def _call(self, operation: str, func, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except stripe.CardError as exc:
            raise GatewayRejected(
                exc.user_message or "Card was declined.",
                provider=self.provider.value,
                code="CARD_DECLINED",
                details={"operation": operation, "decline_code": getattr(exc, "code", None)},
                raw_response=getattr(exc, "json_body", None),
            ) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            raise GatewayUnavailable(
                "Stripe is temporarily unavailable.",
                provider=self.provider.value,
                details={"operation": operation},
            ) from exc
        except stripe.StripeError as exc:
            http_status = getattr(exc, "http_status", None) or 400
            error_cls = GatewayUnavailable if http_status >= 500 else GatewayRejected
            raise error_cls(
                exc.user_message or str(exc) or "Stripe rejected the request.",
                provider=self.provider.value,
                details={"operation": operation, "status_code": http_status},
                raw_response=getattr(exc, "json_body", None),
            ) from exc

    def _result(self, intent: Any) -> GatewayResult:
        body = _as_dict(intent)
        return GatewayResult(
            status=INTENT_STATUS_MAP.get(body.get("status"), PaymentStatus.PENDING),
            gateway_transaction_id=body.get("id"),
            raw_response={
                "id": body.get("id"),
                "status": body.get("status"),
                "amount": body.get("amount"),
                "currency": body.get("currency"),
                "latest_charge": body.get("latest_charge"),
                "next_action": body.get("next_action"),
                "last_payment_error": body.get("last_payment_error"),
            },
        )

    def _base_params(self, payment: "Payment", context: ChargeContext) -> dict[str, Any]:
        params: dict[str, Any] = {
            "amount": to_minor_units(payment.amount),
            "currency": payment.currency.lower(),
            "metadata": self._metadata(payment, context),
        }
        if context.description:
            params["description"] = context.description
        if context.customer_email:
            params["receipt_email"] = context.customer_email
        return params

    def create_intent(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        intent = self._call(
            "create_intent",
            stripe.PaymentIntent.create,
            capture_method="manual",
            confirm=False,
            idempotency_key=f"intent-{payment.id}",
            **self._base_params(payment, context),
        )
        result = self._result(intent)
        result.gateway_reference = _as_dict(intent).get("client_secret")
        return result

    def charge(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        confirm_kwargs: dict[str, Any] = {}
        if context.payment_token:
            confirm_kwargs["payment_method"] = context.payment_token
        if context.return_url:
            confirm_kwargs["return_url"] = context.return_url

        if payment.gateway_transaction_id:
            intent = self._call(
                "charge",
                stripe.PaymentIntent.confirm,
                payment.gateway_transaction_id,
                **confirm_kwargs,
            )
            return self._result(intent)

        if context.payment_token and not context.return_url:
            # Saved payment method charged without the customer present (recurring billing).
            confirm_kwargs["off_session"] = True
        intent = self._call(
            "charge",
            stripe.PaymentIntent.create,
            confirm=True,
            idempotency_key=f"charge-{payment.id}",
            **self._base_params(payment, context),
            **confirm_kwargs,
        )
        return self._result(intent)

    def capture(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        kwargs: dict[str, Any] = {}
        if context.amount is not None:
            kwargs["amount_to_capture"] = to_minor_units(context.amount)
        intent = self._call(
            "capture", stripe.PaymentIntent.capture, payment.gateway_transaction_id, **kwargs
        )
        return self._result(intent)

    def refund(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        kwargs: dict[str, Any] = {
            "payment_intent": payment.gateway_transaction_id,
            "reason": "requested_by_customer",
            "idempotency_key": context.idempotency_key or f"refund-{payment.id}",
        }
        if context.amount is not None:
            kwargs["amount"] = to_minor_units(context.amount)
        refund = _as_dict(self._call("refund", stripe.Refund.create, **kwargs))
        if refund.get("status") in {"failed", "canceled"}:
            raise GatewayRejected(
                "Stripe refused the refund.",
                provider=self.provider.value,
                raw_response=refund,
            )
        return GatewayResult(
            status=PaymentStatus.REFUNDED,
            gateway_transaction_id=payment.gateway_transaction_id,
            gateway_reference=refund.get("id"),
            raw_response={"id": refund.get("id"), "status": refund.get("status"), "amount": refund.get("amount")},
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
        sig_header = get_header(headers, "Stripe-Signature")
        if not sig_header or not secret:
            return False
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance=self._tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError):
            return False
        return True

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        payload = decode_json_body(raw_body)
        intent = json_object(payload, "data", "object")
        raw_type = json_scalar(payload.get("type"))
        return GatewayEvent(
            provider=self.provider,
            event_id=json_scalar(payload.get("id")),
            event_type=decode_event_type(StripeEventType, raw_type),
            raw_type=raw_type,
            payment_ref=json_scalar(dig(intent, "metadata", "payment_id")),
            gateway_transaction_id=json_scalar(intent.get("id")),
            payload=payload,
        )


__all__ = ["StripeAdapter", "StripeEventType", "INTENT_STATUS_MAP"]
