"""Razorpay adapter: Orders API, explicit capture and HMAC-SHA256 webhooks."""
from __future__ import annotations

import enum
import hashlib
import hmac
from typing import TYPE_CHECKING, Any, Mapping

import httpx

from alivehome.models.payment import GatewayProvider, PaymentStatus
from alivehome.services.gateway_base import (
    ChargeContext,
    GatewayEvent,
    GatewayResult,
    HttpGatewayAdapter,
    decode_event_type,
    decode_json_body,
    dig,
    get_header,
    json_object,
    json_scalar,
    to_minor_units,
)
from alivehome.utils.errors import PreconditionFailed

if TYPE_CHECKING:  # pragma: no cover - hints only
    from alivehome.models import Payment


class RazorpayEventType(str, enum.Enum):
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    PAYMENT_FAILED = "payment.failed"
    ORDER_PAID = "order.paid"


PAYMENT_STATUS_MAP = {
    "created": PaymentStatus.PENDING,
    "authorized": PaymentStatus.AUTHORIZED,
    "captured": PaymentStatus.CAPTURED,
    "failed": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
}

ORDER_STATUS_MAP = {
    "created": PaymentStatus.PENDING,
    "attempted": PaymentStatus.PENDING,
    "paid": PaymentStatus.CAPTURED,
}


class RazorpayAdapter(HttpGatewayAdapter):
    provider = GatewayProvider.RAZORPAY
    base_url = "https://api.razorpay.com/v1"
    EVENT_TYPES = RazorpayEventType
    STATUS_MAP = {
        RazorpayEventType.PAYMENT_AUTHORIZED: PaymentStatus.PENDING,
        RazorpayEventType.PAYMENT_CAPTURED: PaymentStatus.CAPTURED,
        RazorpayEventType.PAYMENT_FAILED: PaymentStatus.FAILED,
        RazorpayEventType.ORDER_PAID: PaymentStatus.CAPTURED,
    }

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str,
        webhook_secret: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout=timeout, http_client=http_client)
        self._auth = (key_id, key_secret)
        self._webhook_secret = webhook_secret

    @property
    def webhook_secret(self) -> str | None:
        return self._webhook_secret

    def _payment_result(self, body: Mapping[str, Any], payment: "Payment") -> GatewayResult:
        return GatewayResult(
            status=PAYMENT_STATUS_MAP.get(body.get("status"), PaymentStatus.PENDING),
            gateway_transaction_id=body.get("order_id") or payment.gateway_transaction_id,
            gateway_reference=body.get("id"),
            raw_response={
                "id": body.get("id"),
                "order_id": body.get("order_id"),
                "status": body.get("status"),
                "amount": body.get("amount"),
                "error_code": body.get("error_code"),
                "error_description": body.get("error_description"),
            },
        )

    def create_intent(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        order = self._request(
            "POST",
            "/orders",
            json_body={
                "amount": to_minor_units(payment.amount),
                "currency": payment.currency,
                "receipt": f"payment_{payment.id}",
                "notes": {"payment_id": str(payment.id), "transaction_id": str(payment.transaction_id)},
            },
            auth=self._auth,
        )
        return GatewayResult(
            status=ORDER_STATUS_MAP.get(order.get("status"), PaymentStatus.PENDING),
            gateway_transaction_id=order.get("id"),
            raw_response={"id": order.get("id"), "status": order.get("status"), "amount": order.get("amount")},
        )

    def charge(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        if context.gateway_payment_id:
            body = self._request("GET", f"/payments/{context.gateway_payment_id}", auth=self._auth)
            return self._payment_result(body, payment)
        if not payment.gateway_transaction_id:
            return self.create_intent(payment, context)
        order = self._request("GET", f"/orders/{payment.gateway_transaction_id}", auth=self._auth)
        return GatewayResult(
            status=ORDER_STATUS_MAP.get(order.get("status"), PaymentStatus.PENDING),
            gateway_transaction_id=order.get("id"),
            raw_response={"id": order.get("id"), "status": order.get("status"), "attempts": order.get("attempts")},
        )

    def _require_payment_id(self, payment: "Payment", operation: str) -> str:
        if not payment.gateway_reference:
            raise PreconditionFailed(f"Razorpay payment id is missing; cannot {operation}.")
        return payment.gateway_reference

    def capture(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        payment_id = self._require_payment_id(payment, "capture")
        amount = context.amount if context.amount is not None else payment.amount
        body = self._request(
            "POST",
            f"/payments/{payment_id}/capture",
            json_body={"amount": to_minor_units(amount), "currency": payment.currency},
            auth=self._auth,
        )
        return self._payment_result(body, payment)

    def refund(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        payment_id = self._require_payment_id(payment, "refund")
        request: dict[str, Any] = {
            "notes": {"payment_id": str(payment.id)},
            "receipt": context.idempotency_key or f"refund-{payment.id}",
        }
        if context.amount is not None:
            request["amount"] = to_minor_units(context.amount)
        if context.reason:
            request["notes"]["reason"] = context.reason
        body = self._request("POST", f"/payments/{payment_id}/refund", json_body=request, auth=self._auth)
        return GatewayResult(
            status=PaymentStatus.REFUNDED,
            gateway_transaction_id=payment.gateway_transaction_id,
            gateway_reference=payment_id,
            raw_response={"id": body.get("id"), "status": body.get("status"), "amount": body.get("amount")},
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
        provided = get_header(headers, "X-Razorpay-Signature")
        if not provided or not secret:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, provided)

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        payload = decode_json_body(raw_body)
        raw_type = json_scalar(payload.get("event"))
        entity = json_object(payload, "payload", "payment", "entity")
        order = json_object(payload, "payload", "order", "entity")
        # Razorpay sends "notes": [] when a payment has none.
        payment_ref = json_scalar(dig(entity, "notes", "payment_id") or dig(order, "notes", "payment_id"))
        gateway_id = json_scalar(entity.get("id"))

        event_id = get_header(headers, "X-Razorpay-Event-Id") or json_scalar(payload.get("id"))
        if not event_id and gateway_id and raw_type:
            event_id = f"{gateway_id}:{raw_type}"

        return GatewayEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=decode_event_type(RazorpayEventType, raw_type),
            raw_type=raw_type,
            payment_ref=payment_ref,
            gateway_transaction_id=json_scalar(entity.get("order_id")) or json_scalar(order.get("id")),
            gateway_reference=gateway_id,
            payload=payload,
        )


__all__ = ["RazorpayAdapter", "RazorpayEventType"]
