"""Paystack adapter: hosted checkout, saved-authorization charges, HMAC-SHA512 webhooks."""
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
    get_header,
    json_object,
    json_scalar,
    to_minor_units,
)
from alivehome.utils.errors import PreconditionFailed, ValidationError

if TYPE_CHECKING:  # pragma: no cover - hints only
    from alivehome.models import Payment


class PaystackEventType(str, enum.Enum):
    CHARGE_SUCCESS = "charge.success"
    CHARGE_FAILED = "charge.failed"
    CHARGE_ABANDONED = "charge.abandoned"
    CHARGE_PENDING = "charge.pending"


TRANSACTION_STATUS_MAP = {
    "success": PaymentStatus.CAPTURED,
    "failed": PaymentStatus.FAILED,
    "reversed": PaymentStatus.REFUNDED,
    "abandoned": PaymentStatus.PENDING,
    "ongoing": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PENDING,
    "queued": PaymentStatus.PENDING,
    "send_otp": PaymentStatus.PENDING,
}


class PaystackAdapter(HttpGatewayAdapter):
    provider = GatewayProvider.PAYSTACK
    base_url = "https://api.paystack.co"
    EVENT_TYPES = PaystackEventType
    STATUS_MAP = {
        PaystackEventType.CHARGE_SUCCESS: PaymentStatus.CAPTURED,
        PaystackEventType.CHARGE_FAILED: PaymentStatus.FAILED,
        PaystackEventType.CHARGE_ABANDONED: PaymentStatus.CANCELLED,
        PaystackEventType.CHARGE_PENDING: PaymentStatus.PENDING,
    }

    def __init__(
        self,
        *,
        secret_key: str,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout=timeout, http_client=http_client)
        self._secret_key = secret_key

    @property
    def webhook_secret(self) -> str | None:
        # Paystack signs webhooks with the account's secret key.
        return self._secret_key

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._secret_key}"}

    def _transaction_result(self, data: Mapping[str, Any]) -> GatewayResult:
        return GatewayResult(
            status=TRANSACTION_STATUS_MAP.get(data.get("status"), PaymentStatus.PENDING),
            gateway_transaction_id=data.get("reference"),
            gateway_reference=str(data["id"]) if data.get("id") is not None else None,
            raw_response={
                "id": data.get("id"),
                "reference": data.get("reference"),
                "status": data.get("status"),
                "amount": data.get("amount"),
                "currency": data.get("currency"),
                "gateway_response": data.get("gateway_response"),
            },
        )

    def create_intent(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        if not context.customer_email:
            raise ValidationError("Paystack requires a customer email.", details={"field": "customer_email"})
        body: dict[str, Any] = {
            "email": context.customer_email,
            "amount": to_minor_units(payment.amount),
            "currency": payment.currency,
            "reference": str(payment.id),
            "metadata": {"payment_id": str(payment.id), "transaction_id": str(payment.transaction_id)},
        }
        if context.return_url:
            body["callback_url"] = context.return_url
        response = self._request("POST", "/transaction/initialize", json_body=body)
        data = response.get("data") or {}
        return GatewayResult(
            status=PaymentStatus.PENDING,
            gateway_transaction_id=data.get("reference"),
            gateway_reference=data.get("authorization_url"),
            raw_response={"reference": data.get("reference"), "authorization_url": data.get("authorization_url")},
        )

    def charge(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        if context.payment_token:
            if not context.customer_email:
                raise ValidationError("Paystack requires a customer email.", details={"field": "customer_email"})
            response = self._request(
                "POST",
                "/transaction/charge_authorization",
                json_body={
                    "authorization_code": context.payment_token,
                    "email": context.customer_email,
                    "amount": to_minor_units(payment.amount),
                    "currency": payment.currency,
                    "reference": str(payment.id),
                    "metadata": {"payment_id": str(payment.id)},
                },
            )
            return self._transaction_result(response.get("data") or {})
        if payment.gateway_transaction_id:
            response = self._request("GET", f"/transaction/verify/{payment.gateway_transaction_id}")
            return self._transaction_result(response.get("data") or {})
        return self.create_intent(payment, context)

    def refund(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        if not payment.gateway_transaction_id:
            raise PreconditionFailed("Paystack reference is missing; cannot refund.")
        body: dict[str, Any] = {"transaction": payment.gateway_transaction_id}
        if context.amount is not None:
            body["amount"] = to_minor_units(context.amount)
        if context.reason:
            body["merchant_note"] = context.reason
        response = self._request("POST", "/refund", json_body=body)
        data = response.get("data") or {}
        return GatewayResult(
            status=PaymentStatus.REFUNDED,
            gateway_transaction_id=payment.gateway_transaction_id,
            gateway_reference=payment.gateway_reference,
            raw_response={"id": data.get("id"), "status": data.get("status"), "amount": data.get("amount")},
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
        provided = get_header(headers, "X-Paystack-Signature")
        if not provided or not secret:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, provided)

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        payload = decode_json_body(raw_body)
        data = json_object(payload, "data")
        raw_type = json_scalar(payload.get("event"))
        gateway_id = json_scalar(data.get("id"))
        reference = json_scalar(data.get("reference"))

        event_id = json_scalar(payload.get("id"))
        if event_id is None and gateway_id is not None and raw_type:
            event_id = f"{gateway_id}:{raw_type}"

        return GatewayEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=decode_event_type(PaystackEventType, raw_type),
            raw_type=raw_type,
            payment_ref=reference,
            gateway_transaction_id=reference,
            gateway_reference=gateway_id,
            payload=payload,
        )


__all__ = ["PaystackAdapter", "PaystackEventType"]
