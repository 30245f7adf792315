"""Flutterwave adapter. Charges capture immediately; there is no capture step."""
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
    to_major_units,
)
from alivehome.utils.errors import GatewayRejected, PreconditionFailed

if TYPE_CHECKING:  # pragma: no cover - hints only
    from alivehome.models import Payment


class FlutterwaveEventType(str, enum.Enum):
    """Flutterwave reports the outcome in ``data.status`` of ``charge.completed``."""

    SUCCESSFUL = "successful"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING = "pending"


class FlutterwaveAdapter(HttpGatewayAdapter):
    provider = GatewayProvider.FLUTTERWAVE
    base_url = "https://api.flutterwave.com/v3"
    EVENT_TYPES = FlutterwaveEventType
    STATUS_MAP = {
        FlutterwaveEventType.SUCCESSFUL: PaymentStatus.CAPTURED,
        FlutterwaveEventType.FAILED: PaymentStatus.FAILED,
        FlutterwaveEventType.CANCELLED: PaymentStatus.CANCELLED,
        FlutterwaveEventType.PENDING: PaymentStatus.PENDING,
    }

    def __init__(
        self,
        *,
        secret_key: str,
        secret_hash: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout=timeout, http_client=http_client)
        self._secret_key = secret_key
        self._secret_hash = secret_hash

    @property
    def webhook_secret(self) -> str | None:
        return self._secret_hash

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._secret_key}"}

    def _transaction_result(self, data: Mapping[str, Any], payment: "Payment") -> GatewayResult:
        if data.get("tx_ref") and data.get("tx_ref") != str(payment.id):
            raise GatewayRejected(
                "Flutterwave transaction belongs to another payment.",
                provider=self.provider.value,
                details={"tx_ref": data.get("tx_ref")},
            )
        status = decode_event_type(FlutterwaveEventType, data.get("status"))
        return GatewayResult(
            status=self.STATUS_MAP.get(status, PaymentStatus.PENDING),
            gateway_transaction_id=str(data["id"]) if data.get("id") is not None else None,
            gateway_reference=data.get("flw_ref"),
            raw_response={
                "id": data.get("id"),
                "tx_ref": data.get("tx_ref"),
                "flw_ref": data.get("flw_ref"),
                "status": data.get("status"),
                "amount": data.get("amount"),
                "currency": data.get("currency"),
                "processor_response": data.get("processor_response"),
            },
        )

    def create_intent(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        body: dict[str, Any] = {
            "tx_ref": str(payment.id),
            "amount": str(to_major_units(payment.amount)),
            "currency": payment.currency,
            "meta": {"payment_id": str(payment.id), "transaction_id": str(payment.transaction_id)},
        }
        if context.return_url:
            body["redirect_url"] = context.return_url
        if context.customer_email:
            body["customer"] = {"email": context.customer_email}
        if context.description:
            body["customizations"] = {"description": context.description}
        response = self._request("POST", "/payments", json_body=body)
        link = (response.get("data") or {}).get("link")
        return GatewayResult(
            status=PaymentStatus.PENDING,
            gateway_reference=link,
            raw_response={"status": response.get("status"), "link": link},
        )

    def charge(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        if context.gateway_payment_id:
            response = self._request("GET", f"/transactions/{context.gateway_payment_id}/verify")
            return self._transaction_result(response.get("data") or {}, payment)
        if payment.gateway_reference:
            response = self._request("GET", f"/transactions/verify_by_reference?tx_ref={payment.id}")
            return self._transaction_result(response.get("data") or {}, payment)
        return self.create_intent(payment, context)

    def refund(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        if not payment.gateway_transaction_id:
            raise PreconditionFailed("Flutterwave transaction id is missing; cannot refund.")
        body: dict[str, Any] = {}
        if context.amount is not None:
            body["amount"] = str(to_major_units(context.amount))
        response = self._request(
            "POST", f"/transactions/{payment.gateway_transaction_id}/refund", json_body=body
        )
        data = response.get("data") or {}
        return GatewayResult(
            status=PaymentStatus.REFUNDED,
            gateway_transaction_id=payment.gateway_transaction_id,
            gateway_reference=payment.gateway_reference,
            raw_response={"id": data.get("id"), "status": data.get("status"), "amount": data.get("amount_refunded")},
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
        provided = get_header(headers, "verif-hash")
        if not provided or not secret:
            return False
        expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, provided)

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        payload = decode_json_body(raw_body)
        data = json_object(payload, "data")
        raw_status = json_scalar(data.get("status"))
        gateway_id = json_scalar(data.get("id"))

        event_id = json_scalar(payload.get("id"))
        if event_id is None and gateway_id is not None and raw_status:
            event_id = f"{gateway_id}:{raw_status}"

        return GatewayEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=decode_event_type(FlutterwaveEventType, raw_status),
            raw_type=json_scalar(payload.get("event")) or raw_status,
            payment_ref=json_scalar(data.get("tx_ref")) or json_scalar(payload.get("txRef")),
            gateway_transaction_id=gateway_id,
            gateway_reference=json_scalar(data.get("flw_ref")),
            payload=payload,
        )


__all__ = ["FlutterwaveAdapter", "FlutterwaveEventType"]
