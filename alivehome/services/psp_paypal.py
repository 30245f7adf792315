"""PayPal adapter: OAuth client-credentials, Orders v2 and webhook verification API."""
from __future__ import annotations

import enum
import json
import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Mapping

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
    to_major_units,
)
from alivehome.utils.errors import GatewayError, GatewayRejected, MalformedWebhook, PreconditionFailed

if TYPE_CHECKING:  # pragma: no cover - hints only
    from alivehome.models import Payment

logger = logging.getLogger(__name__)

TRANSMISSION_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
}


class CredentialCache:
    """Bearer token plus expiry, refreshed lazily and at most once at a time.

    ``fetch`` returns ``(access_token, expires_in_seconds)``. Concurrent callers
    that find the token missing or expired queue on one lock; the first one
    refreshes and the rest reuse its token.
    """

    def __init__(
        self,
        fetch: Callable[[], tuple[str, float]],
        *,
        clock: Callable[[], float] = time.monotonic,
        skew_seconds: float = 60.0,
    ) -> None:
        self._fetch = fetch
        self._clock = clock
        self._skew = skew_seconds
        self._lock = threading.Lock()
        self._token: str | None = None
        self._expires_at = 0.0
        self.refresh_count = 0

    def _current(self) -> str | None:
        if self._token and self._clock() < self._expires_at:
            return self._token
        return None

    def get(self) -> str:
        token = self._current()
        if token:
            return token
        with self._lock:
            token = self._current()
            if token:
                return token
            token, expires_in = self._fetch()
            self._token = token
            self._expires_at = self._clock() + max(float(expires_in) - self._skew, 0.0)
            self.refresh_count += 1
            logger.info("PayPal access token refreshed", extra={"expires_in": expires_in})
            return token

    def invalidate(self, stale_token: str | None = None) -> None:
        """Drop the cached token, unless another caller already replaced ``stale_token``."""

        with self._lock:
            if stale_token is None or stale_token == self._token:
                self._token = None
                self._expires_at = 0.0


class PayPalEventType(str, enum.Enum):
    PAYMENT_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
    PAYMENT_CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"
    PAYMENT_CAPTURE_DECLINED = "PAYMENT.CAPTURE.DECLINED"
    PAYMENT_CAPTURE_PENDING = "PAYMENT.CAPTURE.PENDING"
    PAYMENT_CAPTURE_REVERSED = "PAYMENT.CAPTURE.REVERSED"
    CHECKOUT_ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"
    CHECKOUT_ORDER_VOIDED = "CHECKOUT.ORDER.VOIDED"


ORDER_STATUS_MAP = {
    "CREATED": PaymentStatus.PENDING,
    "SAVED": PaymentStatus.PENDING,
    "PAYER_ACTION_REQUIRED": PaymentStatus.PENDING,
    "APPROVED": PaymentStatus.AUTHORIZED,
    "COMPLETED": PaymentStatus.CAPTURED,
    "VOIDED": PaymentStatus.CANCELLED,
}


class PayPalAdapter(HttpGatewayAdapter):
    """Wallet provider: buyer approves the order, then the platform captures it."""

    provider = GatewayProvider.PAYPAL
    base_url = "https://api-m.sandbox.paypal.com"
    EVENT_TYPES = PayPalEventType
    STATUS_MAP = {
        PayPalEventType.PAYMENT_CAPTURE_COMPLETED: PaymentStatus.CAPTURED,
        PayPalEventType.PAYMENT_CAPTURE_DENIED: PaymentStatus.FAILED,
        PayPalEventType.PAYMENT_CAPTURE_DECLINED: PaymentStatus.FAILED,
        PayPalEventType.PAYMENT_CAPTURE_PENDING: PaymentStatus.PENDING,
        PayPalEventType.PAYMENT_CAPTURE_REVERSED: PaymentStatus.PENDING,
        PayPalEventType.CHECKOUT_ORDER_APPROVED: PaymentStatus.PENDING,
        PayPalEventType.CHECKOUT_ORDER_VOIDED: PaymentStatus.CANCELLED,
    }

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        webhook_id: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(timeout=timeout, http_client=http_client, base_url=base_url)
        self._client_id = client_id
        self._client_secret = client_secret
        self._webhook_id = webhook_id
        self.credentials = CredentialCache(self._fetch_access_token)

    @property
    def webhook_secret(self) -> str | None:
        return self._webhook_id

    def _fetch_access_token(self) -> tuple[str, float]:
        body = self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
        )
        token = body.get("access_token")
        if not token:
            raise GatewayError("PayPal token response carried no access_token.", provider=self.provider.value)
        return token, float(body.get("expires_in") or 0)

    def _authorized(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = self.credentials.get()
        response = self._send(method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs)
        if response.status_code == 401:
            logger.info("PayPal token rejected; refreshing once", extra={"path": path})
            self.credentials.invalidate(token)
            token = self.credentials.get()
            response = self._send(method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs)
        return self._parse_response(response)

    def _order_result(self, order: Mapping[str, Any]) -> GatewayResult:
        approve_url = next(
            (link.get("href") for link in order.get("links") or [] if link.get("rel") in {"approve", "payer-action"}),
            None,
        )
        units = order.get("purchase_units") or []
        captures = dig(units[0], "payments", "captures") if units else None
        capture_id = captures[0].get("id") if captures else None
        return GatewayResult(
            status=ORDER_STATUS_MAP.get(order.get("status"), PaymentStatus.PENDING),
            gateway_transaction_id=order.get("id"),
            gateway_reference=capture_id or approve_url,
            raw_response={"id": order.get("id"), "status": order.get("status"), "approve_url": approve_url},
        )

    def create_intent(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        purchase_unit: dict[str, Any] = {
            "reference_id": str(payment.id),
            "custom_id": str(payment.id),
            "amount": {"currency_code": payment.currency, "value": str(to_major_units(payment.amount))},
        }
        if context.description:
            purchase_unit["description"] = context.description[:127]
        body: dict[str, Any] = {"intent": "CAPTURE", "purchase_units": [purchase_unit]}
        if context.return_url:
            body["application_context"] = {"return_url": context.return_url, "cancel_url": context.return_url}
        order = self._authorized(
            "POST",
            "/v2/checkout/orders",
            json_body=body,
            headers={"PayPal-Request-Id": f"order-{payment.id}"},
        )
        return self._order_result(order)

    def charge(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        order_id = context.gateway_payment_id or payment.gateway_transaction_id
        if not order_id:
            return self.create_intent(payment, context)
        order = self._authorized("GET", f"/v2/checkout/orders/{order_id}")
        return self._order_result(order)

    def capture(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        if not payment.gateway_transaction_id:
            raise PreconditionFailed("PayPal order id is missing; cannot capture.")
        order = self._authorized(
            "POST",
            f"/v2/checkout/orders/{payment.gateway_transaction_id}/capture",
            json_body={},
            headers={"PayPal-Request-Id": f"capture-{payment.id}"},
        )
        result = self._order_result(order)
        if result.status != PaymentStatus.CAPTURED:
            raise GatewayRejected(
                f"PayPal capture ended in status {order.get('status')}.",
                provider=self.provider.value,
                raw_response=result.raw_response,
            )
        return result

    def refund(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        capture_id = payment.gateway_reference
        if not capture_id or capture_id.startswith("http"):
            raise PreconditionFailed("PayPal capture id is missing; cannot refund.")
        body: dict[str, Any] = {}
        if context.amount is not None:
            body["amount"] = {"currency_code": payment.currency, "value": str(to_major_units(context.amount))}
        if context.reason:
            body["note_to_payer"] = context.reason[:255]
        refund = self._authorized(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json_body=body,
            headers={"PayPal-Request-Id": context.idempotency_key or f"refund-{payment.id}"},
        )
        if refund.get("status") not in {"COMPLETED", "PENDING"}:
            raise GatewayRejected(
                "PayPal refused the refund.", provider=self.provider.value, raw_response=refund
            )
        return GatewayResult(
            status=PaymentStatus.REFUNDED,
            gateway_transaction_id=payment.gateway_transaction_id,
            gateway_reference=capture_id,
            raw_response={"id": refund.get("id"), "status": refund.get("status")},
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
        """Forward the transmission headers to PayPal's verification API."""

        if not secret:
            return False
        fields = {name: get_header(headers, header) for name, header in TRANSMISSION_HEADERS.items()}
        if not all(fields.values()):
            return False
        try:
            webhook_event = json.loads(raw_body)
        except (UnicodeDecodeError, ValueError):
            return False
        try:
            body = self._authorized(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json_body={**fields, "webhook_id": secret, "webhook_event": webhook_event},
            )
        except GatewayError:
            logger.warning("PayPal signature verification call failed", exc_info=True)
            return False
        return body.get("verification_status") == "SUCCESS"

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        payload = decode_json_body(raw_body)
        resource = json_object(payload, "resource")
        raw_type = json_scalar(payload.get("event_type"))
        event_type = decode_event_type(PayPalEventType, raw_type)

        payment_ref = json_scalar(resource.get("custom_id"))
        order_id = json_scalar(json_object(resource, "supplementary_data", "related_ids").get("order_id"))
        capture_id = None
        if raw_type and raw_type.startswith("PAYMENT.CAPTURE."):
            capture_id = json_scalar(resource.get("id"))
        else:
            order_id = order_id or json_scalar(resource.get("id"))
            units = resource.get("purchase_units") or []
            if not isinstance(units, list):
                raise MalformedWebhook("Webhook field 'resource.purchase_units' must be an array.")
            if not payment_ref and units:
                first_unit = json_object(units[0])
                payment_ref = json_scalar(first_unit.get("custom_id")) or json_scalar(
                    first_unit.get("reference_id")
                )

        return GatewayEvent(
            provider=self.provider,
            event_id=json_scalar(payload.get("id")),
            event_type=event_type,
            raw_type=raw_type,
            payment_ref=payment_ref,
            gateway_transaction_id=order_id,
            gateway_reference=capture_id,
            payload=payload,
        )


__all__ = ["CredentialCache", "PayPalAdapter", "PayPalEventType", "ORDER_STATUS_MAP"]
