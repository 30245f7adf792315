"""Gateway adapter abstraction shared by every payment provider integration."""
from __future__ import annotations

import enum
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any, ClassVar, Mapping

import httpx

from alivehome.models.payment import GatewayProvider, PaymentStatus
from alivehome.utils.errors import (
    GatewayRejected,
    GatewayUnavailable,
    MalformedWebhook,
    UnsupportedOperation,
)

if TYPE_CHECKING:  # pragma: no cover - hints only
    from alivehome.models import Payment

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def to_major_units(amount: Decimal | int | str) -> Decimal:
    return Decimal(str(amount)).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal | int | str) -> int:
    """Convert a decimal amount to the smallest currency unit (cents, kobo, paise)."""

    return int((to_major_units(amount) * 100).to_integral_value())


def get_header(headers: Mapping[str, str], key: str) -> str | None:
    for h_key, value in headers.items():
        if h_key.lower() == key.lower():
            return value
    return None


def dig(payload: Any, *path: str) -> Any:
    """Follow ``path`` through nested dicts, returning ``None`` on any gap."""

    current = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def json_object(payload: Any, *path: str) -> Mapping[str, Any]:
    """Return the object at ``path``; a missing key gives ``{}``.

    Signed bodies are still provider input: any other JSON type where an
    object is expected raises ``MalformedWebhook``.
    """

    current = payload
    for depth, key in enumerate(path):
        if not isinstance(current, Mapping):
            where = ".".join(path[:depth]) or "body"
            raise MalformedWebhook(f"Webhook field '{where}' must be an object.")
        current = current.get(key)
        if current is None:
            return {}
    if not isinstance(current, Mapping):
        raise MalformedWebhook(f"Webhook field '{'.'.join(path) or 'body'}' must be an object.")
    return current


def json_scalar(value: Any) -> str | None:
    """Identifier-like webhook value as text; objects and arrays are malformed."""

    if value is None or value == "":
        return None
    if isinstance(value, (Mapping, list)):
        raise MalformedWebhook("Webhook identifier fields must be strings or numbers.")
    return str(value)


def decode_json_body(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedWebhook("Webhook body is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise MalformedWebhook("Webhook body must be a JSON object.")
    return payload


def decode_event_type(enum_cls: type[enum.Enum], raw_type: Any) -> enum.Enum | None:
    """Decode a provider event name into its closed enum, ``None`` when unknown."""

    if raw_type is None:
        return None
    try:
        return enum_cls(str(raw_type))
    except ValueError:
        return None


@dataclass
class ChargeContext:
    """Caller-supplied data a gateway needs beyond the payment row itself."""

    payment_token: str | None = None
    gateway_payment_id: str | None = None
    customer_email: str | None = None
    return_url: str | None = None
    description: str | None = None
    amount: Decimal | None = None
    reason: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayResult:
    """Normalized outcome of one gateway call."""

    status: PaymentStatus
    gateway_transaction_id: str | None = None
    gateway_reference: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayEvent:
    """A verified webhook decoded once at the parsing boundary."""

    provider: GatewayProvider
    event_id: str | None
    event_type: enum.Enum | None
    raw_type: str | None
    payment_ref: str | None
    gateway_transaction_id: str | None = None
    gateway_reference: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class GatewayAdapter(ABC):
    """Capability set every provider integration implements.

    ``EVENT_TYPES`` is the provider's closed webhook vocabulary and
    ``STATUS_MAP`` must cover every member of it; anything the provider sends
    outside that vocabulary decodes to ``None`` and maps to ``PENDING``.
    """

    provider: ClassVar[GatewayProvider]
    EVENT_TYPES: ClassVar[type[enum.Enum] | None] = None
    STATUS_MAP: ClassVar[Mapping[enum.Enum, PaymentStatus]] = {}

    @property
    def webhook_secret(self) -> str | None:
        return None

    @abstractmethod
    def create_intent(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        """Register the payment with the provider without moving money yet."""

    @abstractmethod
    def charge(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        """Execute, or settle up on, the payment with the provider."""

    def capture(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        raise UnsupportedOperation(
            f"{self.provider.value} has no explicit capture step.",
            details={"provider": self.provider.value, "operation": "capture"},
        )

    def refund(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        raise UnsupportedOperation(
            f"{self.provider.value} does not support refunds.",
            details={"provider": self.provider.value, "operation": "refund"},
        )

    @abstractmethod
    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
        """Return ``True`` only for an authentic delivery; never raises."""

    @abstractmethod
    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        """Decode an already verified body, raising ``MalformedWebhook``."""

    def map_event_to_status(self, event: GatewayEvent) -> PaymentStatus:
        if event.event_type is None:
            return PaymentStatus.PENDING
        return self.STATUS_MAP.get(event.event_type, PaymentStatus.PENDING)


class HttpGatewayAdapter(GatewayAdapter):
    """Base for providers reached over a JSON HTTP API with ``httpx``."""

    base_url: ClassVar[str] = ""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
        base_url: str | None = None,
    ) -> None:
        self._client = http_client or httpx.Client(base_url=base_url or self.base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _send(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        data: Any = None,
        headers: Mapping[str, str] | None = None,
        auth: Any = None,
    ) -> httpx.Response:
        merged_headers = {"Accept": "application/json", **self._auth_headers(), **(headers or {})}
        kwargs: dict[str, Any] = {"headers": merged_headers}
        if json_body is not None:
            kwargs["json"] = json_body
        if data is not None:
            kwargs["data"] = data
        if auth is not None:
            kwargs["auth"] = auth
        try:
            return self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayUnavailable(
                f"{self.provider.value} request timed out.", provider=self.provider.value
            ) from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailable(
                f"{self.provider.value} is unreachable.", provider=self.provider.value
            ) from exc

    def _parse_response(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text[:500]}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(
                "Gateway unavailable",
                extra={"provider": self.provider.value, "status_code": response.status_code},
            )
            raise GatewayUnavailable(
                f"{self.provider.value} returned HTTP {response.status_code}.",
                provider=self.provider.value,
                details={"status_code": response.status_code},
                raw_response=body,
            )
        if response.status_code >= 400:
            logger.info(
                "Gateway rejected request",
                extra={"provider": self.provider.value, "status_code": response.status_code},
            )
            raise GatewayRejected(
                self._rejection_message(body) or f"{self.provider.value} rejected the request.",
                provider=self.provider.value,
                details={"status_code": response.status_code},
                raw_response=body,
            )
        return body

    def _rejection_message(self, body: Mapping[str, Any]) -> str | None:
        message = body.get("message") or dig(body, "error", "description") or dig(body, "error", "message")
        return str(message) if message else None

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        return self._parse_response(self._send(method, path, **kwargs))


__all__ = [
    "ChargeContext",
    "GatewayAdapter",
    "GatewayEvent",
    "GatewayResult",
    "HttpGatewayAdapter",
    "decode_event_type",
    "decode_json_body",
    "dig",
    "get_header",
    "json_object",
    "json_scalar",
    "to_major_units",
    "to_minor_units",
]
