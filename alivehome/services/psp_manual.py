"""Manual providers (cash, bank transfer): no network, captured on the spot."""
from __future__ import annotations

import time
from typing import TYPE_CHECKING, Mapping

from alivehome.models.payment import MANUAL_PROVIDERS, GatewayProvider, PaymentStatus
from alivehome.services.gateway_base import ChargeContext, GatewayAdapter, GatewayEvent, GatewayResult
from alivehome.utils.errors import MalformedWebhook
from alivehome.utils.time import utcnow

if TYPE_CHECKING:  # pragma: no cover - hints only
    from alivehome.models import Payment


class ManualAdapter(GatewayAdapter):
    """Records money handed over outside any gateway.

    ``processing_delay`` stands in for the time an operator takes to confirm
    receipt; the payment is captured as soon as it elapses. Manual providers
    never send webhooks, so every signature check fails.
    """

    def __init__(self, provider: GatewayProvider, *, processing_delay: float = 0.0) -> None:
        if provider not in MANUAL_PROVIDERS:
            raise ValueError(f"{provider.value} is not a manual provider")
        self.provider = provider
        self._delay = processing_delay

    def _reference(self, payment: "Payment") -> str:
        return f"{self.provider.value}_{payment.id}"

    def create_intent(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        return GatewayResult(
            status=PaymentStatus.PENDING,
            gateway_reference=self._reference(payment),
            raw_response={"provider": self.provider.value, "manual": True},
        )

    def charge(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        if self._delay > 0:
            time.sleep(self._delay)
        return GatewayResult(
            status=PaymentStatus.CAPTURED,
            gateway_transaction_id=self._reference(payment),
            raw_response={
                "provider": self.provider.value,
                "manual": True,
                "confirmed_at": utcnow().isoformat(),
            },
        )

    def refund(self, payment: "Payment", context: ChargeContext) -> GatewayResult:
        amount = context.amount if context.amount is not None else payment.amount
        return GatewayResult(
            status=PaymentStatus.REFUNDED,
            gateway_transaction_id=payment.gateway_transaction_id,
            gateway_reference=f"{self._reference(payment)}_REFUND",
            raw_response={
                "provider": self.provider.value,
                "manual": True,
                "amount": str(amount),
                "reason": context.reason,
            },
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
        return False

    def parse_event(self, raw_body: bytes, headers: Mapping[str, str]) -> GatewayEvent:
        raise MalformedWebhook(f"{self.provider.value} does not deliver webhooks.")


__all__ = ["ManualAdapter"]
