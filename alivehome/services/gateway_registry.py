"""Provider -> adapter lookup, built once from settings."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Iterable, Mapping

from alivehome.config import Settings, get_settings
from alivehome.models.payment import GatewayProvider
from alivehome.services.gateway_base import GatewayAdapter
from alivehome.services.psp_flutterwave import FlutterwaveAdapter
from alivehome.services.psp_manual import ManualAdapter
from alivehome.services.psp_paypal import PayPalAdapter
from alivehome.services.psp_paystack import PaystackAdapter
from alivehome.services.psp_razorpay import RazorpayAdapter
from alivehome.services.psp_stripe import StripeAdapter
from alivehome.utils.errors import UnsupportedGateway

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """Explicit mapping from provider to its adapter instance."""

    def __init__(self, adapters: Iterable[GatewayAdapter] = ()) -> None:
        self._adapters: dict[GatewayProvider, GatewayAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: GatewayAdapter) -> None:
        self._adapters[adapter.provider] = adapter

    def get(self, provider: GatewayProvider | str) -> GatewayAdapter:
        resolved = resolve_provider(provider)
        adapter = self._adapters.get(resolved)
        if adapter is None:
            raise UnsupportedGateway(
                f"Gateway {resolved.value} is not configured.",
                details={"provider": resolved.value},
            )
        return adapter

    def providers(self) -> list[GatewayProvider]:
        return sorted(self._adapters, key=lambda provider: provider.value)

    def __contains__(self, provider: object) -> bool:
        return provider in self._adapters


def resolve_provider(value: GatewayProvider | str) -> GatewayProvider:
    """Accept enum members or case-insensitive names such as ``"paystack"``."""

    if isinstance(value, GatewayProvider):
        return value
    normalized = str(value).strip().upper().replace("-", "_")
    try:
        return GatewayProvider(normalized)
    except ValueError:
        raise UnsupportedGateway(
            f"Unknown gateway {value!r}.", details={"provider": str(value)}
        ) from None


def build_gateway_registry(settings: Settings) -> GatewayRegistry:
    """Register every provider whose credentials are present."""

    timeout = settings.GATEWAY_TIMEOUT_SECONDS
    registry = GatewayRegistry(
        ManualAdapter(provider, processing_delay=settings.CASH_PROCESSING_DELAY_SECONDS)
        for provider in (GatewayProvider.CASH, GatewayProvider.BANK_TRANSFER)
    )

    if settings.STRIPE_SECRET_KEY:
        registry.register(
            StripeAdapter(
                secret_key=settings.STRIPE_SECRET_KEY,
                webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
        )
    if settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET:
        registry.register(
            PayPalAdapter(
                client_id=settings.PAYPAL_CLIENT_ID,
                client_secret=settings.PAYPAL_CLIENT_SECRET,
                webhook_id=settings.PAYPAL_WEBHOOK_ID,
                base_url=settings.paypal_base_url,
                timeout=timeout,
            )
        )
    if settings.RAZORPAY_KEY_ID and settings.RAZORPAY_KEY_SECRET:
        registry.register(
            RazorpayAdapter(
                key_id=settings.RAZORPAY_KEY_ID,
                key_secret=settings.RAZORPAY_KEY_SECRET,
                webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
                timeout=timeout,
            )
        )
    if settings.FLUTTERWAVE_SECRET_KEY:
        registry.register(
            FlutterwaveAdapter(
                secret_key=settings.FLUTTERWAVE_SECRET_KEY,
                secret_hash=settings.FLUTTERWAVE_SECRET_HASH,
                timeout=timeout,
            )
        )
    if settings.PAYSTACK_SECRET_KEY:
        registry.register(PaystackAdapter(secret_key=settings.PAYSTACK_SECRET_KEY, timeout=timeout))

    logger.info(
        "Gateway registry built",
        extra={"providers": [provider.value for provider in registry.providers()]},
    )
    return registry


@lru_cache
def get_gateway_registry() -> GatewayRegistry:
    """Return the process-wide registry (also used as a FastAPI dependency)."""

    return build_gateway_registry(get_settings())


def gateway_status(registry: GatewayRegistry, settings: Settings) -> Mapping[str, dict[str, bool]]:
    """Per-provider configuration flags for the health endpoint."""

    webhook_flags = {
        GatewayProvider.STRIPE: bool(settings.STRIPE_WEBHOOK_SECRET),
        GatewayProvider.PAYPAL: bool(settings.PAYPAL_WEBHOOK_ID),
        GatewayProvider.RAZORPAY: bool(settings.RAZORPAY_WEBHOOK_SECRET),
        GatewayProvider.FLUTTERWAVE: bool(settings.FLUTTERWAVE_SECRET_HASH),
        GatewayProvider.PAYSTACK: bool(settings.PAYSTACK_SECRET_KEY),
    }
    return {
        provider.value: {
            "configured": provider in registry,
            "webhook_configured": webhook_flags.get(provider, False),
        }
        for provider in GatewayProvider
    }


__all__ = [
    "GatewayRegistry",
    "build_gateway_registry",
    "gateway_status",
    "get_gateway_registry",
    "resolve_provider",
]
