"""Schemas for payment entities."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from alivehome.models.payment import GatewayProvider, PaymentMethod, PaymentStatus


def _upper(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper().replace("-", "_")
    return value


class GatewayInput(BaseModel):
    """Fields a gateway may need that are not stored on the payment row."""

    payment_token: str | None = None
    gateway_payment_id: str | None = None
    customer_email: str | None = None
    return_url: str | None = None
    description: str | None = Field(default=None, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentInitiate(GatewayInput):
    transaction_id: int
    provider: GatewayProvider
    payment_method: PaymentMethod
    amount: Decimal | None = None
    currency: str | None = None

    @field_validator("provider", "payment_method", mode="before")
    @classmethod
    def _normalize_enums(cls, value: Any) -> Any:
        """Allow case-insensitive enum values from clients."""

        return _upper(value)


class PaymentProcess(GatewayInput):
    pass


class PaymentCapture(BaseModel):
    amount: Decimal | None = None


class PaymentRefund(BaseModel):
    amount: Decimal | None = None
    reason: str | None = Field(default=None, max_length=255)


class PaymentRead(BaseModel):
    id: int
    transaction_id: int
    user_id: int
    amount: Decimal
    currency: str
    payment_method: PaymentMethod
    provider: GatewayProvider
    status: PaymentStatus
    gateway_transaction_id: str | None
    gateway_reference: str | None
    gateway_response_json: dict[str, Any]
    failure_reason: str | None
    refund_amount: Decimal | None
    webhook_received: bool
    webhook_processed_at: datetime | None
    webhook_attempts: int
    captured_at: datetime | None
    refunded_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
