"""Subscription billing schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from alivehome.models.payment import GatewayProvider, PaymentMethod
from alivehome.models.subscription import SubscriptionStatus
from alivehome.schemas.payment import GatewayInput, _upper


class SubscriptionCharge(GatewayInput):
    provider: GatewayProvider | None = None
    payment_method: PaymentMethod | None = None

    @field_validator("provider", "payment_method", mode="before")
    @classmethod
    def _normalize_enums(cls, value: Any) -> Any:
        return _upper(value)


class SubscriptionRead(BaseModel):
    id: int
    user_id: int
    plan_id: int
    status: SubscriptionStatus
    provider: GatewayProvider
    next_billing_date: datetime | None
    last_billing_date: datetime | None
    failed_payment_count: int
    total_paid: Decimal
    last_payment_amount: Decimal | None

    model_config = ConfigDict(from_attributes=True)


class BillingOutcomeRead(BaseModel):
    subscription_id: int
    status: str
    transaction_id: int | None = None
    payment_id: int | None = None
    error_code: str | None = None
    next_billing_date: datetime | None = None


class BillingRunRead(BaseModel):
    started_at: datetime
    finished_at: datetime
    due: int
    succeeded: int
    failed: int
    skipped: int
    results: list[BillingOutcomeRead]
