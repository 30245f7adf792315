"""Transaction schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from alivehome.models.payment import GatewayProvider, PaymentMethod
from alivehome.models.transaction import TransactionStatus, TransactionType
from alivehome.schemas.payment import GatewayInput, PaymentRead, _upper


class TransactionCreate(BaseModel):
    user_id: int
    amount: Decimal
    currency: str | None = None
    transaction_type: TransactionType
    description: str | None = Field(default=None, max_length=500)
    property_id: int | None = None
    subscription_id: int | None = None
    parent_transaction_id: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("transaction_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return _upper(value)


class TransactionRead(BaseModel):
    id: int
    user_id: int
    reference_number: str
    transaction_type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    description: str | None
    property_id: int | None
    subscription_id: int | None
    parent_transaction_id: int | None
    commission_amount: Decimal | None
    commission_rate: Decimal | None
    commission_recipient_id: int | None
    metadata: dict[str, Any] = Field(validation_alias="metadata_json")
    processed_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class TransactionStatusUpdate(BaseModel):
    status: TransactionStatus
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        return _upper(value)


class TransactionProcess(GatewayInput):
    provider: GatewayProvider
    payment_method: PaymentMethod

    @field_validator("provider", "payment_method", mode="before")
    @classmethod
    def _normalize_enums(cls, value: Any) -> Any:
        return _upper(value)


class TransactionProcessResult(BaseModel):
    transaction: TransactionRead
    payment: PaymentRead


class CommissionRequest(BaseModel):
    rate: Decimal | None = None
    recipient_id: int | None = None


class CommissionRead(BaseModel):
    transaction_id: int
    amount: Decimal
    rate: Decimal
    recipient_id: int | None


class TransactionFilters(BaseModel):
    user_id: int | None = None
    transaction_type: TransactionType | None = None
    status: TransactionStatus | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)
