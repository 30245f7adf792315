"""Payment model definitions."""
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, SoftDeleteMixin

if TYPE_CHECKING:  # pragma: no cover - hints only
    from .transaction import Transaction


class GatewayProvider(str, enum.Enum):
    """External payment gateways the orchestrator can dispatch to."""

    STRIPE = "STRIPE"
    PAYPAL = "PAYPAL"
    RAZORPAY = "RAZORPAY"
    FLUTTERWAVE = "FLUTTERWAVE"
    PAYSTACK = "PAYSTACK"
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"


MANUAL_PROVIDERS = frozenset({GatewayProvider.CASH, GatewayProvider.BANK_TRANSFER})


class PaymentMethod(str, enum.Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    DIGITAL_WALLET = "DIGITAL_WALLET"
    CASH = "CASH"
    CHECK = "CHECK"


class PaymentStatus(str, enum.Enum):
    """Canonical payment statuses, independent of any provider vocabulary."""

    INITIATED = "INITIATED"
    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.INITIATED: frozenset(
        {PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PENDING: frozenset(
        {
            PaymentStatus.PENDING,
            PaymentStatus.AUTHORIZED,
            PaymentStatus.CAPTURED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        }
    ),
    PaymentStatus.AUTHORIZED: frozenset(
        {PaymentStatus.CAPTURED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.CAPTURED: frozenset({PaymentStatus.SETTLED, PaymentStatus.REFUNDED}),
    PaymentStatus.SETTLED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Statuses a gateway callback may no longer change.
FINAL_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.CAPTURED,
        PaymentStatus.SETTLED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.REFUNDED,
    }
)

SUCCESSFUL_PAYMENT_STATUSES = frozenset({PaymentStatus.CAPTURED, PaymentStatus.SETTLED})

STATUS_TIMESTAMP_FIELDS = {
    PaymentStatus.AUTHORIZED: "authorized_at",
    PaymentStatus.CAPTURED: "captured_at",
    PaymentStatus.SETTLED: "settled_at",
    PaymentStatus.FAILED: "failed_at",
    PaymentStatus.CANCELLED: "cancelled_at",
    PaymentStatus.REFUNDED: "refunded_at",
}


class Payment(SoftDeleteMixin, Base):
    """One attempt to move money for a transaction through one gateway."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        Index("ix_payments_created_at", "created_at"),
        Index("ix_payments_status", "status"),
        Index("ix_payments_provider_status", "provider", "status"),
    )

    transaction_id: Mapped[int] = mapped_column(ForeignKey("transactions.id"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_method: Mapped[PaymentMethod] = mapped_column(SqlEnum(PaymentMethod), nullable=False)
    provider: Mapped[GatewayProvider] = mapped_column(SqlEnum(GatewayProvider), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus), nullable=False, default=PaymentStatus.INITIATED
    )

    gateway_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    gateway_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_response_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    webhook_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    webhook_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    webhook_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_webhook_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    transaction: Mapped["Transaction"] = relationship(back_populates="payments")

    def can_transition_to(self, new_status: PaymentStatus) -> bool:
        return new_status in PAYMENT_TRANSITIONS[self.status]
