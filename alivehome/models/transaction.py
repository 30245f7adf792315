"""Transaction model."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, SoftDeleteMixin

if TYPE_CHECKING:  # pragma: no cover - hints only
    from .payment import Payment
    from .subscription import UserSubscription


class TransactionType(str, PyEnum):
    """Business reason behind a value movement."""

    PROPERTY_PURCHASE = "PROPERTY_PURCHASE"
    SUBSCRIPTION_PAYMENT = "SUBSCRIPTION_PAYMENT"
    COMMISSION_PAYMENT = "COMMISSION_PAYMENT"
    REFUND = "REFUND"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


class TransactionStatus(str, PyEnum):
    """Possible transaction statuses."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
)

# Forward-only ordering; terminal statuses share the last rank.
TRANSACTION_STATUS_RANK = {
    TransactionStatus.PENDING: 0,
    TransactionStatus.PROCESSING: 1,
    TransactionStatus.COMPLETED: 2,
    TransactionStatus.FAILED: 2,
    TransactionStatus.CANCELLED: 2,
}


class Transaction(SoftDeleteMixin, Base):
    """Business-level record of a value movement (purchase, subscription charge, commission)."""

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transaction_positive_amount"),
        Index("ix_transactions_created_at", "created_at"),
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_user_status", "user_id", "status"),
    )

    user_id: Mapped[int] = mapped_column(nullable=False, index=True)
    reference_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(SqlEnum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[TransactionStatus] = mapped_column(
        SqlEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING
    )
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    property_id: Mapped[int | None] = mapped_column(nullable=True, index=True)
    subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("user_subscriptions.id"), nullable=True, index=True
    )
    parent_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("transactions.id"), nullable=True, index=True
    )

    commission_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    commission_rate: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    commission_recipient_id: Mapped[int | None] = mapped_column(nullable=True)

    metadata_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payments: Mapped[list["Payment"]] = relationship(back_populates="transaction", order_by="Payment.id")
    parent: Mapped[Optional["Transaction"]] = relationship(remote_side="Transaction.id")
    subscription: Mapped[Optional["UserSubscription"]] = relationship()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TRANSACTION_STATUSES
