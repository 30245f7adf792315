"""Processed gateway webhook events, one row per (payment, event id)."""
from datetime import datetime

from sqlalchemy import DateTime, Enum as SqlEnum, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .payment import GatewayProvider, PaymentStatus


class PaymentWebhookEvent(Base):
    """Append-only ledger of applied webhook deliveries, keyed per payment."""

    __tablename__ = "payment_webhook_events"
    __table_args__ = (
        UniqueConstraint("payment_id", "event_id", name="uq_payment_webhook_events_payment_event"),
        Index("ix_payment_webhook_events_received", "received_at"),
    )

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    provider: Mapped[GatewayProvider] = mapped_column(SqlEnum(GatewayProvider), nullable=False)
    event_id: Mapped[str] = mapped_column(String(191), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mapped_status: Mapped[PaymentStatus] = mapped_column(SqlEnum(PaymentStatus), nullable=False)
    applied: Mapped[bool] = mapped_column(nullable=False, default=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
