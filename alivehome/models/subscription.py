"""Subscription plan and user subscription models."""
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

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

from .base import Base
from .payment import GatewayProvider, PaymentMethod


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


BILLING_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.QUARTERLY: 3,
    BillingCycle.YEARLY: 12,
}


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    TRIAL = "TRIAL"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class SubscriptionPlan(Base):
    """A priced plan realtors and developers subscribe to."""

    __tablename__ = "subscription_plans"
    __table_args__ = (CheckConstraint("price >= 0", name="ck_subscription_plan_price"),)

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        SqlEnum(BillingCycle), nullable=False, default=BillingCycle.MONTHLY
    )
    billing_cycle_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    features_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    @property
    def cycle_months(self) -> int:
        """Explicit month count wins over the named cycle."""

        if self.billing_cycle_months:
            return self.billing_cycle_months
        return BILLING_CYCLE_MONTHS[self.billing_cycle]


class UserSubscription(Base):
    """A user's subscription to a plan, charged on a recurring schedule."""

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index("ix_user_subscriptions_due", "status", "next_billing_date"),
    )

    user_id: Mapped[int] = mapped_column(nullable=False, index=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("subscription_plans.id"), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        SqlEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE
    )
    provider: Mapped[GatewayProvider] = mapped_column(
        SqlEnum(GatewayProvider), nullable=False, default=GatewayProvider.STRIPE
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SqlEnum(PaymentMethod), nullable=False, default=PaymentMethod.CREDIT_CARD
    )
    payment_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    failed_payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    last_payment_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)

    plan: Mapped[SubscriptionPlan] = relationship(lazy="joined")
