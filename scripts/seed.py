"""Seed subscription plans and a sample subscription for local development."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import select

from alivehome import db
from alivehome.config import get_settings
from alivehome.models import (
    BillingCycle,
    GatewayProvider,
    PaymentMethod,
    SubscriptionPlan,
    SubscriptionStatus,
    UserSubscription,
)
from alivehome.utils.time import utcnow

PLANS = [
    ("Realtor Basic", Decimal("29.00"), BillingCycle.MONTHLY),
    ("Realtor Pro", Decimal("79.00"), BillingCycle.MONTHLY),
    ("Developer Quarterly", Decimal("499.00"), BillingCycle.QUARTERLY),
    ("Agency Yearly", Decimal("2990.00"), BillingCycle.YEARLY),
]


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    db.create_all()
    with db.open_session() as session:
        existing = set(session.scalars(select(SubscriptionPlan.name)).all())
        plans = [
            SubscriptionPlan(name=name, price=price, currency=settings.PAYMENT_CURRENCY, billing_cycle=cycle)
            for name, price, cycle in PLANS
            if name not in existing
        ]
        session.add_all(plans)
        session.commit()

        basic = session.scalars(select(SubscriptionPlan).where(SubscriptionPlan.name == "Realtor Basic")).one()
        now = utcnow()
        session.add(
            UserSubscription(
                user_id=1,
                plan_id=basic.id,
                status=SubscriptionStatus.ACTIVE,
                provider=GatewayProvider.CASH,
                payment_method=PaymentMethod.CASH,
                start_date=now,
                next_billing_date=now + timedelta(days=1),
            )
        )
        session.commit()
        print(f"Seed data inserted: {len(plans)} plan(s), 1 subscription.")


if __name__ == "__main__":
    main()
