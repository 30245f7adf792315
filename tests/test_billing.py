"""Recurring billing runs."""
from datetime import timedelta
from decimal import Decimal

from alivehome.core.runtime_state import last_billing_run
from alivehome.models import (
    GatewayProvider,
    PaymentMethod,
    PaymentStatus,
    SubscriptionStatus,
    UserSubscription,
)
from alivehome.services import billing
from alivehome.utils.errors import GatewayRejected
from alivehome.utils.time import add_months, ensure_aware, utcnow


def _reload(db_session, subscription_id: int) -> UserSubscription:
    return db_session.get(UserSubscription, subscription_id, populate_existing=True)


def test_due_subscription_is_charged_and_advanced(make_subscription, db_session, registry):
    subscription = make_subscription(price="49.00")
    now = utcnow()

    summary = billing.run_billing_cycle(db_session, now=now, registry=registry)

    assert summary.due == 1
    assert summary.succeeded == 1
    outcome = summary.results[0]
    assert outcome.payment_id is not None
    refreshed = _reload(db_session, subscription.id)
    assert refreshed.status == SubscriptionStatus.ACTIVE
    assert ensure_aware(refreshed.next_billing_date) == add_months(now, 1)
    assert refreshed.total_paid == Decimal("49.00")
    assert refreshed.last_payment_amount == Decimal("49.00")


def test_subscriptions_not_due_are_left_alone(make_subscription, db_session, registry):
    make_subscription(due_in=timedelta(days=3))
    make_subscription(status=SubscriptionStatus.PAST_DUE)

    summary = billing.run_billing_cycle(db_session, registry=registry)

    assert summary.due == 0


def test_rejected_charge_moves_subscription_past_due(make_subscription, db_session, registry, fake_gateway):
    fake_gateway.charge_error = GatewayRejected("card expired", provider="STRIPE")
    subscription = make_subscription(provider=GatewayProvider.STRIPE, payment_method=PaymentMethod.CREDIT_CARD)

    summary = billing.run_billing_cycle(db_session, registry=registry)

    assert summary.failed == 1
    assert summary.results[0].error_code == "GATEWAY_REJECTED"
    refreshed = _reload(db_session, subscription.id)
    assert refreshed.status == SubscriptionStatus.PAST_DUE
    assert refreshed.failed_payment_count == 1


def test_pending_payment_counts_as_billed(make_subscription, db_session, registry, fake_gateway):
    fake_gateway.charge_status = PaymentStatus.PENDING
    subscription = make_subscription(provider=GatewayProvider.STRIPE, payment_method=PaymentMethod.CREDIT_CARD)

    summary = billing.run_billing_cycle(db_session, registry=registry)

    assert summary.succeeded == 1
    assert _reload(db_session, subscription.id).status == SubscriptionStatus.ACTIVE


def test_unexpected_error_is_isolated_per_subscription(
    make_subscription, db_session, registry, fake_gateway
):
    fake_gateway.charge_error = RuntimeError("boom")
    broken = make_subscription(provider=GatewayProvider.STRIPE, payment_method=PaymentMethod.CREDIT_CARD)
    healthy = make_subscription()

    summary = billing.run_billing_cycle(db_session, registry=registry)

    assert summary.due == 2
    outcomes = {outcome.subscription_id: outcome for outcome in summary.results}
    assert outcomes[broken.id].error_code == "INTERNAL_ERROR"
    assert outcomes[healthy.id].status == billing.OUTCOME_SUCCEEDED


def test_free_plan_advances_without_charge(make_subscription, db_session, registry):
    subscription = make_subscription(price="0.00")

    summary = billing.run_billing_cycle(db_session, registry=registry)

    assert summary.succeeded == 1
    assert summary.results[0].payment_id is None
    assert ensure_aware(_reload(db_session, subscription.id).next_billing_date) > utcnow()


def test_subscription_without_auto_renew_expires(make_subscription, db_session, registry):
    subscription = make_subscription(auto_renew=False)

    summary = billing.run_billing_cycle(db_session, registry=registry)

    assert summary.skipped == 1
    assert _reload(db_session, subscription.id).status == SubscriptionStatus.EXPIRED


def test_threaded_run_records_summary(make_subscription, registry):
    make_subscription()
    make_subscription(price="99.00")

    summary = billing.run_billing_cycle_once(registry=registry, max_workers=1)

    assert summary.succeeded == 2
    recorded = last_billing_run()
    assert recorded is not None
    assert recorded["succeeded"] == 2
