"""Recurring subscription billing."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from alivehome import db as db_module
from alivehome.config import get_settings
from alivehome.core.runtime_state import record_billing_run
from alivehome.models import PaymentStatus, SubscriptionStatus, UserSubscription
from alivehome.services import payments as payments_service
from alivehome.services.gateway_registry import GatewayRegistry
from alivehome.utils.audit import log_audit
from alivehome.utils.errors import NotFound, PaymentError
from alivehome.utils.time import add_months, ensure_aware, utcnow

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"

UNSUCCESSFUL_PAYMENT_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED})


@dataclass
class BillingOutcome:
    subscription_id: int
    status: str
    transaction_id: int | None = None
    payment_id: int | None = None
    error_code: str | None = None
    next_billing_date: datetime | None = None


@dataclass
class BillingRunSummary:
    started_at: datetime
    finished_at: datetime | None = None
    results: list[BillingOutcome] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def due(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return self._count(OUTCOME_SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(OUTCOME_FAILED)

    @property
    def skipped(self) -> int:
        return self._count(OUTCOME_SKIPPED)

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "due": self.due,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [asdict(result) for result in self.results],
        }


def due_subscription_ids(db: Session, now: datetime) -> list[int]:
    stmt = (
        select(UserSubscription.id)
        .where(
            UserSubscription.status == SubscriptionStatus.ACTIVE,
            UserSubscription.next_billing_date.is_not(None),
            UserSubscription.next_billing_date <= now,
        )
        .order_by(UserSubscription.next_billing_date, UserSubscription.id)
    )
    return list(db.scalars(stmt).all())


def _advance(db: Session, subscription: UserSubscription, now: datetime, amount: Decimal) -> None:
    subscription.last_billing_date = now
    subscription.next_billing_date = add_months(now, subscription.plan.cycle_months)
    subscription.total_paid = Decimal(subscription.total_paid or 0) + amount
    subscription.last_payment_amount = amount
    log_audit(
        db,
        actor="billing",
        action="SUBSCRIPTION_BILLED",
        entity="UserSubscription",
        entity_id=subscription.id,
        data={"amount": amount, "next_billing_date": subscription.next_billing_date},
    )


def _mark_failed(db: Session, subscription_id: int, error_code: str | None) -> BillingOutcome:
    subscription = db.get(UserSubscription, subscription_id, populate_existing=True)
    if subscription is None:
        return BillingOutcome(subscription_id=subscription_id, status=OUTCOME_FAILED, error_code=error_code)
    subscription.status = SubscriptionStatus.PAST_DUE
    subscription.failed_payment_count = (subscription.failed_payment_count or 0) + 1
    log_audit(
        db,
        actor="billing",
        action="SUBSCRIPTION_PAST_DUE",
        entity="UserSubscription",
        entity_id=subscription.id,
        data={"error_code": error_code, "failed_payment_count": subscription.failed_payment_count},
    )
    db.commit()
    logger.warning(
        "Subscription billing failed",
        extra={
            "subscription_id": subscription.id,
            "error_code": error_code,
            "failed_payment_count": subscription.failed_payment_count,
        },
    )
    return BillingOutcome(
        subscription_id=subscription.id,
        status=OUTCOME_FAILED,
        error_code=error_code,
        next_billing_date=ensure_aware(subscription.next_billing_date),
    )


def bill_subscription(
    db: Session,
    subscription_id: int,
    *,
    now: datetime | None = None,
    registry: GatewayRegistry | None = None,
) -> BillingOutcome:
    """Charge one due subscription and advance or suspend it.

    A subscription that is no longer ACTIVE or not yet due (another worker
    got there first) is skipped. Typed payment errors and FAILED or
    CANCELLED payments flip the subscription to PAST_DUE.
    """

    now = now or utcnow()
    subscription = db.get(UserSubscription, subscription_id)
    if subscription is None:
        raise NotFound("Subscription not found.", details={"subscription_id": subscription_id})
    due_at = ensure_aware(subscription.next_billing_date)
    if subscription.status != SubscriptionStatus.ACTIVE or due_at is None or due_at > now:
        return BillingOutcome(
            subscription_id=subscription.id, status=OUTCOME_SKIPPED, next_billing_date=due_at
        )

    if not subscription.auto_renew:
        subscription.status = SubscriptionStatus.EXPIRED
        log_audit(
            db,
            actor="billing",
            action="SUBSCRIPTION_EXPIRED",
            entity="UserSubscription",
            entity_id=subscription.id,
            data={"next_billing_date": due_at},
        )
        db.commit()
        return BillingOutcome(subscription_id=subscription.id, status=OUTCOME_SKIPPED)

    price = Decimal(subscription.plan.price)
    if price == 0:
        _advance(db, subscription, now, price)
        db.commit()
        return BillingOutcome(
            subscription_id=subscription.id,
            status=OUTCOME_SUCCEEDED,
            next_billing_date=ensure_aware(subscription.next_billing_date),
        )

    try:
        processed = payments_service.process_subscription_payment(
            db, subscription.id, registry=registry, actor="billing"
        )
    except PaymentError as exc:
        db.rollback()
        return _mark_failed(db, subscription_id, exc.code)

    payment = processed.payment
    if payment.status in UNSUCCESSFUL_PAYMENT_STATUSES:
        outcome = _mark_failed(db, subscription_id, f"PAYMENT_{payment.status.value}")
        outcome.transaction_id = processed.transaction.id
        outcome.payment_id = payment.id
        return outcome

    subscription = db.get(UserSubscription, subscription_id, populate_existing=True)
    _advance(db, subscription, now, Decimal(payment.amount))
    db.commit()
    logger.info(
        "Subscription billed",
        extra={
            "subscription_id": subscription.id,
            "payment_id": payment.id,
            "payment_status": payment.status.value,
            "next_billing_date": subscription.next_billing_date.isoformat(),
        },
    )
    return BillingOutcome(
        subscription_id=subscription.id,
        status=OUTCOME_SUCCEEDED,
        transaction_id=processed.transaction.id,
        payment_id=payment.id,
        next_billing_date=ensure_aware(subscription.next_billing_date),
    )


def _bill_isolated(
    db: Session,
    subscription_id: int,
    now: datetime,
    registry: GatewayRegistry | None,
) -> BillingOutcome:
    try:
        return bill_subscription(db, subscription_id, now=now, registry=registry)
    except Exception:  # noqa: BLE001
        logger.exception("Unexpected billing error", extra={"subscription_id": subscription_id})
        db.rollback()
        return _mark_failed(db, subscription_id, "INTERNAL_ERROR")


def run_billing_cycle(
    db: Session,
    *,
    now: datetime | None = None,
    registry: GatewayRegistry | None = None,
) -> BillingRunSummary:
    """Bill every due subscription in turn on one session."""

    now = now or utcnow()
    summary = BillingRunSummary(started_at=utcnow())
    for subscription_id in due_subscription_ids(db, now):
        summary.results.append(_bill_isolated(db, subscription_id, now, registry))
    summary.finished_at = utcnow()
    return summary


def run_billing_cycle_once(
    *,
    now: datetime | None = None,
    registry: GatewayRegistry | None = None,
    max_workers: int | None = None,
) -> BillingRunSummary:
    """Entry point for the scheduler job: bill due subscriptions in parallel.

    Each worker thread uses its own session; subscriptions are independent,
    so their order does not matter.
    """

    now = now or utcnow()
    workers = max(1, max_workers or get_settings().BILLING_MAX_WORKERS)

    with db_module.open_session() as session:
        due_ids = due_subscription_ids(session, now)

    def _worker(subscription_id: int) -> BillingOutcome:
        with db_module.open_session() as session:
            return _bill_isolated(session, subscription_id, now, registry)

    summary = BillingRunSummary(started_at=utcnow())
    if due_ids:
        with ThreadPoolExecutor(max_workers=min(workers, len(due_ids)), thread_name_prefix="billing") as pool:
            summary.results.extend(pool.map(_worker, due_ids))
    summary.finished_at = utcnow()

    record_billing_run(summary.as_dict())
    logger.info(
        "Billing cycle finished",
        extra={
            "due": summary.due,
            "succeeded": summary.succeeded,
            "failed": summary.failed,
            "skipped": summary.skipped,
        },
    )
    return summary


__all__ = [
    "BillingOutcome",
    "BillingRunSummary",
    "bill_subscription",
    "due_subscription_ids",
    "run_billing_cycle",
    "run_billing_cycle_once",
]
