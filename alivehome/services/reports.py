"""Read-side aggregations over the payment ledger."""
from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from alivehome.models import (
    SUCCESSFUL_PAYMENT_STATUSES,
    GatewayProvider,
    Payment,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from alivehome.schemas import PaymentReportRequest
from alivehome.utils.errors import ValidationError
from alivehome.utils.time import utcnow

_CENT = Decimal("0.01")
HISTORY_DEFAULT_LIMIT = 100
HISTORY_MAX_LIMIT = 1000


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def _check_range(start_date: datetime | None, end_date: datetime | None) -> None:
    if start_date and end_date and start_date > end_date:
        raise ValidationError("start_date must not be after end_date.", details={"field": "start_date"})


def payment_stats(
    db: Session,
    *,
    provider: GatewayProvider | None = None,
    status: PaymentStatus | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> list[dict]:
    """Count, total and average amount grouped by provider and status."""

    _check_range(start_date, end_date)
    stmt = select(
        Payment.provider,
        Payment.status,
        func.count(Payment.id),
        func.coalesce(func.sum(Payment.amount), 0),
        func.avg(Payment.amount),
    ).where(Payment.deleted_at.is_(None))
    if provider is not None:
        stmt = stmt.where(Payment.provider == provider)
    if status is not None:
        stmt = stmt.where(Payment.status == status)
    if start_date is not None:
        stmt = stmt.where(Payment.created_at >= start_date)
    if end_date is not None:
        stmt = stmt.where(Payment.created_at <= end_date)
    stmt = stmt.group_by(Payment.provider, Payment.status).order_by(Payment.provider, Payment.status)

    return [
        {
            "provider": row_provider,
            "status": row_status,
            "count": count,
            "total_amount": _money(total),
            "average_amount": _money(average),
        }
        for row_provider, row_status, count, total, average in db.execute(stmt).all()
    ]


def transaction_history(
    db: Session,
    *,
    user_id: int | None = None,
    transaction_type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = HISTORY_DEFAULT_LIMIT,
    offset: int = 0,
) -> list[Transaction]:
    if limit < 1 or limit > HISTORY_MAX_LIMIT:
        raise ValidationError(
            f"limit must be between 1 and {HISTORY_MAX_LIMIT}.", details={"field": "limit"}
        )
    if offset < 0:
        raise ValidationError("offset must not be negative.", details={"field": "offset"})
    _check_range(start_date, end_date)

    stmt = select(Transaction).where(Transaction.deleted_at.is_(None))
    if user_id is not None:
        stmt = stmt.where(Transaction.user_id == user_id)
    if transaction_type is not None:
        stmt = stmt.where(Transaction.transaction_type == transaction_type)
    if status is not None:
        stmt = stmt.where(Transaction.status == status)
    if start_date is not None:
        stmt = stmt.where(Transaction.created_at >= start_date)
    if end_date is not None:
        stmt = stmt.where(Transaction.created_at <= end_date)
    stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc()).offset(offset).limit(limit)
    return list(db.scalars(stmt).all())


def generate_payment_report(db: Session, params: PaymentReportRequest) -> dict:
    """Summary and per-gateway breakdown of payments created in a date range."""

    _check_range(params.start_date, params.end_date)
    stmt = select(Payment).where(
        Payment.deleted_at.is_(None),
        Payment.created_at >= params.start_date,
        Payment.created_at <= params.end_date,
    )
    if params.provider is not None:
        stmt = stmt.where(Payment.provider == params.provider)
    payments = list(db.scalars(stmt.order_by(Payment.created_at, Payment.id)).all())

    gateways: dict[GatewayProvider, dict] = {}
    total_amount = Decimal("0")
    successful_amount = Decimal("0")
    refunded_amount = Decimal("0")
    successful = failed = 0
    for payment in payments:
        amount = Decimal(payment.amount)
        total_amount += amount
        bucket = gateways.setdefault(
            payment.provider,
            {"provider": payment.provider, "count": 0, "total_amount": Decimal("0"), "successful": 0},
        )
        bucket["count"] += 1
        bucket["total_amount"] += amount
        if payment.status in SUCCESSFUL_PAYMENT_STATUSES:
            successful += 1
            successful_amount += amount
            bucket["successful"] += 1
        elif payment.status == PaymentStatus.FAILED:
            failed += 1
        elif payment.status == PaymentStatus.REFUNDED:
            refunded_amount += Decimal(payment.refund_amount if payment.refund_amount is not None else amount)

    breakdown = []
    for bucket in sorted(gateways.values(), key=lambda item: item["provider"].value):
        rate = Decimal(bucket["successful"]) * 100 / Decimal(bucket["count"])
        breakdown.append(
            {
                **bucket,
                "total_amount": _money(bucket["total_amount"]),
                "success_rate": rate.quantize(_CENT, rounding=ROUND_HALF_UP),
            }
        )

    report = {
        "start_date": params.start_date,
        "end_date": params.end_date,
        "generated_at": utcnow(),
        "summary": {
            "total_payments": len(payments),
            "total_amount": _money(total_amount),
            "successful_payments": successful,
            "failed_payments": failed,
            "successful_amount": _money(successful_amount),
            "refunded_amount": _money(refunded_amount),
        },
        "gateways": breakdown,
        "payments": None,
    }
    if params.include_details:
        report["payments"] = [
            {
                "id": payment.id,
                "transaction_id": payment.transaction_id,
                "provider": payment.provider.value,
                "status": payment.status.value,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "created_at": payment.created_at.isoformat(),
            }
            for payment in payments
        ]
    return report


__all__ = ["generate_payment_report", "payment_stats", "transaction_history"]
