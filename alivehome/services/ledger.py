"""Transaction and payment ledger: record creation, status bookkeeping, commissions."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from alivehome.config import SUPPORTED_CURRENCIES, get_settings
from alivehome.models import (
    STATUS_TIMESTAMP_FIELDS,
    GatewayProvider,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserSubscription,
)
from alivehome.schemas import TransactionCreate, TransactionFilters
from alivehome.services.gateway_base import GatewayResult
from alivehome.utils.audit import log_audit
from alivehome.utils.errors import InvalidTransition, NotFound, PreconditionFailed, ValidationError
from alivehome.utils.masking import redact_sensitive
from alivehome.utils.time import utcnow

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")

DEFAULT_COMMISSION_RATES: dict[TransactionType, Decimal] = {
    TransactionType.PROPERTY_PURCHASE: Decimal("0.05"),
    TransactionType.SUBSCRIPTION_PAYMENT: Decimal("0.02"),
    TransactionType.COMMISSION_PAYMENT: Decimal("0.10"),
}
FALLBACK_COMMISSION_RATE = Decimal("0.03")

TRANSACTION_TIMESTAMP_FIELDS = {
    TransactionStatus.PROCESSING: "processed_at",
    TransactionStatus.COMPLETED: "completed_at",
    TransactionStatus.FAILED: "failed_at",
    TransactionStatus.CANCELLED: "cancelled_at",
}


@dataclass(frozen=True)
class CommissionResult:
    transaction_id: int
    amount: Decimal
    rate: Decimal
    recipient_id: int | None = None


def _to_decimal(value: Any, field: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a decimal number.", details={"field": field}) from None


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def _validate_amount(value: Any, field: str = "amount") -> Decimal:
    amount = _to_decimal(value, field)
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field} must be greater than zero.", details={"field": field})
    if amount != quantize_money(amount):
        raise ValidationError(f"{field} cannot have more than two decimal places.", details={"field": field})
    return amount


def normalize_currency(value: str | None) -> str:
    """Return an upper-cased supported ISO code, defaulting to ``PAYMENT_CURRENCY``."""

    if value is None or not str(value).strip():
        return get_settings().PAYMENT_CURRENCY
    currency = str(value).strip().upper()
    if not _CURRENCY_RE.match(currency):
        raise ValidationError("currency must be a 3-letter ISO code.", details={"field": "currency"})
    if currency not in SUPPORTED_CURRENCIES:
        raise ValidationError(
            f"Unsupported currency {currency}.",
            details={"field": "currency", "supported": sorted(SUPPORTED_CURRENCIES)},
        )
    return currency


def _flush_or_commit(db: Session, instance: Any, commit: bool) -> None:
    if commit:
        db.commit()
        db.refresh(instance)
    else:
        db.flush()


def get_transaction(db: Session, transaction_id: int, *, for_update: bool = False) -> Transaction:
    stmt = select(Transaction).where(Transaction.id == transaction_id, Transaction.deleted_at.is_(None))
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    transaction = db.execute(stmt).scalar_one_or_none()
    if transaction is None:
        raise NotFound("Transaction not found.", details={"transaction_id": transaction_id})
    return transaction


def get_payment(db: Session, payment_id: int, *, for_update: bool = False) -> Payment:
    stmt = select(Payment).where(Payment.id == payment_id, Payment.deleted_at.is_(None))
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    payment = db.execute(stmt).scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment not found.", details={"payment_id": payment_id})
    return payment


def create_transaction(
    db: Session,
    payload: TransactionCreate,
    *,
    actor: str = "system",
    commit: bool = True,
) -> Transaction:
    """Validate and persist a new PENDING transaction."""

    amount = _validate_amount(payload.amount)
    currency = normalize_currency(payload.currency)

    parent: Transaction | None = None
    if payload.parent_transaction_id is not None:
        parent = get_transaction(db, payload.parent_transaction_id)
    if payload.transaction_type == TransactionType.COMMISSION_PAYMENT:
        if parent is None:
            raise ValidationError(
                "Commission payments must reference a parent transaction.",
                details={"field": "parent_transaction_id"},
            )
        if parent.transaction_type == TransactionType.COMMISSION_PAYMENT:
            raise ValidationError(
                "A commission payment cannot be the parent of another commission.",
                details={"parent_transaction_id": parent.id},
            )

    if payload.subscription_id is not None and db.get(UserSubscription, payload.subscription_id) is None:
        raise NotFound("Subscription not found.", details={"subscription_id": payload.subscription_id})

    transaction = Transaction(
        user_id=payload.user_id,
        reference_number=f"TXN-{utcnow():%Y%m%d}-{uuid4().hex[:10].upper()}",
        transaction_type=payload.transaction_type,
        amount=amount,
        currency=currency,
        status=TransactionStatus.PENDING,
        description=payload.description,
        property_id=payload.property_id,
        subscription_id=payload.subscription_id,
        parent_transaction_id=parent.id if parent else None,
        metadata_json=dict(payload.metadata or {}),
    )
    db.add(transaction)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="TRANSACTION_CREATED",
        entity="Transaction",
        entity_id=transaction.id,
        data={
            "reference_number": transaction.reference_number,
            "transaction_type": transaction.transaction_type,
            "amount": transaction.amount,
            "currency": transaction.currency,
            "parent_transaction_id": transaction.parent_transaction_id,
        },
    )
    _flush_or_commit(db, transaction, commit)
    logger.info(
        "Transaction created",
        extra={
            "transaction_id": transaction.id,
            "transaction_type": transaction.transaction_type.value,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
        },
    )
    return transaction


def update_transaction_status(
    db: Session,
    transaction_id: int,
    new_status: TransactionStatus,
    metadata: Mapping[str, Any] | None = None,
    *,
    actor: str = "system",
    commit: bool = True,
) -> Transaction:
    """Move a transaction to ``new_status`` and merge ``metadata`` into it.

    Leaving a terminal status is refused; ordering between non-terminal
    statuses is left to the caller.
    """

    transaction = get_transaction(db, transaction_id, for_update=True)
    previous = transaction.status
    if transaction.is_terminal:
        raise InvalidTransition(
            f"Transaction is already {previous.value}.",
            details={
                "transaction_id": transaction.id,
                "current_status": previous.value,
                "requested_status": new_status.value,
            },
        )

    now = utcnow()
    transaction.status = new_status
    timestamp_field = TRANSACTION_TIMESTAMP_FIELDS.get(new_status)
    if timestamp_field and getattr(transaction, timestamp_field) is None:
        setattr(transaction, timestamp_field, now)
    if metadata:
        # Reassign so the JSON column is marked dirty.
        transaction.metadata_json = {**(transaction.metadata_json or {}), **dict(metadata)}

    log_audit(
        db,
        actor=actor,
        action="TRANSACTION_STATUS_UPDATED",
        entity="Transaction",
        entity_id=transaction.id,
        data={"from": previous, "to": new_status, "metadata": dict(metadata or {})},
    )
    _flush_or_commit(db, transaction, commit)
    logger.info(
        "Transaction status updated",
        extra={"transaction_id": transaction.id, "from": previous.value, "to": new_status.value},
    )
    return transaction


def default_commission_rate(transaction_type: TransactionType) -> Decimal:
    return DEFAULT_COMMISSION_RATES.get(transaction_type, FALLBACK_COMMISSION_RATE)


def calculate_commission(
    db: Session,
    transaction_id: int,
    *,
    rate: Decimal | float | str | None = None,
    recipient_id: int | None = None,
    actor: str = "system",
    commit: bool = True,
) -> CommissionResult:
    """Compute the commission for a transaction and store it on the row.

    Every call recomputes from the current amount and overwrites the stored
    figures, so an administrator can correct a rate after the fact.
    """

    transaction = get_transaction(db, transaction_id, for_update=True)
    if rate is None:
        applied_rate = default_commission_rate(transaction.transaction_type)
    else:
        applied_rate = _to_decimal(rate, "rate")
        if not applied_rate.is_finite() or applied_rate < 0 or applied_rate > 1:
            raise ValidationError("rate must be between 0 and 1.", details={"field": "rate"})

    amount = quantize_money(Decimal(transaction.amount) * applied_rate)
    transaction.commission_rate = applied_rate
    transaction.commission_amount = amount
    if recipient_id is not None:
        transaction.commission_recipient_id = recipient_id

    log_audit(
        db,
        actor=actor,
        action="COMMISSION_CALCULATED",
        entity="Transaction",
        entity_id=transaction.id,
        data={"rate": applied_rate, "amount": amount, "recipient_id": transaction.commission_recipient_id},
    )
    _flush_or_commit(db, transaction, commit)
    logger.info(
        "Commission calculated",
        extra={"transaction_id": transaction.id, "rate": str(applied_rate), "amount": str(amount)},
    )
    return CommissionResult(
        transaction_id=transaction.id,
        amount=amount,
        rate=applied_rate,
        recipient_id=transaction.commission_recipient_id,
    )


def create_payment(
    db: Session,
    transaction: Transaction,
    *,
    provider: GatewayProvider,
    payment_method: PaymentMethod,
    amount: Decimal | None = None,
    currency: str | None = None,
    actor: str = "system",
    commit: bool = True,
) -> Payment:
    """Persist a new INITIATED payment attempt for ``transaction``."""

    if transaction.is_terminal:
        raise PreconditionFailed(
            f"Transaction is already {transaction.status.value}.",
            details={"transaction_id": transaction.id, "status": transaction.status.value},
        )
    payment_amount = _validate_amount(amount if amount is not None else transaction.amount)
    payment_currency = normalize_currency(currency or transaction.currency)
    if payment_currency != transaction.currency:
        raise ValidationError(
            "Payment currency must match the transaction currency.",
            details={"field": "currency", "transaction_currency": transaction.currency},
        )

    payment = Payment(
        transaction_id=transaction.id,
        user_id=transaction.user_id,
        amount=payment_amount,
        currency=payment_currency,
        payment_method=payment_method,
        provider=provider,
        status=PaymentStatus.INITIATED,
        gateway_response_json={},
        processed_webhook_ids=[],
    )
    db.add(payment)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_CREATED",
        entity="Payment",
        entity_id=payment.id,
        data={
            "transaction_id": transaction.id,
            "provider": provider,
            "payment_method": payment_method,
            "amount": payment_amount,
            "currency": payment_currency,
        },
    )
    _flush_or_commit(db, payment, commit)
    return payment


def set_payment_status(payment: Payment, new_status: PaymentStatus, *, reason: str | None = None) -> None:
    """Apply a state-machine transition to ``payment`` and stamp its timestamp."""

    if payment.status == new_status and new_status != PaymentStatus.PENDING:
        return
    if not payment.can_transition_to(new_status):
        raise InvalidTransition(
            f"Payment cannot move from {payment.status.value} to {new_status.value}.",
            details={
                "payment_id": payment.id,
                "current_status": payment.status.value,
                "requested_status": new_status.value,
            },
        )
    payment.status = new_status
    timestamp_field = STATUS_TIMESTAMP_FIELDS.get(new_status)
    if timestamp_field:
        setattr(payment, timestamp_field, utcnow())
    if reason is not None:
        payment.failure_reason = reason[:500]


def archive_gateway_response(payment: Payment, key: str, raw: Mapping[str, Any] | None) -> None:
    """Store a redacted provider response under ``key`` in the response archive."""

    payment.gateway_response_json = {
        **(payment.gateway_response_json or {}),
        key: redact_sensitive(dict(raw or {})),
    }


def apply_gateway_result(payment: Payment, result: GatewayResult, *, operation: str) -> None:
    """Write a gateway outcome back onto the payment row."""

    if result.gateway_transaction_id:
        payment.gateway_transaction_id = result.gateway_transaction_id
    if result.gateway_reference:
        payment.gateway_reference = result.gateway_reference
    archive_gateway_response(payment, operation, result.raw_response)
    if result.status != payment.status or result.status == PaymentStatus.PENDING:
        set_payment_status(payment, result.status)


def list_transactions(db: Session, filters: TransactionFilters) -> list[Transaction]:
    stmt = select(Transaction).where(Transaction.deleted_at.is_(None))
    if filters.user_id is not None:
        stmt = stmt.where(Transaction.user_id == filters.user_id)
    if filters.transaction_type is not None:
        stmt = stmt.where(Transaction.transaction_type == filters.transaction_type)
    if filters.status is not None:
        stmt = stmt.where(Transaction.status == filters.status)
    if filters.start_date is not None:
        stmt = stmt.where(Transaction.created_at >= filters.start_date)
    if filters.end_date is not None:
        stmt = stmt.where(Transaction.created_at <= filters.end_date)
    stmt = stmt.order_by(Transaction.created_at.desc(), Transaction.id.desc())
    stmt = stmt.offset(filters.offset).limit(filters.limit)
    return list(db.scalars(stmt).all())


__all__ = [
    "CommissionResult",
    "DEFAULT_COMMISSION_RATES",
    "apply_gateway_result",
    "archive_gateway_response",
    "calculate_commission",
    "create_payment",
    "create_transaction",
    "default_commission_rate",
    "get_payment",
    "get_transaction",
    "list_transactions",
    "normalize_currency",
    "quantize_money",
    "set_payment_status",
    "update_transaction_status",
]
