"""Payment orchestration: drives payments through their gateway and the ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from alivehome.models import (
    MANUAL_PROVIDERS,
    SUCCESSFUL_PAYMENT_STATUSES,
    TRANSACTION_STATUS_RANK,
    GatewayProvider,
    Payment,
    PaymentMethod,
    PaymentStatus,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserSubscription,
)
from alivehome.schemas import (
    GatewayInput,
    PaymentCapture,
    PaymentInitiate,
    PaymentRefund,
    SubscriptionCharge,
    TransactionCreate,
    TransactionProcess,
)
from alivehome.services import ledger
from alivehome.services.gateway_base import ChargeContext, GatewayResult
from alivehome.services.gateway_registry import GatewayRegistry, get_gateway_registry
from alivehome.utils.audit import log_audit
from alivehome.utils.errors import (
    GatewayError,
    GatewayRejected,
    InvalidTransition,
    NotFound,
    PreconditionFailed,
    ValidationError,
)
from alivehome.utils.masking import mask_reference, redact_sensitive
from alivehome.utils.time import parse_iso_utc, utcnow

logger = logging.getLogger(__name__)

PROCESSABLE_STATUSES = frozenset({PaymentStatus.INITIATED, PaymentStatus.PENDING})
REFUNDABLE_STATUSES = frozenset({PaymentStatus.CAPTURED, PaymentStatus.SETTLED})
REFUND_CLAIM_KEY = "refund_in_flight"
REFUND_CLAIM_TTL = timedelta(minutes=15)


@dataclass
class ProcessedTransaction:
    transaction: Transaction
    payment: Payment


def _registry(registry: GatewayRegistry | None) -> GatewayRegistry:
    return registry if registry is not None else get_gateway_registry()


def _context(payload: GatewayInput | None) -> ChargeContext:
    if payload is None:
        return ChargeContext()
    return ChargeContext(
        payment_token=payload.payment_token,
        gateway_payment_id=payload.gateway_payment_id,
        customer_email=payload.customer_email,
        return_url=payload.return_url,
        description=payload.description,
        metadata=dict(payload.metadata or {}),
    )


def _apply_result(payment: Payment, result: GatewayResult, *, operation: str) -> None:
    """Write ``result`` back unless a concurrent webhook already moved the payment past it."""

    if result.status != payment.status and not payment.can_transition_to(result.status):
        ledger.archive_gateway_response(payment, operation, result.raw_response)
        logger.info(
            "Gateway result superseded by current payment status",
            extra={
                "payment_id": payment.id,
                "operation": operation,
                "current_status": payment.status.value,
                "gateway_status": result.status.value,
            },
        )
        return
    ledger.apply_gateway_result(payment, result, operation=operation)


def _error_record(exc: GatewayError) -> dict:
    return {
        "code": exc.code,
        "message": exc.message,
        "retryable": exc.retryable,
        "response": exc.raw_response if isinstance(exc.raw_response, dict) else None,
    }


def initiate_payment(
    db: Session,
    payload: PaymentInitiate,
    *,
    registry: GatewayRegistry | None = None,
    actor: str = "system",
) -> Payment:
    """Create the payment row and, for gateway providers, register an intent.

    A failing intent call is logged and recorded on the row but never
    raised: the INITIATED payment stays available for ``process_payment``.
    """

    adapter = _registry(registry).get(payload.provider)
    transaction = ledger.get_transaction(db, payload.transaction_id)
    payment = ledger.create_payment(
        db,
        transaction,
        provider=payload.provider,
        payment_method=payload.payment_method,
        amount=payload.amount,
        currency=payload.currency,
        actor=actor,
    )
    logger.info(
        "Payment initiated",
        extra={
            "payment_id": payment.id,
            "transaction_id": transaction.id,
            "provider": payment.provider.value,
            "amount": str(payment.amount),
        },
    )
    if payment.provider in MANUAL_PROVIDERS:
        return payment

    try:
        result = adapter.create_intent(payment, _context(payload))
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "Gateway intent creation failed; payment left INITIATED",
            exc_info=True,
            extra={"payment_id": payment.id, "provider": payment.provider.value},
        )
        payment = ledger.get_payment(db, payment.id, for_update=True)
        payment.gateway_response_json = {
            **(payment.gateway_response_json or {}),
            "intent_error": {
                "code": getattr(exc, "code", type(exc).__name__),
                "message": getattr(exc, "message", "Intent creation failed."),
            },
        }
        db.commit()
        db.refresh(payment)
        return payment

    payment = ledger.get_payment(db, payment.id, for_update=True)
    if result.gateway_transaction_id:
        payment.gateway_transaction_id = result.gateway_transaction_id
    if result.gateway_reference:
        payment.gateway_reference = result.gateway_reference
    ledger.archive_gateway_response(payment, "intent", result.raw_response)
    db.commit()
    db.refresh(payment)
    logger.info(
        "Gateway intent created",
        extra={
            "payment_id": payment.id,
            "provider": payment.provider.value,
            "gateway_transaction_id": mask_reference(payment.gateway_transaction_id),
        },
    )
    return payment


def process_payment(
    db: Session,
    payment_id: int,
    payload: GatewayInput | None = None,
    *,
    registry: GatewayRegistry | None = None,
    actor: str = "system",
) -> Payment:
    """Charge a payment through its gateway and record the outcome.

    The payment is committed as PENDING before the gateway call and no row
    lock is held while the call is in flight. ``GatewayRejected`` marks the
    payment FAILED; ``GatewayUnavailable`` leaves it PENDING. Both propagate.
    """

    payment = ledger.get_payment(db, payment_id, for_update=True)
    if payment.status not in PROCESSABLE_STATUSES:
        raise PreconditionFailed(
            f"Payment is {payment.status.value}; only INITIATED or PENDING payments can be processed.",
            details={"payment_id": payment.id, "status": payment.status.value},
        )
    adapter = _registry(registry).get(payment.provider)

    ledger.set_payment_status(payment, PaymentStatus.PENDING)
    db.commit()

    try:
        result = adapter.charge(payment, _context(payload))
    except GatewayRejected as exc:
        payment = ledger.get_payment(db, payment_id, for_update=True)
        if payment.can_transition_to(PaymentStatus.FAILED):
            ledger.set_payment_status(payment, PaymentStatus.FAILED, reason=exc.message)
        payment.gateway_response_json = {
            **(payment.gateway_response_json or {}),
            "charge_error": redact_sensitive(_error_record(exc)),
        }
        log_audit(
            db,
            actor=actor,
            action="PAYMENT_FAILED",
            entity="Payment",
            entity_id=payment.id,
            data={"provider": payment.provider, "code": exc.code, "reason": exc.message},
        )
        db.commit()
        logger.info(
            "Payment rejected by gateway",
            extra={"payment_id": payment.id, "provider": payment.provider.value, "code": exc.code},
        )
        raise
    except GatewayError as exc:
        logger.warning(
            "Gateway call failed; payment left PENDING",
            extra={"payment_id": payment_id, "provider": payment.provider.value, "code": exc.code},
        )
        raise

    payment = ledger.get_payment(db, payment_id, for_update=True)
    _apply_result(payment, result, operation="charge")
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_PROCESSED",
        entity="Payment",
        entity_id=payment.id,
        data={
            "provider": payment.provider,
            "status": payment.status,
            "gateway_transaction_id": payment.gateway_transaction_id,
        },
    )
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment processed",
        extra={
            "payment_id": payment.id,
            "provider": payment.provider.value,
            "status": payment.status.value,
            "gateway_transaction_id": mask_reference(payment.gateway_transaction_id),
        },
    )
    return payment


def capture_payment(
    db: Session,
    payment_id: int,
    payload: PaymentCapture | None = None,
    *,
    registry: GatewayRegistry | None = None,
    actor: str = "system",
) -> Payment:
    """Capture an AUTHORIZED payment. Any other status is refused before the gateway is touched."""

    payment = ledger.get_payment(db, payment_id)
    if payment.status != PaymentStatus.AUTHORIZED:
        raise PreconditionFailed(
            "Only AUTHORIZED payments can be captured.",
            details={"payment_id": payment.id, "status": payment.status.value},
        )
    amount = payload.amount if payload is not None else None
    if amount is not None and (amount <= 0 or amount > payment.amount):
        raise ValidationError(
            "Capture amount must be positive and not exceed the authorized amount.",
            details={"field": "amount"},
        )
    adapter = _registry(registry).get(payment.provider)
    result = adapter.capture(payment, ChargeContext(amount=amount))

    payment = ledger.get_payment(db, payment_id, for_update=True)
    _apply_result(payment, result, operation="capture")
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_CAPTURED",
        entity="Payment",
        entity_id=payment.id,
        data={"provider": payment.provider, "status": payment.status, "amount": amount or payment.amount},
    )
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment captured",
        extra={"payment_id": payment.id, "provider": payment.provider.value, "status": payment.status.value},
    )
    return payment


def _refund_claim(payment: Payment) -> dict | None:
    claim = (payment.gateway_response_json or {}).get(REFUND_CLAIM_KEY)
    if not isinstance(claim, dict):
        return None
    try:
        claimed_at = parse_iso_utc(str(claim.get("claimed_at")))
    except ValueError:
        return None
    if utcnow() - claimed_at > REFUND_CLAIM_TTL:
        return None
    return claim


def _drop_refund_claim(payment: Payment) -> None:
    archive = dict(payment.gateway_response_json or {})
    archive.pop(REFUND_CLAIM_KEY, None)
    payment.gateway_response_json = archive


def refund_payment(
    db: Session,
    payment_id: int,
    payload: PaymentRefund | None = None,
    *,
    registry: GatewayRegistry | None = None,
    actor: str = "system",
) -> Payment:
    """Refund a CAPTURED or SETTLED payment, fully or partially.

    The refund is claimed on the locked row and committed before the
    gateway is called, so a concurrent request for the same payment fails
    without reaching the provider. Every provider call carries the same
    idempotency key (``refund-<payment id>``); a claim left behind by a
    crashed worker expires after ``REFUND_CLAIM_TTL`` and the retry is
    deduplicated by the provider.
    """

    payment = ledger.get_payment(db, payment_id, for_update=True)
    if payment.status not in REFUNDABLE_STATUSES:
        db.rollback()
        raise PreconditionFailed(
            "Only CAPTURED or SETTLED payments can be refunded.",
            details={"payment_id": payment.id, "status": payment.status.value},
        )
    if _refund_claim(payment) is not None:
        db.rollback()
        raise PreconditionFailed(
            "A refund for this payment is already in progress.",
            details={"payment_id": payment.id},
        )
    amount: Decimal = payment.amount
    if payload is not None and payload.amount is not None:
        amount = payload.amount
        if amount <= 0 or amount > payment.amount:
            db.rollback()
            raise ValidationError(
                "Refund amount must be positive and not exceed the payment amount.",
                details={"field": "amount"},
            )
    reason = payload.reason if payload is not None else None
    adapter = _registry(registry).get(payment.provider)
    idempotency_key = f"refund-{payment.id}"

    payment.gateway_response_json = {
        **(payment.gateway_response_json or {}),
        REFUND_CLAIM_KEY: {"key": idempotency_key, "amount": str(amount), "claimed_at": utcnow().isoformat()},
    }
    db.commit()

    try:
        result = adapter.refund(
            payment, ChargeContext(amount=amount, reason=reason, idempotency_key=idempotency_key)
        )
    except Exception:
        db.rollback()
        payment = ledger.get_payment(db, payment_id, for_update=True)
        _drop_refund_claim(payment)
        db.commit()
        raise

    payment = ledger.get_payment(db, payment_id, for_update=True)
    _drop_refund_claim(payment)
    if payment.status not in REFUNDABLE_STATUSES:
        # The provider has already moved the money; keep its answer for reconciliation.
        ledger.archive_gateway_response(payment, "refund_unapplied", result.raw_response)
        log_audit(
            db,
            actor=actor,
            action="PAYMENT_REFUND_UNAPPLIED",
            entity="Payment",
            entity_id=payment.id,
            data={"provider": payment.provider, "amount": amount, "status": payment.status},
        )
        db.commit()
        logger.error(
            "Refund succeeded at the gateway but the payment changed status meanwhile",
            extra={"payment_id": payment.id, "status": payment.status.value},
        )
        raise PreconditionFailed(
            "Payment changed status while the refund was in flight.",
            details={"payment_id": payment.id, "status": payment.status.value},
        )
    ledger.apply_gateway_result(payment, result, operation="refund")
    payment.refund_amount = amount
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_REFUNDED",
        entity="Payment",
        entity_id=payment.id,
        data={"provider": payment.provider, "amount": amount, "reason": reason},
    )
    db.commit()
    db.refresh(payment)
    logger.info(
        "Payment refunded",
        extra={"payment_id": payment.id, "provider": payment.provider.value, "amount": str(amount)},
    )
    return payment


def update_transaction_status(
    db: Session,
    transaction_id: int,
    new_status: TransactionStatus,
    metadata: dict | None = None,
    *,
    actor: str = "system",
) -> Transaction:
    """Ledger status update with forward-only ordering enforced."""

    transaction = ledger.get_transaction(db, transaction_id)
    if TRANSACTION_STATUS_RANK[new_status] < TRANSACTION_STATUS_RANK[transaction.status]:
        raise InvalidTransition(
            f"Transaction cannot move back from {transaction.status.value} to {new_status.value}.",
            details={"transaction_id": transaction.id},
        )
    return ledger.update_transaction_status(db, transaction_id, new_status, metadata, actor=actor)


def process_transaction(
    db: Session,
    transaction_id: int,
    payload: TransactionProcess,
    *,
    registry: GatewayRegistry | None = None,
    actor: str = "system",
) -> ProcessedTransaction:
    """Open a payment for the transaction, charge it and complete the transaction on capture."""

    registry = _registry(registry)
    transaction = ledger.get_transaction(db, transaction_id)
    if transaction.is_terminal:
        raise PreconditionFailed(
            f"Transaction is already {transaction.status.value}.",
            details={"transaction_id": transaction.id},
        )
    registry.get(payload.provider)

    if transaction.status == TransactionStatus.PENDING:
        ledger.update_transaction_status(
            db,
            transaction.id,
            TransactionStatus.PROCESSING,
            {"provider": payload.provider.value},
            actor=actor,
            commit=False,
        )
    payment = ledger.create_payment(
        db,
        transaction,
        provider=payload.provider,
        payment_method=payload.payment_method,
        actor=actor,
    )
    payment = process_payment(db, payment.id, payload, registry=registry, actor=actor)

    db.refresh(transaction)
    if payment.status in SUCCESSFUL_PAYMENT_STATUSES and not transaction.is_terminal:
        transaction = ledger.update_transaction_status(
            db,
            transaction.id,
            TransactionStatus.COMPLETED,
            {"payment_id": payment.id, "completed_by": "orchestrator"},
            actor=actor,
        )
    return ProcessedTransaction(transaction=transaction, payment=payment)


def process_subscription_payment(
    db: Session,
    subscription_id: int,
    payload: SubscriptionCharge | None = None,
    *,
    registry: GatewayRegistry | None = None,
    actor: str = "system",
) -> ProcessedTransaction:
    """Charge one billing period of a subscription at its plan price."""

    subscription = db.get(UserSubscription, subscription_id)
    if subscription is None:
        raise NotFound("Subscription not found.", details={"subscription_id": subscription_id})
    if subscription.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
        raise PreconditionFailed(
            f"Subscription is {subscription.status.value}.",
            details={"subscription_id": subscription.id},
        )
    plan = subscription.plan

    payload = payload or SubscriptionCharge()
    provider: GatewayProvider = payload.provider or subscription.provider
    method: PaymentMethod = payload.payment_method or subscription.payment_method

    transaction = ledger.create_transaction(
        db,
        TransactionCreate(
            user_id=subscription.user_id,
            amount=plan.price,
            currency=plan.currency,
            transaction_type=TransactionType.SUBSCRIPTION_PAYMENT,
            subscription_id=subscription.id,
            description=f"{plan.name} subscription",
            metadata={"plan_id": plan.id, "billing_cycle_months": plan.cycle_months},
        ),
        actor=actor,
    )
    return process_transaction(
        db,
        transaction.id,
        TransactionProcess(
            provider=provider,
            payment_method=method,
            payment_token=payload.payment_token or subscription.payment_token,
            gateway_payment_id=payload.gateway_payment_id,
            customer_email=payload.customer_email,
            return_url=payload.return_url,
            description=payload.description or transaction.description,
            metadata=payload.metadata,
        ),
        registry=registry,
        actor=actor,
    )


def process_commission_payment(
    db: Session,
    transaction_id: int,
    *,
    registry: GatewayRegistry | None = None,
    actor: str = "system",
) -> ProcessedTransaction:
    """Pay out a stored commission as a child COMMISSION_PAYMENT by bank transfer."""

    source = ledger.get_transaction(db, transaction_id)
    if source.transaction_type == TransactionType.COMMISSION_PAYMENT:
        raise PreconditionFailed(
            "Commission payments do not carry a commission of their own.",
            details={"transaction_id": source.id},
        )
    if source.status != TransactionStatus.COMPLETED:
        raise PreconditionFailed(
            "Commissions are paid out on completed transactions only.",
            details={"transaction_id": source.id, "status": source.status.value},
        )
    if not source.commission_amount or source.commission_amount <= 0:
        raise PreconditionFailed("No commission has been calculated.", details={"transaction_id": source.id})
    if source.commission_recipient_id is None:
        raise PreconditionFailed("Commission recipient is not set.", details={"transaction_id": source.id})

    existing = db.scalars(
        select(Transaction).where(
            Transaction.parent_transaction_id == source.id,
            Transaction.transaction_type == TransactionType.COMMISSION_PAYMENT,
            Transaction.status.in_([TransactionStatus.PENDING, TransactionStatus.PROCESSING, TransactionStatus.COMPLETED]),
        )
    ).first()
    if existing is not None:
        raise PreconditionFailed(
            "Commission already paid out.",
            details={"transaction_id": source.id, "payout_transaction_id": existing.id},
        )

    payout = ledger.create_transaction(
        db,
        TransactionCreate(
            user_id=source.commission_recipient_id,
            amount=source.commission_amount,
            currency=source.currency,
            transaction_type=TransactionType.COMMISSION_PAYMENT,
            parent_transaction_id=source.id,
            property_id=source.property_id,
            description=f"Commission for {source.reference_number}",
            metadata={"source_reference": source.reference_number, "commission_rate": str(source.commission_rate)},
        ),
        actor=actor,
    )
    return process_transaction(
        db,
        payout.id,
        TransactionProcess(provider=GatewayProvider.BANK_TRANSFER, payment_method=PaymentMethod.BANK_TRANSFER),
        registry=registry,
        actor=actor,
    )


__all__ = [
    "ProcessedTransaction",
    "capture_payment",
    "initiate_payment",
    "process_commission_payment",
    "process_payment",
    "process_subscription_payment",
    "process_transaction",
    "refund_payment",
    "update_transaction_status",
]
