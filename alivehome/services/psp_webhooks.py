"""Inbound gateway webhooks: verification, idempotent application and transaction cascade."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from alivehome.models import (
    FINAL_PAYMENT_STATUSES,
    PAYMENT_TRANSITIONS,
    SUCCESSFUL_PAYMENT_STATUSES,
    GatewayProvider,
    Payment,
    PaymentStatus,
    PaymentWebhookEvent,
    TransactionStatus,
)
from alivehome.services import ledger
from alivehome.services.gateway_base import GatewayAdapter, GatewayEvent
from alivehome.services.gateway_registry import GatewayRegistry, get_gateway_registry
from alivehome.utils.audit import log_audit
from alivehome.utils.errors import MalformedWebhook, NotFound, SignatureInvalid
from alivehome.utils.masking import mask_reference, redact_sensitive, secret_fingerprint
from alivehome.utils.time import utcnow

logger = logging.getLogger(__name__)

WEBHOOK_HISTORY_LIMIT = 50

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_STALE = "stale"
OUTCOME_ERROR = "error"


@dataclass
class WebhookResult:
    outcome: str
    provider: GatewayProvider
    event_id: str | None = None
    payment_id: int | None = None
    status: PaymentStatus | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome != OUTCOME_ERROR


def _error(provider: GatewayProvider, code: str, message: str, **extra) -> WebhookResult:
    logger.warning(
        "Webhook could not be applied",
        extra={"provider": provider.value, "error_code": code, "detail": message, **extra},
    )
    return WebhookResult(
        outcome=OUTCOME_ERROR,
        provider=provider,
        event_id=extra.get("event_id"),
        payment_id=extra.get("payment_id"),
        error_code=code,
    )


def _resolve_payment(db: Session, adapter: GatewayAdapter, event: GatewayEvent) -> Payment | None:
    """Find the payment the event is about and lock its row."""

    if event.payment_ref:
        try:
            payment_id = int(str(event.payment_ref).strip())
        except ValueError:
            payment_id = None
        if payment_id is not None:
            try:
                return ledger.get_payment(db, payment_id, for_update=True)
            except NotFound:
                pass

    if event.gateway_transaction_id:
        stmt = (
            select(Payment)
            .where(
                Payment.provider == adapter.provider,
                Payment.gateway_transaction_id == event.gateway_transaction_id,
                Payment.deleted_at.is_(None),
            )
            .order_by(Payment.id.desc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return db.scalars(stmt).first()
    return None


def _already_processed(db: Session, payment: Payment, event_id: str) -> bool:
    if event_id in (payment.processed_webhook_ids or []):
        return True
    existing = db.scalar(
        select(PaymentWebhookEvent.id).where(
            PaymentWebhookEvent.payment_id == payment.id,
            PaymentWebhookEvent.event_id == event_id,
        )
    )
    return existing is not None


def _apply_status(payment: Payment, new_status: PaymentStatus) -> bool:
    """Move ``payment`` towards ``new_status``; return ``False`` when it is already final."""

    if payment.status in FINAL_PAYMENT_STATUSES:
        return False
    if new_status == PaymentStatus.PENDING:
        if payment.status == PaymentStatus.INITIATED:
            ledger.set_payment_status(payment, PaymentStatus.PENDING)
        return True
    if new_status == payment.status:
        return True
    if payment.status == PaymentStatus.INITIATED and new_status not in PAYMENT_TRANSITIONS[payment.status]:
        # The provider is authoritative: an event may overtake our own charge call.
        ledger.set_payment_status(payment, PaymentStatus.PENDING)
    if not payment.can_transition_to(new_status):
        return False
    ledger.set_payment_status(payment, new_status)
    return True


def _complete_transaction(db: Session, payment: Payment, event: GatewayEvent) -> None:
    transaction = ledger.get_transaction(db, payment.transaction_id, for_update=True)
    if transaction.is_terminal:
        logger.info(
            "Transaction already terminal; webhook cascade skipped",
            extra={"transaction_id": transaction.id, "status": transaction.status.value},
        )
        return
    ledger.update_transaction_status(
        db,
        transaction.id,
        TransactionStatus.COMPLETED,
        {
            "webhook_source": event.provider.value,
            "webhook_event_id": event.event_id,
            "payment_id": payment.id,
        },
        actor=f"webhook:{event.provider.value.lower()}",
        commit=False,
    )


def process_webhook(
    db: Session,
    provider: GatewayProvider | str,
    raw_body: bytes,
    headers: Mapping[str, str],
    *,
    registry: GatewayRegistry | None = None,
) -> WebhookResult:
    """Verify and apply one gateway callback.

    Unknown providers and bad signatures raise before anything is read or
    written. Every later problem is returned as an ``error`` result so the
    caller can acknowledge the delivery and stop provider retries.
    """

    registry = registry if registry is not None else get_gateway_registry()
    adapter = registry.get(provider)

    secret = adapter.webhook_secret
    if not adapter.verify_signature(raw_body, headers, secret):
        logger.warning(
            "Webhook signature verification failed",
            extra={
                "provider": adapter.provider.value,
                "security_event": True,
                "secret_status": secret_fingerprint(secret),
            },
        )
        raise SignatureInvalid("Invalid webhook signature.", details={"provider": adapter.provider.value})

    try:
        event = adapter.parse_event(raw_body, headers)
    except MalformedWebhook as exc:
        return _error(adapter.provider, exc.code, exc.message)
    except (AttributeError, TypeError, KeyError, IndexError) as exc:
        # An authentic delivery must still be acknowledged, whatever its shape.
        logger.warning(
            "Webhook body has an unexpected shape",
            exc_info=exc,
            extra={"provider": adapter.provider.value},
        )
        return _error(adapter.provider, MalformedWebhook.code, "Webhook body has an unexpected shape.")

    if not event.event_id:
        return _error(adapter.provider, "MISSING_EVENT_ID", "Webhook carries no event identifier.")
    event_id = str(event.event_id)

    payment = _resolve_payment(db, adapter, event)
    if payment is None:
        db.rollback()
        return _error(
            adapter.provider,
            "PAYMENT_NOT_FOUND",
            "No payment matches the webhook.",
            event_id=event_id,
            payment_ref=event.payment_ref,
        )
    if payment.provider != adapter.provider:
        db.rollback()
        return _error(
            adapter.provider,
            "PROVIDER_MISMATCH",
            "Webhook provider does not own the referenced payment.",
            event_id=event_id,
            payment_id=payment.id,
        )

    if _already_processed(db, payment, event_id):
        db.rollback()
        logger.info(
            "Duplicate webhook ignored",
            extra={"provider": adapter.provider.value, "event_id": event_id, "payment_id": payment.id},
        )
        return WebhookResult(
            outcome=OUTCOME_DUPLICATE,
            provider=adapter.provider,
            event_id=event_id,
            payment_id=payment.id,
            status=payment.status,
        )

    new_status = adapter.map_event_to_status(event)
    sanitized = redact_sensitive(event.payload)
    previous_status = payment.status
    applied = _apply_status(payment, new_status)
    now = utcnow()

    history = list((payment.gateway_response_json or {}).get("webhooks") or [])
    history.append(
        {
            "event_id": event_id,
            "event_type": event.raw_type,
            "mapped_status": new_status.value,
            "applied": applied,
            "received_at": now.isoformat(),
        }
    )
    payment.gateway_response_json = {
        **(payment.gateway_response_json or {}),
        "webhook": sanitized,
        "webhooks": history[-WEBHOOK_HISTORY_LIMIT:],
    }
    payment.processed_webhook_ids = [*(payment.processed_webhook_ids or []), event_id]
    payment.webhook_attempts = (payment.webhook_attempts or 0) + 1
    payment.webhook_received = True
    payment.webhook_processed_at = now
    if event.gateway_transaction_id and not payment.gateway_transaction_id:
        payment.gateway_transaction_id = event.gateway_transaction_id
    if event.gateway_reference and not payment.gateway_reference:
        payment.gateway_reference = event.gateway_reference

    db.add(
        PaymentWebhookEvent(
            payment_id=payment.id,
            provider=adapter.provider,
            event_id=event_id,
            event_type=(event.raw_type or "")[:100] or None,
            mapped_status=new_status,
            applied=applied,
            received_at=now,
        )
    )
    if applied and payment.status in SUCCESSFUL_PAYMENT_STATUSES:
        _complete_transaction(db, payment, event)

    log_audit(
        db,
        actor=f"webhook:{adapter.provider.value.lower()}",
        action="PAYMENT_WEBHOOK_APPLIED" if applied else "PAYMENT_WEBHOOK_STALE",
        entity="Payment",
        entity_id=payment.id,
        data={
            "event_id": event_id,
            "event_type": event.raw_type,
            "from": previous_status,
            "to": payment.status,
        },
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(
            "Concurrent duplicate webhook ignored",
            extra={"provider": adapter.provider.value, "event_id": event_id, "payment_id": payment.id},
        )
        return WebhookResult(
            outcome=OUTCOME_DUPLICATE,
            provider=adapter.provider,
            event_id=event_id,
            payment_id=payment.id,
        )

    logger.info(
        "Webhook processed",
        extra={
            "provider": adapter.provider.value,
            "event_id": event_id,
            "event_type": event.raw_type,
            "payment_id": payment.id,
            "status": payment.status.value,
            "applied": applied,
            "gateway_transaction_id": mask_reference(payment.gateway_transaction_id),
        },
    )
    return WebhookResult(
        outcome=OUTCOME_PROCESSED if applied else OUTCOME_STALE,
        provider=adapter.provider,
        event_id=event_id,
        payment_id=payment.id,
        status=payment.status,
    )


__all__ = [
    "OUTCOME_DUPLICATE",
    "OUTCOME_ERROR",
    "OUTCOME_PROCESSED",
    "OUTCOME_STALE",
    "WebhookResult",
    "process_webhook",
]
