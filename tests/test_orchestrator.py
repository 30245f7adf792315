"""Payment orchestration against the manual providers and a scripted card gateway."""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from alivehome import db as db_module
from alivehome.models import (
    GatewayProvider,
    PaymentMethod,
    PaymentStatus,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from alivehome.schemas import PaymentCapture, PaymentInitiate, PaymentRefund, TransactionProcess
from alivehome.services import ledger
from alivehome.services import payments as payments_service
from alivehome.utils.errors import (
    GatewayRejected,
    GatewayUnavailable,
    InvalidTransition,
    PreconditionFailed,
    UnsupportedGateway,
    ValidationError,
)
from alivehome.utils.time import utcnow


def _initiate(db_session, registry, transaction, provider=GatewayProvider.STRIPE, **extra):
    payload = PaymentInitiate(
        transaction_id=transaction.id,
        provider=provider,
        payment_method=PaymentMethod.CASH if provider == GatewayProvider.CASH else PaymentMethod.CREDIT_CARD,
        **extra,
    )
    return payments_service.initiate_payment(db_session, payload, registry=registry)


def test_cash_payment_end_to_end(make_transaction, db_session, registry):
    transaction = make_transaction(amount="500.00")

    payment = _initiate(db_session, registry, transaction, provider=GatewayProvider.CASH)
    assert payment.status == PaymentStatus.INITIATED
    assert payment.amount == Decimal("500.00")

    processed = payments_service.process_payment(db_session, payment.id, registry=registry)
    assert processed.status == PaymentStatus.CAPTURED
    assert processed.captured_at is not None
    assert processed.gateway_transaction_id == f"CASH_{payment.id}"

    # A payment alone never completes its transaction.
    assert ledger.get_transaction(db_session, transaction.id).status == TransactionStatus.PENDING

    updated = payments_service.update_transaction_status(
        db_session, transaction.id, TransactionStatus.COMPLETED, {"payment_id": payment.id}
    )
    assert updated.status == TransactionStatus.COMPLETED


def test_initiate_with_unconfigured_provider_creates_nothing(make_transaction, db_session, registry):
    transaction = make_transaction()

    with pytest.raises(UnsupportedGateway):
        _initiate(db_session, registry, transaction, provider=GatewayProvider.PAYPAL)

    assert ledger.get_transaction(db_session, transaction.id).payments == []


def test_initiate_registers_intent_without_changing_status(make_transaction, db_session, registry, fake_gateway):
    transaction = make_transaction()

    payment = _initiate(db_session, registry, transaction)

    assert fake_gateway.calls["create_intent"] == 1
    assert payment.status == PaymentStatus.INITIATED
    assert payment.gateway_transaction_id == f"fake_intent_{payment.id}"
    assert payment.gateway_response_json["intent"]["client_secret"] == "[REDACTED]"


def test_initiate_swallows_gateway_failure(make_transaction, db_session, registry, fake_gateway):
    fake_gateway.intent_error = GatewayUnavailable("timed out", provider="STRIPE")
    transaction = make_transaction()

    payment = _initiate(db_session, registry, transaction)

    assert payment.status == PaymentStatus.INITIATED
    assert payment.gateway_response_json["intent_error"]["code"] == "GATEWAY_UNAVAILABLE"


def test_initiate_currency_must_match_transaction(make_transaction, db_session, registry):
    transaction = make_transaction()

    with pytest.raises(ValidationError):
        _initiate(db_session, registry, transaction, provider=GatewayProvider.CASH, currency="EUR")


def test_capture_on_initiated_payment_never_reaches_gateway(make_transaction, db_session, registry, fake_gateway):
    transaction = make_transaction()
    payment = _initiate(db_session, registry, transaction)

    with pytest.raises(PreconditionFailed):
        payments_service.capture_payment(db_session, payment.id, registry=registry)

    assert fake_gateway.calls["capture"] == 0


def test_authorized_payment_can_be_captured(make_transaction, db_session, registry, fake_gateway):
    fake_gateway.charge_status = PaymentStatus.AUTHORIZED
    transaction = make_transaction()
    payment = _initiate(db_session, registry, transaction)
    payment = payments_service.process_payment(db_session, payment.id, registry=registry)
    assert payment.status == PaymentStatus.AUTHORIZED

    with pytest.raises(ValidationError):
        payments_service.capture_payment(
            db_session, payment.id, PaymentCapture(amount=Decimal("5000.00")), registry=registry
        )

    captured = payments_service.capture_payment(db_session, payment.id, registry=registry)

    assert captured.status == PaymentStatus.CAPTURED
    assert fake_gateway.calls["capture"] == 1


def test_rejected_charge_marks_payment_failed(make_transaction, db_session, registry, fake_gateway):
    fake_gateway.charge_error = GatewayRejected(
        "Your card was declined.",
        provider="STRIPE",
        raw_response={"error": {"code": "card_declined", "card_number": "4000000000000002"}},
    )
    transaction = make_transaction()
    payment = _initiate(db_session, registry, transaction)

    with pytest.raises(GatewayRejected):
        payments_service.process_payment(db_session, payment.id, registry=registry)

    failed = ledger.get_payment(db_session, payment.id)
    assert failed.status == PaymentStatus.FAILED
    assert failed.failure_reason == "Your card was declined."
    assert failed.gateway_response_json["charge_error"]["response"]["error"]["card_number"] == "[REDACTED]"

    # FAILED is final; a retry needs a new payment.
    with pytest.raises(PreconditionFailed):
        payments_service.process_payment(db_session, payment.id, registry=registry)


def test_unavailable_gateway_leaves_payment_pending(make_transaction, db_session, registry, fake_gateway):
    fake_gateway.charge_error = GatewayUnavailable("HTTP 503", provider="STRIPE")
    transaction = make_transaction()
    payment = _initiate(db_session, registry, transaction)

    with pytest.raises(GatewayUnavailable) as excinfo:
        payments_service.process_payment(db_session, payment.id, registry=registry)

    assert excinfo.value.retryable is True
    assert ledger.get_payment(db_session, payment.id).status == PaymentStatus.PENDING

    fake_gateway.charge_error = None
    retried = payments_service.process_payment(db_session, payment.id, registry=registry)
    assert retried.status == PaymentStatus.CAPTURED
    assert fake_gateway.calls["charge"] == 2


def test_refund_is_limited_to_captured_amount(make_transaction, db_session, registry):
    transaction = make_transaction(amount="300.00")
    payment = _initiate(db_session, registry, transaction, provider=GatewayProvider.CASH)

    with pytest.raises(PreconditionFailed):
        payments_service.refund_payment(db_session, payment.id, registry=registry)

    payments_service.process_payment(db_session, payment.id, registry=registry)
    with pytest.raises(ValidationError):
        payments_service.refund_payment(
            db_session, payment.id, PaymentRefund(amount=Decimal("300.01")), registry=registry
        )

    refunded = payments_service.refund_payment(
        db_session, payment.id, PaymentRefund(amount=Decimal("100.00"), reason="deposit returned"), registry=registry
    )

    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refund_amount == Decimal("100.00")
    assert ledger.get_transaction(db_session, transaction.id).status == TransactionStatus.PENDING


def test_transaction_status_cannot_move_backwards(make_transaction, db_session):
    transaction = make_transaction()
    payments_service.update_transaction_status(db_session, transaction.id, TransactionStatus.PROCESSING)

    with pytest.raises(InvalidTransition):
        payments_service.update_transaction_status(db_session, transaction.id, TransactionStatus.PENDING)


def test_process_transaction_completes_on_capture(make_transaction, db_session, registry):
    transaction = make_transaction()

    processed = payments_service.process_transaction(
        db_session,
        transaction.id,
        TransactionProcess(provider="cash", payment_method="cash"),
        registry=registry,
    )

    assert processed.payment.status == PaymentStatus.CAPTURED
    assert processed.transaction.status == TransactionStatus.COMPLETED
    assert processed.transaction.metadata_json["payment_id"] == processed.payment.id
    assert processed.transaction.processed_at is not None


def test_process_transaction_leaves_transaction_processing_while_pending(
    make_transaction, db_session, registry, fake_gateway
):
    fake_gateway.charge_status = PaymentStatus.PENDING
    transaction = make_transaction()

    processed = payments_service.process_transaction(
        db_session,
        transaction.id,
        TransactionProcess(provider=GatewayProvider.STRIPE, payment_method=PaymentMethod.CREDIT_CARD),
        registry=registry,
    )

    assert processed.payment.status == PaymentStatus.PENDING
    assert processed.transaction.status == TransactionStatus.PROCESSING


def test_process_transaction_refuses_terminal_transaction(make_transaction, db_session, registry):
    transaction = make_transaction()
    ledger.update_transaction_status(db_session, transaction.id, TransactionStatus.CANCELLED)

    with pytest.raises(PreconditionFailed):
        payments_service.process_transaction(
            db_session,
            transaction.id,
            TransactionProcess(provider=GatewayProvider.CASH, payment_method=PaymentMethod.CASH),
            registry=registry,
        )


def test_subscription_payment_uses_plan_price(make_subscription, db_session, registry):
    subscription = make_subscription(price="79.00")

    processed = payments_service.process_subscription_payment(db_session, subscription.id, registry=registry)

    assert processed.transaction.transaction_type == TransactionType.SUBSCRIPTION_PAYMENT
    assert processed.transaction.amount == Decimal("79.00")
    assert processed.transaction.subscription_id == subscription.id
    assert processed.transaction.status == TransactionStatus.COMPLETED


def test_subscription_payment_refused_when_cancelled(make_subscription, db_session, registry):
    subscription = make_subscription(status=SubscriptionStatus.CANCELLED)

    with pytest.raises(PreconditionFailed):
        payments_service.process_subscription_payment(db_session, subscription.id, registry=registry)


def test_commission_payout_creates_single_child_transfer(make_transaction, db_session, registry):
    transaction = make_transaction(amount="1000000.00")
    payments_service.process_transaction(
        db_session,
        transaction.id,
        TransactionProcess(provider=GatewayProvider.CASH, payment_method=PaymentMethod.CASH),
        registry=registry,
    )
    ledger.calculate_commission(db_session, transaction.id, recipient_id=55)

    payout = payments_service.process_commission_payment(db_session, transaction.id, registry=registry)

    assert payout.transaction.transaction_type == TransactionType.COMMISSION_PAYMENT
    assert payout.transaction.parent_transaction_id == transaction.id
    assert payout.transaction.user_id == 55
    assert payout.transaction.amount == Decimal("50000.00")
    assert payout.payment.provider == GatewayProvider.BANK_TRANSFER
    assert payout.transaction.status == TransactionStatus.COMPLETED

    with pytest.raises(PreconditionFailed):
        payments_service.process_commission_payment(db_session, transaction.id, registry=registry)

    children = db_session.scalars(
        select(Transaction).where(Transaction.parent_transaction_id == transaction.id)
    ).all()
    assert len(children) == 1


def test_commission_payout_requires_completed_source(make_transaction, db_session, registry):
    transaction = make_transaction()
    ledger.calculate_commission(db_session, transaction.id, recipient_id=55)

    with pytest.raises(PreconditionFailed):
        payments_service.process_commission_payment(db_session, transaction.id, registry=registry)


def _captured_card_payment(db_session, registry, make_transaction):
    transaction = make_transaction(amount="400.00")
    payment = _initiate(db_session, registry, transaction)
    return payments_service.process_payment(db_session, payment.id, registry=registry)


def test_refund_sends_one_idempotency_key_per_payment(make_transaction, db_session, registry, fake_gateway):
    payment = _captured_card_payment(db_session, registry, make_transaction)

    refunded = payments_service.refund_payment(db_session, payment.id, registry=registry)

    assert refunded.status == PaymentStatus.REFUNDED
    assert fake_gateway.refund_contexts[0].idempotency_key == f"refund-{payment.id}"
    assert payments_service.REFUND_CLAIM_KEY not in refunded.gateway_response_json

    with pytest.raises(PreconditionFailed):
        payments_service.refund_payment(db_session, payment.id, registry=registry)
    assert fake_gateway.calls["refund"] == 1


def test_concurrent_refund_is_rejected_before_the_gateway(make_transaction, db_session, registry, fake_gateway):
    payment = _captured_card_payment(db_session, registry, make_transaction)
    rejected: list[PreconditionFailed] = []

    def _second_request(_payment):
        with db_module.open_session() as other:
            try:
                payments_service.refund_payment(other, payment.id, registry=registry)
            except PreconditionFailed as exc:
                rejected.append(exc)

    fake_gateway.on_refund = _second_request
    refunded = payments_service.refund_payment(db_session, payment.id, registry=registry)

    assert refunded.status == PaymentStatus.REFUNDED
    assert len(rejected) == 1
    assert "in progress" in rejected[0].message
    assert fake_gateway.calls["refund"] == 1


def test_refund_losing_a_status_race_keeps_the_gateway_answer(
    make_transaction, db_session, registry, fake_gateway
):
    payment = _captured_card_payment(db_session, registry, make_transaction)

    def _settled_elsewhere(_payment):
        with db_module.open_session() as other:
            row = ledger.get_payment(other, payment.id, for_update=True)
            ledger.set_payment_status(row, PaymentStatus.REFUNDED)
            other.commit()

    fake_gateway.on_refund = _settled_elsewhere
    with pytest.raises(PreconditionFailed):
        payments_service.refund_payment(
            db_session, payment.id, PaymentRefund(amount=Decimal("150.00")), registry=registry
        )

    stored = ledger.get_payment(db_session, payment.id)
    assert stored.gateway_response_json["refund_unapplied"] == {"refunded": "150.00"}
    assert payments_service.REFUND_CLAIM_KEY not in stored.gateway_response_json
    assert stored.refund_amount is None


def test_failed_refund_releases_its_claim(make_transaction, db_session, registry, fake_gateway):
    payment = _captured_card_payment(db_session, registry, make_transaction)

    def _timeout(_payment):
        raise GatewayUnavailable("timed out", provider="STRIPE")

    fake_gateway.on_refund = _timeout
    with pytest.raises(GatewayUnavailable):
        payments_service.refund_payment(db_session, payment.id, registry=registry)
    assert ledger.get_payment(db_session, payment.id).status == PaymentStatus.CAPTURED

    fake_gateway.on_refund = None
    refunded = payments_service.refund_payment(db_session, payment.id, registry=registry)

    assert refunded.status == PaymentStatus.REFUNDED
    assert fake_gateway.calls["refund"] == 2
    assert {context.idempotency_key for context in fake_gateway.refund_contexts} == {f"refund-{payment.id}"}


def test_expired_refund_claim_does_not_block(make_transaction, db_session, registry, fake_gateway):
    payment = _captured_card_payment(db_session, registry, make_transaction)
    stale = utcnow() - payments_service.REFUND_CLAIM_TTL - timedelta(minutes=1)
    payment.gateway_response_json = {
        **payment.gateway_response_json,
        payments_service.REFUND_CLAIM_KEY: {"key": f"refund-{payment.id}", "claimed_at": stale.isoformat()},
    }
    db_session.commit()

    refunded = payments_service.refund_payment(db_session, payment.id, registry=registry)

    assert refunded.status == PaymentStatus.REFUNDED
    assert fake_gateway.calls["refund"] == 1
