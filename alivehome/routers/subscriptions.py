"""Subscription charging endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from alivehome.db import get_db
from alivehome.schemas import (
    BillingRunRead,
    PaymentRead,
    SubscriptionCharge,
    TransactionProcessResult,
    TransactionRead,
)
from alivehome.services import billing
from alivehome.services import payments as payments_service
from alivehome.services.gateway_registry import GatewayRegistry, get_gateway_registry

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("/billing/run", response_model=BillingRunRead)
def run_billing(registry: GatewayRegistry = Depends(get_gateway_registry)):
    """Bill every due subscription now, outside the scheduler interval."""

    summary = billing.run_billing_cycle_once(registry=registry)
    return BillingRunRead(**summary.as_dict())


@router.post("/{subscription_id}/charge", response_model=TransactionProcessResult)
def charge_subscription(
    subscription_id: int,
    payload: SubscriptionCharge | None = None,
    db: Session = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
):
    processed = payments_service.process_subscription_payment(db, subscription_id, payload, registry=registry)
    return TransactionProcessResult(
        transaction=TransactionRead.model_validate(processed.transaction),
        payment=PaymentRead.model_validate(processed.payment),
    )
