"""Payment lifecycle and reporting endpoints."""
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from alivehome.db import get_db
from alivehome.models import GatewayProvider, PaymentStatus
from alivehome.schemas import (
    PaymentCapture,
    PaymentInitiate,
    PaymentProcess,
    PaymentRead,
    PaymentRefund,
    PaymentReport,
    PaymentReportRequest,
    PaymentStatRow,
)
from alivehome.services import ledger, reports
from alivehome.services import payments as payments_service
from alivehome.services.gateway_registry import GatewayRegistry, get_gateway_registry

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/initiate", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
def initiate_payment(
    payload: PaymentInitiate,
    db: Session = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
):
    """Create a payment for a transaction and register it with its gateway."""

    return payments_service.initiate_payment(db, payload, registry=registry)


@router.get("/stats", response_model=list[PaymentStatRow])
def payment_stats(
    provider: GatewayProvider | None = None,
    payment_status: PaymentStatus | None = Query(default=None, alias="status"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    db: Session = Depends(get_db),
):
    return reports.payment_stats(
        db, provider=provider, status=payment_status, start_date=start_date, end_date=end_date
    )


@router.post("/reports", response_model=PaymentReport)
def payment_report(payload: PaymentReportRequest, db: Session = Depends(get_db)):
    return reports.generate_payment_report(db, payload)


@router.get("/{payment_id}", response_model=PaymentRead)
def read_payment(payment_id: int, db: Session = Depends(get_db)):
    return ledger.get_payment(db, payment_id)


@router.post("/{payment_id}/process", response_model=PaymentRead)
def process_payment(
    payment_id: int,
    payload: PaymentProcess | None = None,
    db: Session = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
):
    return payments_service.process_payment(db, payment_id, payload, registry=registry)


@router.post("/{payment_id}/capture", response_model=PaymentRead)
def capture_payment(
    payment_id: int,
    payload: PaymentCapture | None = None,
    db: Session = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
):
    return payments_service.capture_payment(db, payment_id, payload, registry=registry)


@router.post("/{payment_id}/refund", response_model=PaymentRead)
def refund_payment(
    payment_id: int,
    payload: PaymentRefund | None = None,
    db: Session = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
):
    return payments_service.refund_payment(db, payment_id, payload, registry=registry)
