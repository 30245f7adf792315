"""Transaction ledger endpoints."""
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from alivehome.db import get_db
from alivehome.models import TransactionStatus, TransactionType
from alivehome.schemas import (
    CommissionRead,
    CommissionRequest,
    PaymentRead,
    TransactionCreate,
    TransactionFilters,
    TransactionProcess,
    TransactionProcessResult,
    TransactionRead,
    TransactionStatusUpdate,
)
from alivehome.services import ledger, reports
from alivehome.services import payments as payments_service
from alivehome.services.gateway_registry import GatewayRegistry, get_gateway_registry

router = APIRouter(prefix="/transactions", tags=["transactions"])


def _process_result(processed: payments_service.ProcessedTransaction) -> TransactionProcessResult:
    return TransactionProcessResult(
        transaction=TransactionRead.model_validate(processed.transaction),
        payment=PaymentRead.model_validate(processed.payment),
    )


@router.post("", response_model=TransactionRead, status_code=status.HTTP_201_CREATED)
def create_transaction(payload: TransactionCreate, db: Session = Depends(get_db)):
    return ledger.create_transaction(db, payload)


@router.get("", response_model=list[TransactionRead])
def list_transactions(
    user_id: int | None = None,
    transaction_type: TransactionType | None = None,
    transaction_status: TransactionStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        user_id=user_id,
        transaction_type=transaction_type,
        status=transaction_status,
        limit=limit,
        offset=offset,
    )
    return ledger.list_transactions(db, filters)


@router.get("/history", response_model=list[TransactionRead])
def transaction_history(
    user_id: int | None = None,
    transaction_type: TransactionType | None = None,
    transaction_status: TransactionStatus | None = Query(default=None, alias="status"),
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(default=reports.HISTORY_DEFAULT_LIMIT, ge=1, le=reports.HISTORY_MAX_LIMIT),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return reports.transaction_history(
        db,
        user_id=user_id,
        transaction_type=transaction_type,
        status=transaction_status,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )


@router.get("/{transaction_id}", response_model=TransactionRead)
def read_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return ledger.get_transaction(db, transaction_id)


@router.post("/{transaction_id}/status", response_model=TransactionRead)
def update_transaction_status(
    transaction_id: int,
    payload: TransactionStatusUpdate,
    db: Session = Depends(get_db),
):
    return payments_service.update_transaction_status(db, transaction_id, payload.status, payload.metadata)


@router.post("/{transaction_id}/process", response_model=TransactionProcessResult)
def process_transaction(
    transaction_id: int,
    payload: TransactionProcess,
    db: Session = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
):
    processed = payments_service.process_transaction(db, transaction_id, payload, registry=registry)
    return _process_result(processed)


@router.post("/{transaction_id}/commission", response_model=CommissionRead)
def calculate_commission(
    transaction_id: int,
    payload: CommissionRequest | None = None,
    db: Session = Depends(get_db),
):
    payload = payload or CommissionRequest()
    result = ledger.calculate_commission(
        db, transaction_id, rate=payload.rate, recipient_id=payload.recipient_id
    )
    return CommissionRead(
        transaction_id=result.transaction_id,
        amount=result.amount,
        rate=result.rate,
        recipient_id=result.recipient_id,
    )


@router.post("/{transaction_id}/commission/payout", response_model=TransactionProcessResult)
def pay_out_commission(
    transaction_id: int,
    db: Session = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
):
    processed = payments_service.process_commission_payment(db, transaction_id, registry=registry)
    return _process_result(processed)
