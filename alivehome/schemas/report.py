"""Read-side reporting schemas."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from alivehome.models.payment import GatewayProvider, PaymentStatus


class PaymentStatRow(BaseModel):
    provider: GatewayProvider
    status: PaymentStatus
    count: int
    total_amount: Decimal
    average_amount: Decimal


class PaymentReportRequest(BaseModel):
    start_date: datetime
    end_date: datetime
    provider: GatewayProvider | None = None
    include_details: bool = False


class GatewayBreakdown(BaseModel):
    provider: GatewayProvider
    count: int
    total_amount: Decimal
    successful: int
    success_rate: Decimal


class PaymentReportSummary(BaseModel):
    total_payments: int
    total_amount: Decimal
    successful_payments: int
    failed_payments: int
    successful_amount: Decimal
    refunded_amount: Decimal


class PaymentReport(BaseModel):
    start_date: datetime
    end_date: datetime
    generated_at: datetime
    summary: PaymentReportSummary
    gateways: list[GatewayBreakdown]
    payments: list[dict] | None = None
