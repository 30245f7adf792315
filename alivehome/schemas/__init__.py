"""Schema package exports."""
from .payment import (
    GatewayInput,
    PaymentCapture,
    PaymentInitiate,
    PaymentProcess,
    PaymentRead,
    PaymentRefund,
)
from .report import GatewayBreakdown, PaymentReport, PaymentReportRequest, PaymentReportSummary, PaymentStatRow
from .subscription import BillingOutcomeRead, BillingRunRead, SubscriptionCharge, SubscriptionRead
from .transaction import (
    CommissionRead,
    CommissionRequest,
    TransactionCreate,
    TransactionFilters,
    TransactionProcess,
    TransactionProcessResult,
    TransactionRead,
    TransactionStatusUpdate,
)

__all__ = [
    "BillingOutcomeRead",
    "BillingRunRead",
    "CommissionRead",
    "CommissionRequest",
    "GatewayBreakdown",
    "GatewayInput",
    "PaymentCapture",
    "PaymentInitiate",
    "PaymentProcess",
    "PaymentRead",
    "PaymentRefund",
    "PaymentReport",
    "PaymentReportRequest",
    "PaymentReportSummary",
    "PaymentStatRow",
    "SubscriptionCharge",
    "SubscriptionRead",
    "TransactionCreate",
    "TransactionFilters",
    "TransactionProcess",
    "TransactionProcessResult",
    "TransactionRead",
    "TransactionStatusUpdate",
]
