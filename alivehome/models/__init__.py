"""ORM models package."""
from .audit import AuditLog
from .base import Base
from .payment import (
    FINAL_PAYMENT_STATUSES,
    MANUAL_PROVIDERS,
    PAYMENT_TRANSITIONS,
    STATUS_TIMESTAMP_FIELDS,
    SUCCESSFUL_PAYMENT_STATUSES,
    GatewayProvider,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from .payment_webhook import PaymentWebhookEvent
from .scheduler_lock import SchedulerLock
from .subscription import (
    BILLING_CYCLE_MONTHS,
    BillingCycle,
    SubscriptionPlan,
    SubscriptionStatus,
    UserSubscription,
)
from .transaction import (
    TERMINAL_TRANSACTION_STATUSES,
    TRANSACTION_STATUS_RANK,
    Transaction,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "AuditLog",
    "Base",
    "BILLING_CYCLE_MONTHS",
    "BillingCycle",
    "FINAL_PAYMENT_STATUSES",
    "GatewayProvider",
    "MANUAL_PROVIDERS",
    "PAYMENT_TRANSITIONS",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "PaymentWebhookEvent",
    "SchedulerLock",
    "STATUS_TIMESTAMP_FIELDS",
    "SUCCESSFUL_PAYMENT_STATUSES",
    "SubscriptionPlan",
    "SubscriptionStatus",
    "TERMINAL_TRANSACTION_STATUSES",
    "TRANSACTION_STATUS_RANK",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "UserSubscription",
]
