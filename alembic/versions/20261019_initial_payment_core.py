"""initial payment core schema

Revision ID: 20261019_initial_payment_core
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261019_initial_payment_core"
down_revision = None
branch_labels = None
depends_on = None

GATEWAY_PROVIDERS = ("STRIPE", "PAYPAL", "RAZORPAY", "FLUTTERWAVE", "PAYSTACK", "CASH", "BANK_TRANSFER")
PAYMENT_METHODS = ("CREDIT_CARD", "DEBIT_CARD", "BANK_TRANSFER", "DIGITAL_WALLET", "CASH", "CHECK")
PAYMENT_STATUSES = (
    "INITIATED",
    "PENDING",
    "AUTHORIZED",
    "CAPTURED",
    "SETTLED",
    "FAILED",
    "CANCELLED",
    "REFUNDED",
)
TRANSACTION_TYPES = (
    "PROPERTY_PURCHASE",
    "SUBSCRIPTION_PAYMENT",
    "COMMISSION_PAYMENT",
    "REFUND",
    "DEPOSIT",
    "WITHDRAWAL",
)
TRANSACTION_STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED")

ENUMS = {
    "billingcycle": ("MONTHLY", "QUARTERLY", "YEARLY"),
    "subscriptionstatus": ("ACTIVE", "TRIAL", "PAST_DUE", "CANCELLED", "EXPIRED"),
    "gatewayprovider": GATEWAY_PROVIDERS,
    "paymentmethod": PAYMENT_METHODS,
    "paymentstatus": PAYMENT_STATUSES,
    "transactiontype": TRANSACTION_TYPES,
    "transactionstatus": TRANSACTION_STATUSES,
}


def _enum(name: str) -> sa.Enum:
    # Postgres types are created once up front and shared between tables.
    values = ENUMS[name]
    return sa.Enum(*values, name=name).with_variant(
        postgresql.ENUM(*values, name=name, create_type=False), "postgresql"
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, values in ENUMS.items():
            postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "subscription_plans",
        *_timestamps(),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("price", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "billing_cycle",
            _enum("billingcycle"),
            nullable=False,
        ),
        sa.Column("billing_cycle_months", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("features_json", sa.JSON(), nullable=False),
        sa.CheckConstraint("price >= 0", name="ck_subscription_plan_price"),
    )

    op.create_table(
        "user_subscriptions",
        *_timestamps(),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column(
            "status",
            _enum("subscriptionstatus"),
            nullable=False,
        ),
        sa.Column("provider", _enum("gatewayprovider"), nullable=False),
        sa.Column("payment_method", _enum("paymentmethod"), nullable=False),
        sa.Column("payment_token", sa.String(length=255), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_payment_count", sa.Integer(), nullable=False),
        sa.Column("total_paid", sa.Numeric(18, 2), nullable=False),
        sa.Column("last_payment_amount", sa.Numeric(18, 2), nullable=True),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])
    op.create_index("ix_user_subscriptions_due", "user_subscriptions", ["status", "next_billing_date"])

    op.create_table(
        "transactions",
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("reference_number", sa.String(length=64), nullable=False, unique=True),
        sa.Column("transaction_type", _enum("transactiontype"), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", _enum("transactionstatus"), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("property_id", sa.Integer(), nullable=True),
        sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("user_subscriptions.id"), nullable=True),
        sa.Column("parent_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=True),
        sa.Column("commission_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("commission_rate", sa.Numeric(6, 4), nullable=True),
        sa.Column("commission_recipient_id", sa.Integer(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_transaction_positive_amount"),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_property_id", "transactions", ["property_id"])
    op.create_index("ix_transactions_subscription_id", "transactions", ["subscription_id"])
    op.create_index("ix_transactions_parent_transaction_id", "transactions", ["parent_transaction_id"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])
    op.create_index("ix_transactions_status", "transactions", ["status"])
    op.create_index("ix_transactions_user_status", "transactions", ["user_id", "status"])

    op.create_table(
        "payments",
        *_timestamps(),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_method", _enum("paymentmethod"), nullable=False),
        sa.Column("provider", _enum("gatewayprovider"), nullable=False),
        sa.Column("status", _enum("paymentstatus"), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(length=128), nullable=True),
        sa.Column("gateway_reference", sa.String(length=255), nullable=True),
        sa.Column("gateway_response_json", sa.JSON(), nullable=False),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("refund_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("webhook_received", sa.Boolean(), nullable=False),
        sa.Column("webhook_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_attempts", sa.Integer(), nullable=False),
        sa.Column("processed_webhook_ids", sa.JSON(), nullable=False),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
    )
    op.create_index("ix_payments_transaction_id", "payments", ["transaction_id"])
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_gateway_transaction_id", "payments", ["gateway_transaction_id"])
    op.create_index("ix_payments_created_at", "payments", ["created_at"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_provider_status", "payments", ["provider", "status"])

    op.create_table(
        "payment_webhook_events",
        *_timestamps(),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("provider", _enum("gatewayprovider"), nullable=False),
        sa.Column("event_id", sa.String(length=191), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=True),
        sa.Column("mapped_status", _enum("paymentstatus"), nullable=False),
        sa.Column("applied", sa.Boolean(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("payment_id", "event_id", name="uq_payment_webhook_events_payment_event"),
    )
    op.create_index("ix_payment_webhook_events_payment_id", "payment_webhook_events", ["payment_id"])
    op.create_index("ix_payment_webhook_events_received", "payment_webhook_events", ["received_at"])

    op.create_table(
        "audit_logs",
        *_timestamps(),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "scheduler_locks",
        *_timestamps(),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_payment_webhook_events_received", table_name="payment_webhook_events")
    op.drop_index("ix_payment_webhook_events_payment_id", table_name="payment_webhook_events")
    op.drop_table("payment_webhook_events")
    for index in (
        "ix_payments_provider_status",
        "ix_payments_status",
        "ix_payments_created_at",
        "ix_payments_gateway_transaction_id",
        "ix_payments_user_id",
        "ix_payments_transaction_id",
    ):
        op.drop_index(index, table_name="payments")
    op.drop_table("payments")
    for index in (
        "ix_transactions_user_status",
        "ix_transactions_status",
        "ix_transactions_created_at",
        "ix_transactions_parent_transaction_id",
        "ix_transactions_subscription_id",
        "ix_transactions_property_id",
        "ix_transactions_user_id",
    ):
        op.drop_index(index, table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_user_subscriptions_due", table_name="user_subscriptions")
    op.drop_index("ix_user_subscriptions_user_id", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plans")
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in ENUMS:
            postgresql.ENUM(name=name).drop(bind, checkfirst=True)
