"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

import pytest
from alembic import command
from alembic.config import Config
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete
from sqlalchemy.orm import Session

# --- Default environment for the test run
os.environ.setdefault("DATABASE_URL", "sqlite:///./alivehome_test.db")
os.environ.setdefault("ALIVEHOME_ENV", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("PAYMENT_CURRENCY", "USD")

from alivehome import db  # noqa: E402
from alivehome.main import app  # noqa: E402
from alivehome.models import (  # noqa: E402
    BillingCycle,
    GatewayProvider,
    PaymentMethod,
    PaymentStatus,
    SubscriptionPlan,
    SubscriptionStatus,
    Transaction,
    TransactionType,
    UserSubscription,
)
from alivehome.schemas import TransactionCreate  # noqa: E402
from alivehome.services import ledger  # noqa: E402
from alivehome.services.gateway_base import (  # noqa: E402
    ChargeContext,
    GatewayAdapter,
    GatewayEvent,
    GatewayResult,
)
from alivehome.services.gateway_registry import GatewayRegistry, get_gateway_registry  # noqa: E402
from alivehome.services.psp_manual import ManualAdapter  # noqa: E402
from alivehome.services.psp_paystack import PaystackAdapter  # noqa: E402
from alivehome.services.psp_razorpay import RazorpayAdapter  # noqa: E402
from alivehome.utils.time import utcnow  # noqa: E402

DB_PATH = Path("./alivehome_test.db")
PAYSTACK_SECRET = "sk_test_paystack"
RAZORPAY_WEBHOOK_SECRET = "rzp-webhook-secret"

def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- Reset the file DB at the start of the session
if DB_PATH.exists():
    DB_PATH.unlink()

# --- Build the schema through Alembic only
_run_migrations()
db.init_engine()


class FakeGateway(GatewayAdapter):
    """Scriptable card gateway that counts every call made to it."""

    def __init__(self, provider: GatewayProvider = GatewayProvider.STRIPE) -> None:
        self.provider = provider
        self.calls: dict[str, int] = {"create_intent": 0, "charge": 0, "capture": 0, "refund": 0}
        self.intent_status = PaymentStatus.PENDING
        self.charge_status = PaymentStatus.CAPTURED
        self.intent_error: Exception | None = None
        self.charge_error: Exception | None = None
        self.raw_response: dict = {}
        self.refund_contexts: list[ChargeContext] = []
        self.on_refund: Callable[[object], None] | None = None

    def create_intent(self, payment, context: ChargeContext) -> GatewayResult:
        self.calls["create_intent"] += 1
        if self.intent_error is not None:
            raise self.intent_error
        return GatewayResult(
            status=self.intent_status,
            gateway_transaction_id=f"fake_intent_{payment.id}",
            raw_response={"id": f"fake_intent_{payment.id}", "client_secret": "cs_live_secret"},
        )

    def charge(self, payment, context: ChargeContext) -> GatewayResult:
        self.calls["charge"] += 1
        if self.charge_error is not None:
            raise self.charge_error
        return GatewayResult(
            status=self.charge_status,
            gateway_transaction_id=payment.gateway_transaction_id or f"fake_charge_{payment.id}",
            raw_response={"status": self.charge_status.value, **self.raw_response},
        )

    def capture(self, payment, context: ChargeContext) -> GatewayResult:
        self.calls["capture"] += 1
        return GatewayResult(
            status=PaymentStatus.CAPTURED,
            gateway_transaction_id=payment.gateway_transaction_id,
            raw_response={"captured": True},
        )

    def refund(self, payment, context: ChargeContext) -> GatewayResult:
        self.calls["refund"] += 1
        self.refund_contexts.append(context)
        if self.on_refund is not None:
            self.on_refund(payment)
        return GatewayResult(
            status=PaymentStatus.REFUNDED,
            gateway_transaction_id=payment.gateway_transaction_id,
            raw_response={"refunded": str(context.amount)},
        )

    def verify_signature(self, raw_body, headers, secret) -> bool:
        return False

    def parse_event(self, raw_body, headers) -> GatewayEvent:  # pragma: no cover - never verified
        raise NotImplementedError


@pytest.fixture(autouse=True)
def clean_tables() -> Iterator[None]:
    yield
    with db.get_engine().begin() as connection:
        for table in reversed(db.Base.metadata.sorted_tables):
            connection.execute(delete(table))


@pytest.fixture
def db_session() -> Iterator[Session]:
    with db.open_session() as session:
        yield session


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def registry(fake_gateway: FakeGateway) -> GatewayRegistry:
    return GatewayRegistry(
        [
            ManualAdapter(GatewayProvider.CASH),
            ManualAdapter(GatewayProvider.BANK_TRANSFER),
            fake_gateway,
            PaystackAdapter(secret_key=PAYSTACK_SECRET),
            RazorpayAdapter(key_id="rzp_key", key_secret="rzp_secret", webhook_secret=RAZORPAY_WEBHOOK_SECRET),
        ]
    )


@pytest.fixture(autouse=True)
def override_registry(registry: GatewayRegistry) -> Iterator[None]:
    app.dependency_overrides[get_gateway_registry] = lambda: registry
    yield
    app.dependency_overrides.pop(get_gateway_registry, None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_transaction(db_session: Session) -> Callable[..., Transaction]:
    def _factory(
        *,
        amount: str = "1000.00",
        transaction_type: TransactionType = TransactionType.PROPERTY_PURCHASE,
        user_id: int = 1,
        currency: str | None = None,
        parent_transaction_id: int | None = None,
    ) -> Transaction:
        return ledger.create_transaction(
            db_session,
            TransactionCreate(
                user_id=user_id,
                amount=Decimal(amount),
                currency=currency,
                transaction_type=transaction_type,
                parent_transaction_id=parent_transaction_id,
                description=f"test-{uuid4().hex[:8]}",
            ),
        )

    return _factory


@pytest.fixture
def make_subscription(db_session: Session) -> Callable[..., UserSubscription]:
    """Factory creating a plan and a subscription billed through ``provider``."""

    def _factory(
        *,
        price: str = "49.00",
        provider: GatewayProvider = GatewayProvider.CASH,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        due_in: timedelta = timedelta(hours=-1),
        auto_renew: bool = True,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    ) -> UserSubscription:
        now = utcnow()
        plan = SubscriptionPlan(
            name=f"plan-{uuid4().hex[:8]}",
            price=Decimal(price),
            currency="USD",
            billing_cycle=billing_cycle,
        )
        db_session.add(plan)
        db_session.flush()
        subscription = UserSubscription(
            user_id=7,
            plan_id=plan.id,
            status=status,
            provider=provider,
            payment_method=payment_method,
            payment_token="pm_card_visa",
            auto_renew=auto_renew,
            start_date=now - timedelta(days=30),
            next_billing_date=now + due_in,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _factory
