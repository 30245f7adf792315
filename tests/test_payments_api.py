"""HTTP surface of the ledger and orchestrator."""
import pytest

from alivehome.models import SubscriptionStatus
from alivehome.utils.errors import GatewayRejected


async def _create_transaction(client, amount="1000000.00", **extra):
    response = await client.post(
        "/transactions",
        json={"user_id": 1, "amount": amount, "transaction_type": "property_purchase", **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.anyio
async def test_create_and_read_transaction(client):
    created = await _create_transaction(client, metadata={"listing": "L-1"})

    assert created["status"] == "PENDING"
    assert created["currency"] == "USD"
    assert created["metadata"] == {"listing": "L-1"}

    response = await client.get(f"/transactions/{created['id']}")
    assert response.status_code == 200
    assert response.json()["reference_number"] == created["reference_number"]


@pytest.mark.anyio
async def test_invalid_amount_is_a_validation_error(client):
    response = await client.post(
        "/transactions", json={"user_id": 1, "amount": "-1", "transaction_type": "DEPOSIT"}
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.anyio
async def test_unknown_transaction_is_404(client):
    response = await client.get("/transactions/987654")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.anyio
async def test_cash_payment_flow_over_http(client):
    transaction = await _create_transaction(client, amount="250.00")

    initiated = await client.post(
        "/payments/initiate",
        json={"transaction_id": transaction["id"], "provider": "cash", "payment_method": "cash"},
    )
    assert initiated.status_code == 201
    payment = initiated.json()
    assert payment["status"] == "INITIATED"

    processed = await client.post(f"/payments/{payment['id']}/process")
    assert processed.status_code == 200
    assert processed.json()["status"] == "CAPTURED"

    capture = await client.post(f"/payments/{payment['id']}/capture")
    assert capture.status_code == 409
    assert capture.json()["error"]["code"] == "PRECONDITION_FAILED"

    refund = await client.post(f"/payments/{payment['id']}/refund", json={"amount": "50.00"})
    assert refund.status_code == 200
    assert refund.json()["status"] == "REFUNDED"
    assert refund.json()["refund_amount"] == "50.00"


@pytest.mark.anyio
async def test_unconfigured_gateway_is_rejected(client):
    transaction = await _create_transaction(client)

    response = await client.post(
        "/payments/initiate",
        json={"transaction_id": transaction["id"], "provider": "PAYPAL", "payment_method": "DIGITAL_WALLET"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "UNSUPPORTED_GATEWAY"


@pytest.mark.anyio
async def test_declined_card_maps_to_402(client, fake_gateway):
    fake_gateway.charge_error = GatewayRejected("Your card was declined.", provider="STRIPE")
    transaction = await _create_transaction(client)

    response = await client.post(
        f"/transactions/{transaction['id']}/process",
        json={"provider": "stripe", "payment_method": "credit_card", "payment_token": "pm_card_visa"},
    )

    assert response.status_code == 402
    body = response.json()["error"]
    assert body["code"] == "GATEWAY_REJECTED"
    assert body["details"]["provider"] == "STRIPE"


@pytest.mark.anyio
async def test_process_commission_and_payout(client):
    transaction = await _create_transaction(client)

    processed = await client.post(
        f"/transactions/{transaction['id']}/process", json={"provider": "CASH", "payment_method": "CASH"}
    )
    assert processed.status_code == 200
    assert processed.json()["transaction"]["status"] == "COMPLETED"

    commission = await client.post(f"/transactions/{transaction['id']}/commission", json={"recipient_id": 77})
    assert commission.status_code == 200
    assert commission.json()["amount"] == "50000.00"

    payout = await client.post(f"/transactions/{transaction['id']}/commission/payout")
    assert payout.status_code == 200
    child = payout.json()["transaction"]
    assert child["transaction_type"] == "COMMISSION_PAYMENT"
    assert child["parent_transaction_id"] == transaction["id"]
    assert payout.json()["payment"]["provider"] == "BANK_TRANSFER"


@pytest.mark.anyio
async def test_status_update_cannot_leave_terminal_state(client):
    transaction = await _create_transaction(client)

    cancelled = await client.post(f"/transactions/{transaction['id']}/status", json={"status": "cancelled"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"

    reopened = await client.post(f"/transactions/{transaction['id']}/status", json={"status": "COMPLETED"})
    assert reopened.status_code == 409
    assert reopened.json()["error"]["code"] == "INVALID_TRANSITION"


@pytest.mark.anyio
async def test_list_transactions_filters_and_limits(client):
    for amount in ("10.00", "20.00", "30.00"):
        await _create_transaction(client, amount=amount)
    await client.post("/transactions", json={"user_id": 9, "amount": "5.00", "transaction_type": "DEPOSIT"})

    response = await client.get("/transactions", params={"user_id": 1, "limit": 2})
    assert response.status_code == 200
    assert len(response.json()) == 2

    deposits = await client.get("/transactions", params={"transaction_type": "DEPOSIT"})
    assert [row["user_id"] for row in deposits.json()] == [9]

    too_many = await client.get("/transactions/history", params={"limit": 5000})
    assert too_many.status_code == 400


@pytest.mark.anyio
async def test_charge_subscription_and_run_billing(client, make_subscription):
    subscription = make_subscription(price="29.00")

    charged = await client.post(f"/subscriptions/{subscription.id}/charge")
    assert charged.status_code == 200
    assert charged.json()["transaction"]["amount"] == "29.00"

    run = await client.post("/subscriptions/billing/run")
    assert run.status_code == 200
    summary = run.json()
    assert summary["due"] == 1
    assert summary["succeeded"] == 1


@pytest.mark.anyio
async def test_charge_expired_subscription_is_refused(client, make_subscription):
    subscription = make_subscription(status=SubscriptionStatus.EXPIRED)

    response = await client.post(f"/subscriptions/{subscription.id}/charge")

    assert response.status_code == 409


@pytest.mark.anyio
async def test_stats_and_report_endpoints(client):
    transaction = await _create_transaction(client, amount="80.00")
    await client.post(
        f"/transactions/{transaction['id']}/process", json={"provider": "CASH", "payment_method": "CASH"}
    )

    stats = await client.get("/payments/stats", params={"status": "CAPTURED"})
    assert stats.status_code == 200
    assert stats.json()[0]["total_amount"] == "80.00"

    report = await client.post(
        "/payments/reports",
        json={"start_date": "2000-01-01T00:00:00Z", "end_date": "2100-01-01T00:00:00Z", "include_details": True},
    )
    assert report.status_code == 200
    assert report.json()["summary"]["successful_payments"] == 1
    assert len(report.json()["payments"]) == 1
