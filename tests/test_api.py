"""
End-to-end tests through the HTTP API.
"""

from decimal import Decimal
from urllib.parse import urlsplit

import pytest

from app.core.exceptions import GatewayError, TransientStorageError
from app.models import GatewayFlow, OrderStatus, RetryTaskStatus
from helpers import load_order

BASE = "/api/v1/payments/telebirr"


async def _create(api, order, flow="c2b", amount="100.50", subject="Lunch"):
    return await api.post(
        f"{BASE}/{flow}/create",
        json={"order_id": order.id, "amount": amount, "subject": subject},
    )


# =============================================================================
# HAPPY PATH
# =============================================================================

@pytest.mark.parametrize("flow", ["c2b", "b2b"])
async def test_payment_lifecycle(flow, api, order, ledger, make_callback, session_factory):
    response = await _create(api, order, flow)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "pending"
    assert data["checkout_url"]
    correlation_id = data["correlation_id"]

    gateway_order = await ledger.get(correlation_id)
    notify = await api.post(f"{BASE}/{flow}/notify", data=make_callback(gateway_order))

    assert notify.status_code == 200
    assert notify.text == "success"

    status = (await api.get(f"{BASE}/status/{correlation_id}")).json()
    assert status["status"] == "completed"
    assert status["flow"] == flow
    # an H5 trade_no from creation is kept; B2B learns it from the callback
    expected_trade_no = gateway_order.trade_no or "TB2026000001"
    assert status["trade_no"] == expected_trade_no
    assert Decimal(status["amount"]) == Decimal("100.50")
    assert (await load_order(session_factory, order.id)).status == OrderStatus.PAID


async def test_order_payments_listing(api, order):
    await _create(api, order, "c2b")
    await _create(api, order, "b2b", amount="20")

    response = await api.get(f"{BASE}/orders/{order.id}")

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 2
    assert {p["flow"] for p in data["payments"]} == {"b2b", "c2b"}


async def test_refund_flow(api, order, ledger, make_callback):
    correlation_id = (await _create(api, order, "c2b")).json()["correlation_id"]
    await api.post(f"{BASE}/c2b/notify", data=make_callback(await ledger.get(correlation_id)))

    refund = {"correlation_id": correlation_id, "refund_amount": "40.00", "refund_reason": "Late"}
    response = await api.post(f"{BASE}/refund", json=refund)

    assert response.status_code == 200
    assert response.json()["status"] == "refunded"
    assert Decimal(response.json()["refund_amount"]) == Decimal("40.00")

    again = await api.post(f"{BASE}/refund", json=refund)
    assert again.status_code == 409
    assert again.json()["error_category"] == "InvalidTransitionError"


# =============================================================================
# REJECTIONS
# =============================================================================

async def test_corrupted_signature_rejected(api, order, ledger, make_callback, session_factory):
    correlation_id = (await _create(api, order, "c2b")).json()["correlation_id"]
    payload = make_callback(await ledger.get(correlation_id))
    payload["sign"] = ("A" if payload["sign"][0] != "A" else "B") + payload["sign"][1:]

    response = await api.post(f"{BASE}/c2b/notify", data=payload)

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error_category"] == "AuthenticationError"

    status = (await api.get(f"{BASE}/status/{correlation_id}")).json()
    assert status["status"] == "pending"
    assert (await load_order(session_factory, order.id)).status == OrderStatus.PENDING


async def test_create_for_unknown_order(api):
    response = await api.post(
        f"{BASE}/c2b/create",
        json={"order_id": 9999, "amount": "10", "subject": "Lunch"},
    )
    assert response.status_code == 404
    assert response.json()["error_category"] == "NotFoundError"


@pytest.mark.parametrize("amount", ["0", "-5", "1.234"])
async def test_create_rejects_bad_amounts(api, order, ledger, amount):
    response = await _create(api, order, "b2b", amount=amount)

    assert response.status_code == 400
    assert response.json()["error_category"] == "ValidationError"
    assert await ledger.list_by_business_order(order.id) == []


async def test_unknown_flow_rejected(api, order):
    response = await _create(api, order, "p2p")
    assert response.status_code == 400


async def test_notify_unknown_correlation_id(api, gateway_signer, alerts):
    payload = gateway_signer.sign_params({
        "out_trade_no": "REST_C2B_1_1767268800000_ffff",
        "trade_status": "TRADE_SUCCESS",
    })

    response = await api.post(f"{BASE}/c2b/notify", data=payload)

    assert response.status_code == 404
    assert len(alerts.alerts) == 1


async def test_status_unknown(api):
    response = await api.get(f"{BASE}/status/nope")
    assert response.status_code == 404


# =============================================================================
# C2B QUERY
# =============================================================================

async def test_c2b_query_from_gateway(api, order):
    correlation_id = (await _create(api, order, "c2b")).json()["correlation_id"]

    response = await api.get(f"{BASE}/c2b/query/{correlation_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["trade_status"] == "WAIT_BUYER_PAY"
    assert data["total_amount"] == "100.50"
    assert data["source"] == "gateway"


class UnreachableGateway:
    async def query_trade(self, correlation_id):
        raise GatewayError("Gateway temporarily unavailable")


async def test_c2b_query_falls_back_to_ledger(api, order):
    from app.main import app, provide_c2b_client

    correlation_id = (await _create(api, order, "c2b")).json()["correlation_id"]
    app.dependency_overrides[provide_c2b_client] = UnreachableGateway

    response = await api.get(f"{BASE}/c2b/query/{correlation_id}")

    assert response.status_code == 200
    data = response.json()
    assert data["source"] == "ledger"
    assert data["trade_status"] == "WAIT_BUYER_PAY"
    assert data["out_trade_no"] == correlation_id


# =============================================================================
# RETRY QUEUE
# =============================================================================

async def _dead_letter(retry_queue, clock):
    async def failing(flow, payload):
        raise TransientStorageError("database is locked")

    task = await retry_queue.enqueue(GatewayFlow.C2B, {"out_trade_no": "X", "trade_status": "TRADE_SUCCESS"})
    for _ in range(3):
        clock.advance(3601)
        await retry_queue.process_due(failing)
    return task


async def test_dead_letter_listing_and_requeue(api, retry_queue, clock):
    task = await _dead_letter(retry_queue, clock)

    listed = (await api.get(f"{BASE}/retry-tasks/dead-letter")).json()
    assert [t["id"] for t in listed] == [task.id]
    assert listed[0]["status"] == "dead_letter"
    assert listed[0]["flow"] == "c2b"
    assert listed[0]["attempt_count"] == 3

    response = await api.post(f"{BASE}/retry-tasks/{task.id}/requeue")

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["attempt_count"] == 0
    assert (await retry_queue.get(task.id)).status == RetryTaskStatus.PENDING
    assert (await api.get(f"{BASE}/retry-tasks/dead-letter")).json() == []


async def test_requeue_unknown_task(api):
    response = await api.post(f"{BASE}/retry-tasks/missing/requeue")
    assert response.status_code == 404


async def test_root(api):
    response = await api.get("/")
    assert response.status_code == 200


@pytest.mark.parametrize("flow", ["c2b", "b2b"])
async def test_mock_checkout_url_is_served(flow, api, order):
    created = (await _create(api, order, flow)).json()
    parts = urlsplit(created["checkout_url"])

    response = await api.get(f"{parts.path}?{parts.query}")

    assert response.status_code == 200
    assert response.json()["correlation_id"] == created["correlation_id"]
