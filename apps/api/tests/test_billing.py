import json
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi import HTTPException
from sqlalchemy.future import select

from config import settings
from models.credit_record import CreditRecord
from models.payment import Payment
from models.user import User
from services.payments import (
    add_months,
    capture_paypal_order,
    change_polar_plan,
    credits_for_price,
    normalize_price,
    parse_paypal_capture,
    subscription_credits,
)
from services.session_token import create_session_token

USER_ID = "billing-user"
REAL_ASYNC_CLIENT = httpx.AsyncClient


def _headers(user_id=USER_ID):
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


def _mock_http(handler):
    def factory(**kwargs):
        return REAL_ASYNC_CLIENT(transport=httpx.MockTransport(handler), **kwargs)

    return factory


def _capture_payload(order_id="ORDER-1", value="29.00", status="COMPLETED"):
    return {
        "id": order_id,
        "status": status,
        "payer": {
            "payer_id": "PAYER-9",
            "email_address": "buyer@example.com",
            "name": {"given_name": "Ada", "surname": "Lovelace"},
        },
        "purchase_units": [
            {"payments": {"captures": [{"status": status, "amount": {"value": value, "currency_code": "USD"}}]}}
        ],
    }


async def _seed_user(session_maker, offers=False):
    async with session_maker() as db:
        db.add(User(id=USER_ID, email="buyer@example.com", offers=offers))
        await db.commit()


async def _balance(api_client, user_id=USER_ID):
    response = await api_client.get("/api/billing/credits", headers=_headers(user_id))
    return response.json()["balance"]


@pytest.mark.parametrize(
    ("price", "credits"),
    [("9.99", 15), ("29.00", 50), ("29", 50), (79, 150), ("199.0", 500)],
)
def test_one_time_price_maps_to_credit_package(price, credits):
    assert credits_for_price(price) == credits


@pytest.mark.parametrize("price", ["12.34", "free", "-29", "0"])
def test_unknown_or_invalid_price_is_rejected(price):
    with pytest.raises(HTTPException) as exc_info:
        credits_for_price(price)
    assert exc_info.value.status_code == 400


def test_normalize_price_keeps_whole_hundreds():
    assert normalize_price("100.00") == "100"
    assert normalize_price("10.50") == "10.5"


def test_subscription_credits_with_offers_bonus():
    assert subscription_credits("pro") == 150
    assert subscription_credits("Pro", offers=True) == 187
    with pytest.raises(HTTPException):
        subscription_credits("platinum")


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2025, 1, 31, tzinfo=timezone.utc), 1) == datetime(2025, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2024, 11, 15, tzinfo=timezone.utc), 12) == datetime(2025, 11, 15, tzinfo=timezone.utc)


def test_parse_paypal_capture_extracts_price_and_payer():
    parsed = parse_paypal_capture(_capture_payload())
    assert parsed["price"] == "29.00"
    assert parsed["status"] == "COMPLETED"
    assert parsed["payer"] == {"id": "PAYER-9", "name": "Ada Lovelace", "email": "buyer@example.com"}

    with pytest.raises(HTTPException) as exc_info:
        parse_paypal_capture({"id": "x", "purchase_units": []})
    assert exc_info.value.status_code == 502


@pytest.fixture
def paypal_api():
    """PayPal REST stand-in serving the orders and subscriptions a test registers."""
    orders = {}
    subscriptions = {}
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        calls.append((request.method, path))
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token"})
        key = path.rsplit("/", 1)[-1]
        if path.startswith("/v2/checkout/orders/"):
            payload = orders.get(key)
        elif path.startswith("/v1/billing/subscriptions/"):
            payload = subscriptions.get(key)
        else:
            payload = None
        if payload is None:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
        return httpx.Response(200, json=payload)

    with (
        patch.object(settings, "PAYPAL_CLIENT_ID", "client"),
        patch.object(settings, "PAYPAL_CLIENT_SECRET", "secret"),
        patch.object(settings, "PAYPAL_PLAN_IDS", {"pro_monthly": "P-PRO-MONTHLY"}),
        patch("services.payments.httpx.AsyncClient", _mock_http(handler)),
    ):
        yield SimpleNamespace(orders=orders, subscriptions=subscriptions, calls=calls)


@pytest.mark.asyncio
async def test_payment_is_credited_once_per_order(api_client, session_maker, paypal_api):
    await _seed_user(session_maker)
    paypal_api.orders["ORDER-42"] = _capture_payload("ORDER-42", "29.00")
    body = {"order_id": "ORDER-42", "price": "29.00"}

    first = await api_client.post("/api/billing/payment", json=body, headers=_headers())
    second = await api_client.post("/api/billing/payment", json=body, headers=_headers())

    assert first.status_code == 200
    assert first.json()["credits_added"] == 50
    assert first.json()["balance"] == 50
    assert second.json()["duplicate"] is True
    assert second.json()["credits_added"] == 0
    assert second.json()["balance"] == 50
    assert ("GET", "/v2/checkout/orders/ORDER-42") in paypal_api.calls

    async with session_maker() as db:
        payments = (await db.execute(select(Payment))).scalars().all()
    assert len(payments) == 1
    assert payments[0].quantity == 50
    assert payments[0].payer_email == "buyer@example.com"


@pytest.mark.asyncio
async def test_payment_creates_missing_user(api_client, session_maker, paypal_api):
    paypal_api.orders["ORDER-7"] = _capture_payload("ORDER-7", "9.99")

    response = await api_client.post("/api/billing/payment", json={"orderId": "ORDER-7"}, headers=_headers("new-buyer"))

    assert response.status_code == 200
    assert response.json()["balance"] == 15
    async with session_maker() as db:
        assert (await db.execute(select(User).where(User.id == "new-buyer"))).scalar_one_or_none() is not None


@pytest.mark.asyncio
async def test_payment_for_unknown_order_grants_nothing(api_client, session_maker, paypal_api):
    await _seed_user(session_maker)

    responses = [
        await api_client.post(
            "/api/billing/payment", json={"order_id": f"MADE-UP-{n}", "price": "199"}, headers=_headers()
        )
        for n in range(3)
    ]

    assert [response.status_code for response in responses] == [402, 402, 402]
    assert responses[0].json()["success"] is False
    assert await _balance(api_client) == 0
    async with session_maker() as db:
        assert (await db.execute(select(Payment))).scalars().all() == []


@pytest.mark.asyncio
async def test_payment_price_must_match_paypal_amount(api_client, session_maker, paypal_api):
    await _seed_user(session_maker)
    paypal_api.orders["ORDER-CHEAP"] = _capture_payload("ORDER-CHEAP", "9.99")

    claimed = await api_client.post(
        "/api/billing/payment", json={"order_id": "ORDER-CHEAP", "price": "199"}, headers=_headers()
    )

    assert claimed.status_code == 400
    assert await _balance(api_client) == 0


@pytest.mark.asyncio
async def test_payment_for_uncaptured_order_is_402(api_client, session_maker, paypal_api):
    await _seed_user(session_maker)
    paypal_api.orders["ORDER-APPROVED"] = {"id": "ORDER-APPROVED", "status": "APPROVED", "purchase_units": [{}]}

    response = await api_client.post("/api/billing/payment", json={"order_id": "ORDER-APPROVED"}, headers=_headers())

    assert response.status_code == 402
    assert await _balance(api_client) == 0


@pytest.mark.asyncio
async def test_paypal_capture_route_grants_package(api_client, session_maker):
    await _seed_user(session_maker)

    with patch("services.payments.capture_paypal_order", AsyncMock(return_value=_capture_payload("ORDER-5", "79.00"))):
        response = await api_client.post(
            "/api/billing/paypal-capture", json={"order_id": "ORDER-5"}, headers=_headers()
        )

    assert response.status_code == 200
    assert response.json()["credits_added"] == 150

    async with session_maker() as db:
        payment = (await db.execute(select(Payment))).scalar_one()
    assert payment.payer_name == "Ada Lovelace"
    assert payment.payment_status == "COMPLETED"


@pytest.mark.asyncio
async def test_pending_paypal_capture_grants_nothing(api_client, session_maker):
    await _seed_user(session_maker)

    with patch(
        "services.payments.capture_paypal_order",
        AsyncMock(return_value=_capture_payload("ORDER-6", "29.00", status="PENDING")),
    ):
        response = await api_client.post(
            "/api/billing/paypal-capture", json={"order_id": "ORDER-6"}, headers=_headers()
        )

    assert response.status_code == 402
    credits = await api_client.get("/api/billing/credits", headers=_headers())
    assert credits.json()["balance"] == 0


@pytest.mark.asyncio
async def test_capture_paypal_order_uses_client_credentials(session_maker):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.headers.get("authorization", "")))
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token"})
        return httpx.Response(201, json=_capture_payload("ORDER-8"))

    with (
        patch.object(settings, "PAYPAL_CLIENT_ID", "client"),
        patch.object(settings, "PAYPAL_CLIENT_SECRET", "secret"),
        patch("services.payments.httpx.AsyncClient", _mock_http(handler)),
    ):
        payload = await capture_paypal_order("ORDER-8")

    assert payload["id"] == "ORDER-8"
    assert seen[0][:2] == ("POST", "/v1/oauth2/token")
    assert seen[0][2].startswith("Basic ")
    assert seen[1] == ("POST", "/v2/checkout/orders/ORDER-8/capture", "Bearer paypal-token")


@pytest.mark.asyncio
async def test_capture_without_paypal_configuration_is_503(session_maker):
    with patch.object(settings, "PAYPAL_CLIENT_ID", ""):
        with pytest.raises(HTTPException) as exc_info:
            await capture_paypal_order("ORDER-1")
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_capture_provider_error_is_502(session_maker):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token"})
        return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY"})

    with (
        patch.object(settings, "PAYPAL_CLIENT_ID", "client"),
        patch.object(settings, "PAYPAL_CLIENT_SECRET", "secret"),
        patch("services.payments.httpx.AsyncClient", _mock_http(handler)),
    ):
        with pytest.raises(HTTPException) as exc_info:
            await capture_paypal_order("ORDER-9")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_subscription_carries_over_previous_subscription_credits(api_client, session_maker, paypal_api):
    await _seed_user(session_maker, offers=True)
    paypal_api.subscriptions["I-NEW"] = {"id": "I-NEW", "status": "ACTIVE", "plan_id": "P-PRO-MONTHLY"}
    async with session_maker() as db:
        db.add(CreditRecord(id="old-sub", user_id=USER_ID, credits=20, plan_type="monthly", subscription_id="I-OLD"))
        db.add(CreditRecord(id="top-up", user_id=USER_ID, credits=5, plan_type="one_time"))
        await db.commit()

    response = await api_client.post(
        "/api/billing/paypal-subscription",
        json={"subscription_id": "I-NEW", "membership": "pro", "plan_type": "monthly"},
        headers=_headers(),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["credits_added"] == 187
    assert body["carried_over"] == 20
    assert body["balance"] == 187 + 20 + 5

    async with session_maker() as db:
        records = {
            record.id: record
            for record in (await db.execute(select(CreditRecord).where(CreditRecord.user_id == USER_ID))).scalars()
        }
    assert records["old-sub"].status == "expired"
    assert records["top-up"].status == "active"
    new_record = next(record for record in records.values() if record.subscription_id == "I-NEW")
    assert new_record.credits == 207
    assert new_record.expires_at is not None

    repeat = await api_client.post(
        "/api/billing/paypal-subscription",
        json={"subscription_id": "I-NEW", "membership": "pro", "plan_type": "monthly"},
        headers=_headers(),
    )
    assert repeat.json()["duplicate"] is True
    assert repeat.json()["balance"] == 212


@pytest.mark.asyncio
async def test_subscription_must_be_active_on_the_claimed_plan(api_client, session_maker, paypal_api):
    await _seed_user(session_maker)
    paypal_api.subscriptions["I-SAVER"] = {"id": "I-SAVER", "status": "ACTIVE", "plan_id": "P-SAVER-MONTHLY"}
    paypal_api.subscriptions["I-PENDING"] = {"id": "I-PENDING", "status": "APPROVAL_PENDING", "plan_id": "P-PRO-MONTHLY"}

    def subscribe(subscription_id):
        return api_client.post(
            "/api/billing/paypal-subscription",
            json={"subscription_id": subscription_id, "membership": "pro", "plan_type": "monthly"},
            headers=_headers(),
        )

    wrong_plan = await subscribe("I-SAVER")
    pending = await subscribe("I-PENDING")
    unknown = await subscribe("I-MADE-UP")

    assert wrong_plan.status_code == 400
    assert pending.status_code == 402
    assert unknown.status_code == 402
    assert await _balance(api_client) == 0


@pytest.mark.asyncio
async def test_polar_plan_change_swaps_subscription_record(session_maker):
    await _seed_user(session_maker)
    async with session_maker() as db:
        db.add(CreditRecord(id=str(uuid.uuid4()), user_id=USER_ID, credits=10, plan_type="monthly", subscription_id="sub_1"))
        await db.commit()

    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "sub_1"})

    with (
        patch.object(settings, "POLAR_ACCESS_TOKEN", "polar-token"),
        patch.object(settings, "POLAR_PRODUCT_IDS", {"pro_monthly": "prod_pro"}),
        patch("services.payments.httpx.AsyncClient", _mock_http(handler)),
    ):
        async with session_maker() as db:
            result = await change_polar_plan(USER_ID, db, subscription_id="sub_1", product_key="pro_monthly")

    assert requests[0].method == "PATCH"
    assert requests[0].url.path == "/v1/subscriptions/sub_1"
    assert json.loads(requests[0].content) == {"product_id": "prod_pro"}
    assert result["credits_added"] == 200
    assert result["carried_over"] == 10
    assert result["balance"] == 210


@pytest.mark.asyncio
async def test_polar_plan_change_without_configuration_is_503(api_client, session_maker):
    await _seed_user(session_maker)

    response = await api_client.post(
        "/api/billing/polar/change-plan",
        json={"subscription_id": "sub_1", "product_key": "pro_monthly"},
        headers=_headers(),
    )

    assert response.status_code == 503
    assert response.json()["success"] is False
