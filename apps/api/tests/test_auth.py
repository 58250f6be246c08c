import uuid

import pytest

from models.credit_record import CreditRecord
from models.user import User
from services.session_token import create_session_token, decode_session_token

USER_ID = "auth-user"


def test_session_token_round_trip_carries_offers_flag():
    issued = create_session_token(USER_ID, email="me@example.com", offers=True)
    payload = decode_session_token(issued["token"])

    assert payload["sub"] == USER_ID
    assert payload["email"] == "me@example.com"
    assert payload["offers"] is True
    assert payload["jti"] == issued["token_id"]


def test_tampered_token_is_rejected():
    token = create_session_token(USER_ID)["token"]
    with pytest.raises(ValueError):
        decode_session_token(token[:-2] + ("aa" if not token.endswith("aa") else "bb"))


@pytest.mark.asyncio
async def test_me_reports_profile_and_credit_balance(api_client, session_maker):
    async with session_maker() as db:
        db.add(User(id=USER_ID, email="me@example.com", full_name="Mia Maker", offers=True))
        db.add(CreditRecord(id=str(uuid.uuid4()), user_id=USER_ID, credits=7, plan_type="one_time"))
        await db.commit()
    token = create_session_token(USER_ID)["token"]

    response = await api_client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "user_id": USER_ID,
        "email": "me@example.com",
        "full_name": "Mia Maker",
        "offers": True,
        "credits": 7,
    }


@pytest.mark.asyncio
async def test_logout_revokes_the_presented_token(api_client, session_maker):
    async with session_maker() as db:
        db.add(User(id=USER_ID, email="me@example.com"))
        await db.commit()
    token = create_session_token(USER_ID)["token"]
    headers = {"Authorization": f"Bearer {token}"}

    logout = await api_client.post("/auth/logout", headers=headers)
    after = await api_client.get("/auth/me", headers=headers)
    fresh = await api_client.get(
        "/auth/me", headers={"Authorization": f"Bearer {create_session_token(USER_ID)['token']}"}
    )

    assert logout.status_code == 200
    assert after.status_code == 401
    assert after.json()["error"] == "Session token has been revoked."
    assert fresh.status_code == 200


@pytest.mark.asyncio
async def test_liveness_and_readiness_probes(api_client):
    live = await api_client.get("/health/live")
    ready = await api_client.get("/health/ready")

    assert live.json() == {"alive": True}
    assert ready.status_code == 200
