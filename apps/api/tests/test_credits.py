import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy.future import select

from models.credit_record import CreditRecord
from models.credit_reservation import CreditReservation
from models.user import User
from services.credits import (
    RESERVATION_REFUND_FAILED,
    RESERVATION_REFUNDED,
    _apply_allocations,
    expire_stale_credit_records,
    get_credit_balance,
    reconcile_failed_refunds,
    refund_reserved_credits,
    reserve_credits,
)

USER_ID = "credits-user"
NOW = datetime.now(timezone.utc)


async def _seed_user(db, user_id=USER_ID):
    db.add(User(id=user_id, email=f"{user_id}@example.com"))
    await db.commit()


async def _seed_record(db, credits, *, plan_type="one_time", created_at=None, expires_at=None, status="active", user_id=USER_ID):
    record = CreditRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        credits=credits,
        plan_type=plan_type,
        status=status,
        created_at=created_at or NOW,
        expires_at=expires_at,
    )
    db.add(record)
    await db.commit()
    return record.id


async def _balance(session_maker, user_id=USER_ID):
    async with session_maker() as db:
        return await get_credit_balance(user_id, db)


async def _record(session_maker, record_id):
    async with session_maker() as db:
        result = await db.execute(select(CreditRecord).where(CreditRecord.id == record_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_reserve_then_refund_restores_balance(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        await _seed_record(db, 10, created_at=NOW - timedelta(days=3))
        await _seed_record(db, 5, plan_type="monthly", created_at=NOW - timedelta(days=1))

    async with session_maker() as db:
        first = await reserve_credits(USER_ID, db, amount=3, operation="assembly_view")
        second = await reserve_credits(USER_ID, db, amount=7, operation="complete_tech_pack")

    assert first["success"] is True
    assert second["success"] is True
    assert second["current_credits"] == 5
    assert await _balance(session_maker) == 5

    async with session_maker() as db:
        assert await refund_reserved_credits(
            USER_ID, db, amount=3, reservation_id=first["reservation_id"], reason="assembly failed"
        )
        assert await refund_reserved_credits(
            USER_ID, db, amount=7, reservation_id=second["reservation_id"], reason="complete failed"
        )

    assert await _balance(session_maker) == 15


@pytest.mark.asyncio
async def test_subscription_credits_are_spent_before_one_time_credits(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        one_time_id = await _seed_record(db, 10, created_at=NOW - timedelta(days=30))
        subscription_id = await _seed_record(db, 4, plan_type="monthly", created_at=NOW - timedelta(days=1))

    async with session_maker() as db:
        result = await reserve_credits(USER_ID, db, amount=6)

    assert result["reserved_from"] == [
        {"record_id": subscription_id, "deducted": 4},
        {"record_id": one_time_id, "deducted": 2},
    ]
    assert (await _record(session_maker, subscription_id)).credits == 0
    assert (await _record(session_maker, one_time_id)).credits == 8


@pytest.mark.asyncio
async def test_insufficient_balance_changes_nothing(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        record_id = await _seed_record(db, 5)

    async with session_maker() as db:
        result = await reserve_credits(USER_ID, db, amount=6)

    assert result["success"] is False
    assert result["current_credits"] == 5
    assert "Required: 6, available: 5" in result["message"]
    assert (await _record(session_maker, record_id)).credits == 5

    async with session_maker() as db:
        reservations = await db.execute(select(CreditReservation))
        assert reservations.scalars().all() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -4])
async def test_non_positive_amounts_are_rejected(session_maker, amount):
    async with session_maker() as db:
        with pytest.raises(HTTPException) as exc_info:
            await reserve_credits(USER_ID, db, amount=amount)
        assert exc_info.value.status_code == 422

        with pytest.raises(HTTPException) as exc_info:
            await refund_reserved_credits(USER_ID, db, amount=amount, reservation_id="res_x", reason="x")
        assert exc_info.value.status_code == 422


@pytest.mark.asyncio
async def test_expiry_sweep_is_idempotent(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        drained_id = await _seed_record(db, 0)
        lapsed_id = await _seed_record(db, 9, plan_type="monthly", expires_at=NOW - timedelta(days=1))
        live_id = await _seed_record(db, 4, expires_at=NOW + timedelta(days=10))

    async with session_maker() as db:
        assert await expire_stale_credit_records(USER_ID, db) == 2
        await db.commit()
        first_balance = await get_credit_balance(USER_ID, db)
        assert await expire_stale_credit_records(USER_ID, db) == 0
        await db.commit()
        second_balance = await get_credit_balance(USER_ID, db)

    assert first_balance == second_balance == 4
    assert (await _record(session_maker, drained_id)).status == "expired"
    assert (await _record(session_maker, lapsed_id)).status == "expired"
    assert (await _record(session_maker, live_id)).status == "active"


@pytest.mark.asyncio
async def test_refund_is_applied_at_most_once(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        await _seed_record(db, 6)

    async with session_maker() as db:
        reservation = await reserve_credits(USER_ID, db, amount=4)
        first = await refund_reserved_credits(
            USER_ID, db, amount=4, reservation_id=reservation["reservation_id"], reason="failed"
        )
        second = await refund_reserved_credits(
            USER_ID, db, amount=4, reservation_id=reservation["reservation_id"], reason="failed again"
        )

    assert first is True
    assert second is False
    assert await _balance(session_maker) == 6


@pytest.mark.asyncio
async def test_refund_reactivates_drained_one_time_record(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        record_id = await _seed_record(db, 3)

    async with session_maker() as db:
        reservation = await reserve_credits(USER_ID, db, amount=3)
        # the drained record is swept to expired before the refund arrives
        assert await get_credit_balance(USER_ID, db) == 0
        await db.commit()
        await refund_reserved_credits(
            USER_ID, db, amount=3, reservation_id=reservation["reservation_id"], reason="failed"
        )

    record = await _record(session_maker, record_id)
    assert record.status == "active"
    assert record.credits == 3


@pytest.mark.asyncio
async def test_refund_without_reservation_opens_one_time_record(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        assert await refund_reserved_credits(
            USER_ID, db, amount=2, reservation_id="res_unknown", reason="manual refund"
        )

    async with session_maker() as db:
        records = (await db.execute(select(CreditRecord).where(CreditRecord.user_id == USER_ID))).scalars().all()

    assert len(records) == 1
    assert records[0].credits == 2
    assert records[0].plan_type == "one_time"
    assert records[0].membership == "refund"


@pytest.mark.asyncio
async def test_refund_of_another_users_reservation_is_forbidden(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        await _seed_record(db, 5)
        reservation = await reserve_credits(USER_ID, db, amount=2)

        with pytest.raises(HTTPException) as exc_info:
            await refund_reserved_credits(
                "someone-else", db, amount=2, reservation_id=reservation["reservation_id"], reason="x"
            )
        assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_lost_race_undoes_partial_debits(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        first_id = await _seed_record(db, 5)
        second_id = await _seed_record(db, 1)

    async with session_maker() as db:
        applied = await _apply_allocations(
            db,
            [
                {"record_id": first_id, "deducted": 2},
                {"record_id": second_id, "deducted": 3},
            ],
        )
        await db.commit()

    assert applied is False
    assert (await _record(session_maker, first_id)).credits == 5
    assert (await _record(session_maker, second_id)).credits == 1


@pytest.mark.asyncio
async def test_reconciliation_settles_failed_refunds(session_maker):
    async with session_maker() as db:
        await _seed_user(db)
        await _seed_record(db, 8)
        reservation = await reserve_credits(USER_ID, db, amount=5)

    async with session_maker() as db:
        row = (
            await db.execute(select(CreditReservation).where(CreditReservation.id == reservation["reservation_id"]))
        ).scalar_one()
        row.status = RESERVATION_REFUND_FAILED
        row.last_error = "database unavailable"
        await db.commit()

    async with session_maker() as db:
        assert await reconcile_failed_refunds(db) == 1
        assert await reconcile_failed_refunds(db) == 0

    assert await _balance(session_maker) == 8
    async with session_maker() as db:
        row = (
            await db.execute(select(CreditReservation).where(CreditReservation.id == reservation["reservation_id"]))
        ).scalar_one()
        assert row.status == RESERVATION_REFUNDED
        assert row.last_error is None
