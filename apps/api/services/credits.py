"""Credit ledger: balance, reservation and refund over per-grant credit records."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import case, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_record import (
    CREDIT_STATUS_ACTIVE,
    CREDIT_STATUS_EXPIRED,
    PLAN_TYPE_ONE_TIME,
    CreditRecord,
)
from models.credit_reservation import CreditReservation

logger = logging.getLogger(__name__)

RESERVATION_RESERVED = "reserved"
RESERVATION_COMMITTED = "committed"
RESERVATION_REFUNDED = "refunded"
RESERVATION_REFUND_FAILED = "refund_failed"

# subscription-type grants are spent before one-time top-ups, oldest first
_DEBIT_PRIORITY = case((CreditRecord.plan_type == PLAN_TYPE_ONE_TIME, 1), else_=0)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _positive_amount(amount: Any) -> int:
    value = int(amount)
    if value <= 0:
        raise HTTPException(status_code=422, detail="amount must be greater than 0")
    return value


async def expire_stale_credit_records(user_id: str, db: AsyncSession) -> int:
    """Auto-expiry sweep: drained one-time grants and grants past their expiry."""
    now = _now()
    drained = await db.execute(
        update(CreditRecord)
        .where(
            CreditRecord.user_id == user_id,
            CreditRecord.status == CREDIT_STATUS_ACTIVE,
            CreditRecord.plan_type == PLAN_TYPE_ONE_TIME,
            CreditRecord.credits == 0,
        )
        .values(status=CREDIT_STATUS_EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    lapsed = await db.execute(
        update(CreditRecord)
        .where(
            CreditRecord.user_id == user_id,
            CreditRecord.status == CREDIT_STATUS_ACTIVE,
            CreditRecord.expires_at.is_not(None),
            CreditRecord.expires_at < now,
        )
        .values(status=CREDIT_STATUS_EXPIRED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    changed = int(drained.rowcount or 0) + int(lapsed.rowcount or 0)
    if changed:
        logger.info("credit_records_expired user=%s count=%s", user_id, changed)
    return changed


async def _sum_active_credits(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditRecord.credits), 0)).where(
            CreditRecord.user_id == user_id,
            CreditRecord.status == CREDIT_STATUS_ACTIVE,
        )
    )
    return int(result.scalar() or 0)


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    await expire_stale_credit_records(user_id, db)
    return await _sum_active_credits(user_id, db)


async def _active_records(user_id: str, db: AsyncSession) -> List[CreditRecord]:
    result = await db.execute(
        select(CreditRecord)
        .where(
            CreditRecord.user_id == user_id,
            CreditRecord.status == CREDIT_STATUS_ACTIVE,
            CreditRecord.credits > 0,
        )
        .order_by(_DEBIT_PRIORITY, CreditRecord.created_at.asc(), CreditRecord.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def _plan_allocations(records: List[CreditRecord], amount: int) -> List[Dict[str, Any]]:
    remaining = amount
    allocations: List[Dict[str, Any]] = []
    for record in records:
        if remaining <= 0:
            break
        deducted = min(int(record.credits or 0), remaining)
        if deducted <= 0:
            continue
        allocations.append({"record_id": record.id, "deducted": deducted})
        remaining -= deducted
    return allocations


async def _increment_record(db: AsyncSession, record_id: str, amount: int, reactivate: bool = False) -> bool:
    values: Dict[str, Any] = {"credits": CreditRecord.credits + amount, "updated_at": _now()}
    if reactivate:
        values["status"] = CREDIT_STATUS_ACTIVE
    result = await db.execute(
        update(CreditRecord)
        .where(CreditRecord.id == record_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


async def _apply_allocations(db: AsyncSession, allocations: List[Dict[str, Any]]) -> bool:
    """Conditionally decrement each record; undo applied debits if any record lost a race."""
    applied: List[Dict[str, Any]] = []
    for allocation in allocations:
        result = await db.execute(
            update(CreditRecord)
            .where(
                CreditRecord.id == allocation["record_id"],
                CreditRecord.status == CREDIT_STATUS_ACTIVE,
                CreditRecord.credits >= allocation["deducted"],
            )
            .values(credits=CreditRecord.credits - allocation["deducted"], updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            for done in applied:
                await _increment_record(db, done["record_id"], done["deducted"])
            return False
        applied.append(allocation)
    return True


async def reserve_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    operation: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Hold credits before an expensive call. Nothing changes when the balance is short."""
    required = _positive_amount(amount)

    allocations: Optional[List[Dict[str, Any]]] = None
    available = 0
    for attempt in range(2):
        await expire_stale_credit_records(user_id, db)
        records = await _active_records(user_id, db)
        available = sum(int(record.credits or 0) for record in records)
        if available < required:
            await db.commit()
            logger.info("credits_reserve_rejected user=%s required=%s available=%s", user_id, required, available)
            return {
                "success": False,
                "message": f"Insufficient credits. Required: {required}, available: {available}.",
                "current_credits": available,
            }
        planned = _plan_allocations(records, required)
        if await _apply_allocations(db, planned):
            allocations = planned
            break
        logger.warning("credits_reserve_conflict user=%s attempt=%s", user_id, attempt + 1)

    if allocations is None:
        await db.commit()
        return {
            "success": False,
            "message": "Credit balance changed during reservation. Please retry.",
            "current_credits": await _sum_active_credits(user_id, db),
        }

    reservation_id = f"res_{uuid.uuid4().hex}"
    db.add(
        CreditReservation(
            id=reservation_id,
            user_id=user_id,
            amount=required,
            status=RESERVATION_RESERVED,
            operation=operation,
            reason=reason,
            allocations_json=allocations,
        )
    )
    await db.commit()
    logger.info(
        "credits_reserved user=%s amount=%s reservation=%s operation=%s",
        user_id,
        required,
        reservation_id,
        operation,
    )
    return {
        "success": True,
        "reservation_id": reservation_id,
        "reserved_from": allocations,
        "current_credits": available - required,
    }


async def _get_reservation(reservation_id: str, db: AsyncSession) -> Optional[CreditReservation]:
    result = await db.execute(
        select(CreditReservation)
        .where(CreditReservation.id == reservation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _credit_fallback_record(user_id: str, db: AsyncSession, amount: int) -> None:
    """Put credits on the newest active record, or open a one-time record."""
    result = await db.execute(
        select(CreditRecord)
        .where(CreditRecord.user_id == user_id, CreditRecord.status == CREDIT_STATUS_ACTIVE)
        .order_by(CreditRecord.created_at.desc(), CreditRecord.id.desc())
        .limit(1)
    )
    newest = result.scalar_one_or_none()
    if newest is not None and await _increment_record(db, newest.id, amount):
        return
    db.add(
        CreditRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            credits=amount,
            status=CREDIT_STATUS_ACTIVE,
            plan_type=PLAN_TYPE_ONE_TIME,
            membership="refund",
        )
    )
    await db.flush()


async def refund_reserved_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reservation_id: str,
    reason: str,
) -> bool:
    """Return reserved credits. A reservation is refunded at most once."""
    refund_amount = _positive_amount(amount)
    reservation = await _get_reservation(reservation_id, db)
    if reservation is not None and reservation.user_id != user_id:
        raise HTTPException(status_code=403, detail="Reservation belongs to another user.")
    if reservation is not None and reservation.status == RESERVATION_REFUNDED:
        logger.warning("credits_refund_skipped reservation=%s already refunded", reservation_id)
        return False

    logger.info(
        "credits_refunding user=%s amount=%s reservation=%s reason=%s",
        user_id,
        refund_amount,
        reservation_id,
        reason,
    )

    remaining = refund_amount
    allocations = (reservation.allocations_json if reservation is not None else None) or []
    now = _now()
    for allocation in allocations:
        if remaining <= 0:
            break
        portion = min(int(allocation.get("deducted", 0) or 0), remaining)
        if portion <= 0:
            continue
        record_result = await db.execute(
            select(CreditRecord)
            .where(CreditRecord.id == allocation.get("record_id"), CreditRecord.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        record = record_result.scalar_one_or_none()
        if record is None:
            continue
        expires_at = _as_utc(record.expires_at)
        if expires_at is not None and expires_at < now:
            # lapsed grant: leave it expired, credit elsewhere
            continue
        if await _increment_record(db, record.id, portion, reactivate=True):
            remaining -= portion

    if remaining > 0:
        await _credit_fallback_record(user_id, db, remaining)

    if reservation is not None:
        reservation.status = RESERVATION_REFUNDED
        reservation.reason = reason[:1000] if reason else reservation.reason
        reservation.last_error = None
        reservation.resolved_at = now
    await db.commit()
    logger.info("credits_refunded user=%s amount=%s reservation=%s", user_id, refund_amount, reservation_id)
    return True


async def commit_reservation(reservation_id: str, db: AsyncSession) -> None:
    """Mark a reservation as spent. Bookkeeping only; the debit already happened."""
    reservation = await _get_reservation(reservation_id, db)
    if reservation is None or reservation.status != RESERVATION_RESERVED:
        return
    reservation.status = RESERVATION_COMMITTED
    reservation.resolved_at = _now()
    await db.commit()


async def mark_refund_failed(reservation_id: str, db: AsyncSession, error: str) -> None:
    """Leave a durable marker so the reconciliation sweep can retry the refund."""
    reservation = await _get_reservation(reservation_id, db)
    if reservation is None or reservation.status == RESERVATION_REFUNDED:
        return
    reservation.status = RESERVATION_REFUND_FAILED
    reservation.last_error = (error or "")[:1000]
    await db.commit()


async def reconcile_failed_refunds(db: AsyncSession) -> int:
    """Retry refunds that previously failed. Returns how many were settled."""
    result = await db.execute(
        select(CreditReservation).where(CreditReservation.status == RESERVATION_REFUND_FAILED)
    )
    settled = 0
    for reservation in result.scalars().all():
        try:
            refunded = await refund_reserved_credits(
                reservation.user_id,
                db,
                amount=reservation.amount,
                reservation_id=reservation.id,
                reason=reservation.reason or "refund reconciliation",
            )
        except Exception as exc:
            await db.rollback()
            logger.warning("Refund reconciliation failed for reservation %s: %s", reservation.id, exc)
            continue
        if refunded:
            settled += 1
    return settled


async def grant_credits(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    plan_type: str,
    membership: Optional[str] = None,
    subscription_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    provider: Optional[str] = None,
) -> CreditRecord:
    """Insert a credit grant. Caller commits."""
    grant = _positive_amount(credits)
    record = CreditRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        credits=grant,
        status=CREDIT_STATUS_ACTIVE,
        plan_type=plan_type,
        membership=membership,
        subscription_id=subscription_id,
        payment_provider=provider,
        expires_at=expires_at,
    )
    db.add(record)
    await db.flush()
    logger.info("credits_granted user=%s credits=%s plan=%s provider=%s", user_id, grant, plan_type, provider)
    return record


def credit_cost_table() -> Dict[str, int]:
    return {
        "base_views": max(int(settings.CREDIT_COST_BASE_VIEWS), 0),
        "assembly_view": max(int(settings.CREDIT_COST_ASSEMBLY_VIEW), 0),
        "flat_sketches": max(int(settings.CREDIT_COST_FLAT_SKETCHES), 0),
        "complete_tech_pack": max(int(settings.CREDIT_COST_COMPLETE_TECH_PACK), 0),
        "custom_component": max(int(settings.CREDIT_COST_CUSTOM_COMPONENT), 0),
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db)
    await db.commit()
    records_result = await db.execute(
        select(CreditRecord)
        .where(CreditRecord.user_id == user_id, CreditRecord.status == CREDIT_STATUS_ACTIVE)
        .order_by(_DEBIT_PRIORITY, CreditRecord.created_at.asc())
    )
    reservations_result = await db.execute(
        select(CreditReservation)
        .where(CreditReservation.user_id == user_id)
        .order_by(CreditReservation.created_at.desc())
        .limit(30)
    )
    return {
        "balance": balance,
        "costs": credit_cost_table(),
        "records": [
            {
                "id": record.id,
                "credits": record.credits,
                "plan_type": record.plan_type,
                "membership": record.membership,
                "expires_at": record.expires_at.isoformat() if record.expires_at else None,
            }
            for record in records_result.scalars().all()
        ],
        "recent_reservations": [
            {
                "id": reservation.id,
                "amount": reservation.amount,
                "status": reservation.status,
                "operation": reservation.operation,
                "reason": reservation.reason,
                "created_at": reservation.created_at.isoformat() if reservation.created_at else None,
            }
            for reservation in reservations_result.scalars().all()
        ],
    }
