"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import get_credit_summary
from services.payments import (
    activate_paypal_subscription,
    change_polar_plan,
    record_paypal_capture,
    record_paypal_payment,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class _BillingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)

    user_id: Optional[str] = None


class PaymentRequest(_BillingRequest):
    order_id: str = Field(min_length=1, max_length=200)
    price: Optional[str] = Field(default=None, min_length=1, max_length=20)


class PayPalCaptureRequest(_BillingRequest):
    order_id: str = Field(min_length=1, max_length=200)


class PayPalSubscriptionRequest(_BillingRequest):
    subscription_id: str = Field(min_length=1, max_length=200)
    membership: Literal["saver", "pro", "edu pro"]
    plan_type: Literal["monthly", "yearly"] = "monthly"


class PolarChangePlanRequest(_BillingRequest):
    subscription_id: str = Field(min_length=1, max_length=200)
    product_key: str = Field(min_length=1, max_length=100)


async def _ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, email=email or f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await _ensure_user(db, scoped_user_id, auth.email)
    return {"success": True, **await get_credit_summary(scoped_user_id, db)}


@router.post("/payment")
async def record_payment(
    request: PaymentRequest,
    _rate_limit: None = Depends(rate_limit("billing_payment", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await _ensure_user(db, scoped_user_id, auth.email)
    result = await record_paypal_payment(scoped_user_id, db, request.order_id, expected_price=request.price)
    return {"success": True, **result}


@router.post("/paypal-capture")
async def paypal_capture(
    request: PayPalCaptureRequest,
    _rate_limit: None = Depends(rate_limit("billing_capture", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await _ensure_user(db, scoped_user_id, auth.email)
    result = await record_paypal_capture(scoped_user_id, db, request.order_id)
    return {"success": True, **result}


@router.post("/paypal-subscription")
async def paypal_subscription(
    request: PayPalSubscriptionRequest,
    _rate_limit: None = Depends(rate_limit("billing_subscription", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await _ensure_user(db, scoped_user_id, auth.email)
    result = await activate_paypal_subscription(
        scoped_user_id,
        db,
        subscription_id=request.subscription_id,
        membership=request.membership,
        plan_type=request.plan_type,
    )
    return {"success": True, **result}


@router.post("/polar/change-plan")
async def polar_change_plan(
    request: PolarChangePlanRequest,
    _rate_limit: None = Depends(rate_limit("billing_change_plan", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await _ensure_user(db, scoped_user_id, auth.email)
    result = await change_polar_plan(
        scoped_user_id,
        db,
        subscription_id=request.subscription_id,
        product_key=request.product_key,
    )
    logger.info("Polar plan for user %s changed to %s", scoped_user_id, request.product_key)
    return {"success": True, **result}
