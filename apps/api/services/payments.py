"""Payment capture and the credit grants they produce (PayPal, Polar)."""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_record import (
    CREDIT_STATUS_ACTIVE,
    CREDIT_STATUS_EXPIRED,
    PLAN_TYPE_ONE_TIME,
    CreditRecord,
)
from models.payment import Payment
from models.user import User
from services.credits import get_credit_balance, grant_credits

logger = logging.getLogger(__name__)

# price string -> credits
PAYPAL_ONE_TIME_PACKAGES: Dict[str, int] = {
    "9.99": 15,
    "29": 50,
    "79": 150,
    "199": 500,
}

PAYPAL_SUBSCRIPTION_CREDITS: Dict[str, int] = {
    "saver": 75,
    "pro": 150,
    "edu pro": 250,
}

OFFER_CREDIT_MULTIPLIER = Decimal("1.25")


@dataclass(frozen=True)
class PolarProduct:
    key: str
    name: str
    price: Decimal
    credits: int
    plan_type: str  # monthly, yearly, one_time
    membership: str


POLAR_PRODUCTS: Dict[str, PolarProduct] = {
    product.key: product
    for product in (
        PolarProduct("saver_monthly", "Saver Plan", Decimal("19.9"), 75, "monthly", "saver"),
        PolarProduct("pro_monthly", "Pro Plan", Decimal("39.9"), 200, "monthly", "pro"),
        PolarProduct("super_monthly", "Super Plan", Decimal("99.9"), 650, "monthly", "super"),
        PolarProduct("saver_yearly", "Saver Plan (Yearly)", Decimal("178"), 75, "yearly", "saver"),
        PolarProduct("pro_yearly", "Pro Plan (Yearly)", Decimal("358"), 200, "yearly", "pro"),
        PolarProduct("super_yearly", "Super Plan (Yearly)", Decimal("899"), 650, "yearly", "super"),
        PolarProduct("credits_30", "30 Credits", Decimal("14.9"), 30, PLAN_TYPE_ONE_TIME, "add_on"),
        PolarProduct("credits_60", "60 Credits", Decimal("29.9"), 60, PLAN_TYPE_ONE_TIME, "add_on"),
        PolarProduct("credits_120", "120 Credits", Decimal("49.9"), 120, PLAN_TYPE_ONE_TIME, "add_on"),
        PolarProduct("credits_250", "250 Credits", Decimal("99.9"), 250, PLAN_TYPE_ONE_TIME, "add_on"),
    )
}


def normalize_price(price: Any) -> str:
    """Canonical price string: ``29.00`` -> ``29``, ``9.990`` -> ``9.99``."""
    try:
        value = Decimal(str(price).strip())
    except (InvalidOperation, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid price: {price}") from exc
    if value <= 0:
        raise HTTPException(status_code=400, detail=f"Invalid price: {price}")
    text = format(value.quantize(Decimal("0.01")), "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


def credits_for_price(price: Any) -> int:
    key = normalize_price(price)
    if key not in PAYPAL_ONE_TIME_PACKAGES:
        raise HTTPException(status_code=400, detail=f"No credit package for price {key}")
    return PAYPAL_ONE_TIME_PACKAGES[key]


def subscription_credits(membership: str, offers: bool = False) -> int:
    base = PAYPAL_SUBSCRIPTION_CREDITS.get((membership or "").strip().lower())
    if base is None:
        raise HTTPException(status_code=400, detail=f"Unknown membership: {membership}")
    if offers:
        return int(Decimal(base) * OFFER_CREDIT_MULTIPLIER)
    return base


def get_polar_product(product_key: str) -> PolarProduct:
    product = POLAR_PRODUCTS.get(product_key)
    if product is None:
        raise HTTPException(status_code=400, detail=f"Unknown Polar product: {product_key}")
    return product


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def subscription_expiry(plan_type: str, start: Optional[datetime] = None) -> datetime:
    start = start or datetime.now(timezone.utc)
    return add_months(start, 12 if plan_type == "yearly" else 1)


async def _get_payment(provider: str, reference: str, db: AsyncSession) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.provider == provider, Payment.external_reference == reference)
    )
    return result.scalar_one_or_none()


async def record_one_time_purchase(
    user_id: str,
    db: AsyncSession,
    *,
    provider: str,
    reference: str,
    price: Any,
    credits: Optional[int] = None,
    currency: str = "USD",
    payer: Optional[Dict[str, Optional[str]]] = None,
    payment_status: Optional[str] = None,
) -> Dict[str, Any]:
    """Grant a one-time package once per provider reference."""
    existing = await _get_payment(provider, reference, db)
    if existing:
        logger.info("Duplicate %s payment %s ignored", provider, reference)
        return {
            "duplicate": True,
            "payment_id": existing.id,
            "credits_added": 0,
            "balance": await get_credit_balance(user_id, db),
        }

    granted = int(credits) if credits is not None else credits_for_price(price)
    record = await grant_credits(
        user_id,
        db,
        credits=granted,
        plan_type=PLAN_TYPE_ONE_TIME,
        membership="add_on",
        provider=provider,
    )
    payer = payer or {}
    payment = Payment(
        user_id=user_id,
        provider=provider,
        external_reference=reference,
        price=Decimal(normalize_price(price)),
        currency=currency or "USD",
        quantity=granted,
        payment_status=payment_status,
        payer_id=payer.get("id"),
        payer_name=payer.get("name"),
        payer_email=payer.get("email"),
        credit_record_id=record.id,
    )
    db.add(payment)
    await db.commit()
    logger.info("Recorded %s purchase %s for user %s: %s credits", provider, reference, user_id, granted)
    return {
        "duplicate": False,
        "payment_id": payment.id,
        "credits_added": granted,
        "balance": await get_credit_balance(user_id, db),
    }


async def activate_subscription(
    user_id: str,
    db: AsyncSession,
    *,
    provider: str,
    subscription_id: str,
    membership: str,
    plan_type: str,
    credits: int,
    price: Optional[Any] = None,
    reference: Optional[str] = None,
) -> Dict[str, Any]:
    """Open a subscription record, carrying over credits left on older subscription records."""
    if reference and await _get_payment(provider, reference, db):
        logger.info("Duplicate %s subscription payment %s ignored", provider, reference)
        return {"duplicate": True, "credits_added": 0, "balance": await get_credit_balance(user_id, db)}

    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(CreditRecord).where(
            CreditRecord.user_id == user_id,
            CreditRecord.status == CREDIT_STATUS_ACTIVE,
            CreditRecord.plan_type != PLAN_TYPE_ONE_TIME,
        )
    )
    previous = result.scalars().all()
    carried_over = sum(int(record.credits or 0) for record in previous)
    if previous:
        await db.execute(
            update(CreditRecord)
            .where(CreditRecord.id.in_([record.id for record in previous]))
            .values(status=CREDIT_STATUS_EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    record = await grant_credits(
        user_id,
        db,
        credits=int(credits) + carried_over,
        plan_type=plan_type,
        membership=membership,
        subscription_id=subscription_id,
        expires_at=subscription_expiry(plan_type, now),
        provider=provider,
    )
    if reference:
        db.add(
            Payment(
                user_id=user_id,
                provider=provider,
                external_reference=reference,
                price=Decimal(normalize_price(price)) if price is not None else Decimal("0"),
                quantity=int(credits),
                payment_status="ACTIVE",
                credit_record_id=record.id,
            )
        )
    await db.commit()
    logger.info(
        "Activated %s %s subscription %s for user %s (carried over %s)",
        provider,
        membership,
        subscription_id,
        user_id,
        carried_over,
    )
    return {
        "duplicate": False,
        "credit_record_id": record.id,
        "credits_added": int(credits),
        "carried_over": carried_over,
        "expires_at": record.expires_at.isoformat() if record.expires_at else None,
        "balance": await get_credit_balance(user_id, db),
    }


async def _paypal_access_token(client: httpx.AsyncClient) -> str:
    response = await client.post(
        f"{settings.PAYPAL_API_BASE_URL}/v1/oauth2/token",
        data={"grant_type": "client_credentials"},
        auth=httpx.BasicAuth(settings.PAYPAL_CLIENT_ID, settings.PAYPAL_CLIENT_SECRET),
        headers={"Accept": "application/json"},
    )
    if response.status_code >= 400:
        logger.error("PayPal token request failed: %s %s", response.status_code, response.text[:300])
        raise HTTPException(status_code=502, detail="PayPal authentication failed")
    return response.json()["access_token"]


async def _paypal_request(method: str, path: str, label: str) -> Dict[str, Any]:
    if not settings.PAYPAL_CLIENT_ID or not settings.PAYPAL_CLIENT_SECRET:
        raise HTTPException(status_code=503, detail="PayPal is not configured.")

    async with httpx.AsyncClient(timeout=settings.PAYMENT_HTTP_TIMEOUT_SECONDS) as client:
        token = await _paypal_access_token(client)
        response = await client.request(
            method,
            f"{settings.PAYPAL_API_BASE_URL}{path}",
            json={} if method == "POST" else None,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
    if response.status_code == 404:
        logger.warning("PayPal does not know %s", label)
        raise HTTPException(status_code=402, detail=f"PayPal {label} was not found")
    if response.status_code >= 400:
        logger.error("PayPal %s of %s failed: %s %s", method, label, response.status_code, response.text[:300])
        raise HTTPException(status_code=502, detail=f"PayPal request failed for {label}")
    return response.json()


async def capture_paypal_order(order_id: str) -> Dict[str, Any]:
    """Capture an approved PayPal order and return the provider payload."""
    return await _paypal_request("POST", f"/v2/checkout/orders/{order_id}/capture", f"order {order_id}")


async def get_paypal_order(order_id: str) -> Dict[str, Any]:
    """Fetch an order the buyer already captured client-side."""
    return await _paypal_request("GET", f"/v2/checkout/orders/{order_id}", f"order {order_id}")


async def get_paypal_subscription(subscription_id: str) -> Dict[str, Any]:
    return await _paypal_request("GET", f"/v1/billing/subscriptions/{subscription_id}", f"subscription {subscription_id}")


def parse_paypal_capture(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Pull price, currency and payer out of a PayPal capture response."""
    try:
        capture = payload["purchase_units"][0]["payments"]["captures"][0]
        amount = capture["amount"]
    except (KeyError, IndexError, TypeError) as exc:
        raise HTTPException(status_code=502, detail="Unexpected PayPal capture payload") from exc

    payer = payload.get("payer") or {}
    name = payer.get("name") or {}
    full_name = " ".join(part for part in (name.get("given_name"), name.get("surname")) if part) or None
    return {
        "order_id": payload.get("id"),
        "status": payload.get("status") or capture.get("status"),
        "capture_status": capture.get("status"),
        "price": amount.get("value"),
        "currency": amount.get("currency_code", "USD"),
        "payer": {
            "id": payer.get("payer_id"),
            "name": full_name,
            "email": payer.get("email_address"),
        },
    }


async def _record_paypal_order(
    user_id: str,
    db: AsyncSession,
    order_id: str,
    fetch: Callable[[str], Awaitable[Dict[str, Any]]],
    expected_price: Optional[Any] = None,
) -> Dict[str, Any]:
    existing = await _get_payment("paypal", order_id, db)
    if existing:
        # already granted; PayPal would reject a second capture anyway
        return {
            "duplicate": True,
            "payment_id": existing.id,
            "credits_added": 0,
            "balance": await get_credit_balance(user_id, db),
        }

    payload = await fetch(order_id)
    if payload.get("status") != "COMPLETED":
        raise HTTPException(status_code=402, detail=f"PayPal order {order_id} is {payload.get('status')}")
    capture = parse_paypal_capture(payload)
    if capture["capture_status"] not in (None, "COMPLETED"):
        raise HTTPException(status_code=402, detail=f"PayPal order {order_id} is {capture['capture_status']}")
    if expected_price is not None and normalize_price(expected_price) != normalize_price(capture["price"]):
        logger.warning(
            "PayPal order %s paid %s but client claimed %s", order_id, capture["price"], expected_price
        )
        raise HTTPException(status_code=400, detail=f"Price does not match PayPal order {order_id}")

    return await record_one_time_purchase(
        user_id,
        db,
        provider="paypal",
        reference=order_id,
        price=capture["price"],
        currency=capture["currency"],
        payer=capture["payer"],
        payment_status=capture["status"],
    )


async def record_paypal_capture(user_id: str, db: AsyncSession, order_id: str) -> Dict[str, Any]:
    """Capture an approved order server-side and grant its package."""
    return await _record_paypal_order(user_id, db, order_id, capture_paypal_order)


async def record_paypal_payment(
    user_id: str,
    db: AsyncSession,
    order_id: str,
    expected_price: Optional[Any] = None,
) -> Dict[str, Any]:
    """Grant the package of an order captured by the PayPal buttons, priced by PayPal."""
    return await _record_paypal_order(user_id, db, order_id, get_paypal_order, expected_price)


async def activate_paypal_subscription(
    user_id: str,
    db: AsyncSession,
    *,
    subscription_id: str,
    membership: str,
    plan_type: str,
) -> Dict[str, Any]:
    """Verify an approved PayPal subscription against its billing plan, then open the record."""
    reference = f"subscription:{subscription_id}"
    membership = membership.strip().lower()
    if not await _get_payment("paypal", reference, db):
        expected_plan = settings.PAYPAL_PLAN_IDS.get(f"{membership.replace(' ', '_')}_{plan_type}")
        if not expected_plan:
            raise HTTPException(status_code=503, detail=f"No PayPal plan configured for {membership} {plan_type}")
        subscription = await get_paypal_subscription(subscription_id)
        if subscription.get("status") != "ACTIVE":
            raise HTTPException(
                status_code=402,
                detail=f"PayPal subscription {subscription_id} is {subscription.get('status')}",
            )
        if subscription.get("plan_id") != expected_plan:
            raise HTTPException(status_code=400, detail="Subscription plan does not match the requested membership")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    credits = subscription_credits(membership, offers=bool(user and user.offers))
    return await activate_subscription(
        user_id,
        db,
        provider="paypal",
        subscription_id=subscription_id,
        membership=membership,
        plan_type=plan_type,
        credits=credits,
        reference=reference,
    )


async def change_polar_plan(
    user_id: str,
    db: AsyncSession,
    *,
    subscription_id: str,
    product_key: str,
) -> Dict[str, Any]:
    """Move a Polar subscription to another product, then swap the credit record."""
    product = get_polar_product(product_key)
    if product.plan_type == PLAN_TYPE_ONE_TIME:
        raise HTTPException(status_code=400, detail="Cannot change a subscription to a one-time product")
    product_id = settings.POLAR_PRODUCT_IDS.get(product_key)
    if not settings.POLAR_ACCESS_TOKEN or not product_id:
        raise HTTPException(status_code=503, detail="Polar is not configured.")

    result = await db.execute(
        select(CreditRecord).where(
            CreditRecord.user_id == user_id,
            CreditRecord.subscription_id == subscription_id,
        )
    )
    if result.scalars().first() is None:
        raise HTTPException(status_code=404, detail="Subscription not found")

    async with httpx.AsyncClient(timeout=settings.PAYMENT_HTTP_TIMEOUT_SECONDS) as client:
        response = await client.patch(
            f"{settings.POLAR_API_BASE_URL}/v1/subscriptions/{subscription_id}",
            json={"product_id": product_id},
            headers={"Authorization": f"Bearer {settings.POLAR_ACCESS_TOKEN}"},
        )
    if response.status_code >= 400:
        logger.error("Polar plan change for %s failed: %s %s", subscription_id, response.status_code, response.text[:300])
        raise HTTPException(status_code=502, detail="Polar plan change failed")

    return await activate_subscription(
        user_id,
        db,
        provider="polar",
        subscription_id=subscription_id,
        membership=product.membership,
        plan_type=product.plan_type,
        credits=product.credits,
    )
