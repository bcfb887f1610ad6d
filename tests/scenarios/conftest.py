"""
Fixtures לבדיקות תרחיש מקצה לקצה.

מספק:
- שליחת webhook חתום / לא חתום דרך ה-API
- יצירת ניסיון תשלום דרך ה-API
- קריאת מצב DB (מלאי מוצר, הזמנה, ניסיונות)
- פקיעה מלאכותית של leases
"""
from datetime import timedelta
from typing import Optional

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.cas import compare_and_swap, fetch_fresh
from app.db.compat import utcnow
from app.db.models.order import Order
from app.db.models.payment_attempt import PaymentAttempt
from app.db.models.product import Product


# ============================================================================
# API
# ============================================================================

@pytest.fixture
def post_webhook(test_client, webhook_signer):
    """שליחת גוף webhook ל-API; signed=False שולח בלי X-Sign"""
    async def _post(body: bytes, *, signed: bool = True):
        headers = {"Content-Type": "application/json"}
        if signed:
            headers["X-Sign"] = webhook_signer.sign(body)
        return await test_client.post("/api/payments/webhook", content=body, headers=headers)

    return _post


@pytest.fixture
def create_attempt(test_client):
    """POST /api/payments/orders/{id}/attempts"""
    async def _create(order_id: str):
        return await test_client.post(f"/api/payments/orders/{order_id}/attempts")

    return _create


# ============================================================================
# מצב DB
# ============================================================================

@pytest.fixture
def stock_of(db_session: AsyncSession):
    async def _stock(product_id: str) -> int:
        return (await fetch_fresh(db_session, Product, product_id)).stock

    return _stock


@pytest.fixture
def load_order(db_session: AsyncSession):
    async def _load(order_id: str) -> Order:
        return await fetch_fresh(db_session, Order, order_id)

    return _load


@pytest.fixture
def load_attempts(db_session: AsyncSession):
    """כל הניסיונות של ההזמנה לפי מספר ניסיון"""
    async def _load(order_id: str) -> list[PaymentAttempt]:
        result = await db_session.execute(
            select(PaymentAttempt)
            .where(PaymentAttempt.order_id == order_id)
            .order_by(PaymentAttempt.attempt_number)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    return _load


@pytest.fixture
def expire_sweep_lease(db_session: AsyncSession):
    """מדמה פקיעת sweep lease של הזמנה (worker שקרס)"""
    async def _expire(order_id: str, ago: Optional[timedelta] = None) -> None:
        await compare_and_swap(
            db_session,
            Order,
            [Order.id == order_id],
            {"sweep_claim_expires_at": utcnow() - (ago or timedelta(seconds=1))},
        )
        await db_session.commit()

    return _expire
