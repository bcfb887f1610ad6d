"""
Admin Payment Endpoints — החזר מלא וביטול חשבונית שטרם שולמה.

מוגן ב-X-Admin-API-Key. שתי הפעולות idempotent לפי הזמנה: בקשה חוזרת
מחזירה את הפעולה הקיימת עם deduped=true ולא פונה שוב לספק.
"""
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.core.logging import get_correlation_id
from app.db.database import get_db
from app.domain.services.payment_cancel_service import PaymentCancelService
from app.domain.services.refund_service import RefundService

router = APIRouter()


@router.post(
    "/orders/{order_id}/refund",
    summary="החזר מלא של הזמנה ששולמה",
    description="409 אם ההזמנה לא ניתנת להחזר (details.reason), 503 אם הספק לא זמין",
)
async def refund_order(
    order_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await RefundService(db).request_full_refund(order_id, request_id=get_correlation_id())


@router.post(
    "/orders/{order_id}/cancel-payment",
    summary="ביטול חשבונית שטרם שולמה ושחרור המלאי",
    description="409 אם ההזמנה שולמה / הוחזרה או שביטול מקביל בתהליך, 503 אם הספק לא זמין",
)
async def cancel_order_payment(
    order_id: str,
    _: None = Depends(require_admin_api_key),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await PaymentCancelService(db).cancel_unpaid_payment(order_id, request_id=get_correlation_id())
