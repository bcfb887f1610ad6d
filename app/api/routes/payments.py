"""
Payment Attempt API Routes
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.database import get_db
from app.domain.services.attempt_lifecycle_service import AttemptLifecycleService

logger = get_logger(__name__)

router = APIRouter()


class AttemptResponse(BaseModel):
    """ניסיון תשלום פעיל והקישור לעמוד התשלום"""
    attempt_id: str
    invoice_id: str
    page_url: str


@router.post(
    "/orders/{order_id}/attempts",
    response_model=AttemptResponse,
    summary="יצירת ניסיון תשלום וחשבונית אצל הספק",
    description=(
        "אם כבר קיים ניסיון פעיל עם חשבונית — מוחזר הקיים. "
        "409 אם ניסיון אחר עדיין בטיסה או שמוצו הניסיונות; 503 אם הספק לא זמין "
        "(ההזמנה מבוטלת והמלאי משתחרר)."
    ),
)
async def create_payment_attempt(
    order_id: str,
    db: AsyncSession = Depends(get_db),
) -> AttemptResponse:
    result = await AttemptLifecycleService(db).create_attempt_and_remote_invoice(order_id)
    return AttemptResponse(**result)
