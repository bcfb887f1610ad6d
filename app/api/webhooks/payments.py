"""
Payment Provider Webhook

נקודת כניסה לעדכוני סטטוס חשבונית מהספק. הגוף נקרא כבתים גולמיים —
החתימה (X-Sign) מחושבת על הבתים המדויקים ולכן אין כאן מודל pydantic.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_correlation_id, get_logger
from app.db.database import get_db
from app.domain.services.rate_limit_service import derive_rate_limit_subject
from app.domain.services.webhook_ingestion_service import WebhookIngestionService

logger = get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Sign"


@router.post(
    "/webhook",
    summary="Webhook - ספק תשלומים (עדכוני סטטוס חשבונית)",
    description=(
        "מקבל את הגוף הגולמי וכותרת X-Sign. קלט פגום לצמיתות מאושר ב-200; "
        "בקשות לא חתומות מוגבלות (429 + Retry-After); תקלת DB מחזירה 503 כדי שהספק ינסה שוב."
    ),
    responses={
        200: {"description": "האירוע אושר (כולל כפילויות וקלט פגום)"},
        429: {"description": "חריגה ממגבלת בקשות לא חתומות"},
        503: {"description": "DB לא זמין — הספק ישלח שוב"},
    },
)
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    raw_body = await request.body()
    subject = derive_rate_limit_subject(
        request.client.host if request.client else None,
        request.headers,
    )

    # SQLAlchemyError עולה ל-handler הגלובלי → 503
    result = await WebhookIngestionService(db).ingest(
        raw_body,
        request.headers.get(SIGNATURE_HEADER),
        subject,
    )

    headers = {"Cache-Control": "no-store", "X-Correlation-ID": get_correlation_id()}
    if result.http_status == 429:
        headers["Retry-After"] = str(result.retry_after or 1)
        return JSONResponse(
            status_code=429,
            content={"ok": False, "error": "Too many requests. Please try again later."},
            headers=headers,
        )

    return JSONResponse(
        status_code=result.http_status,
        content={
            "ok": result.ok,
            "deduped": result.deduped,
            "applied_result": result.applied_result,
            "event_id": result.event_id,
        },
        headers=headers,
    )
