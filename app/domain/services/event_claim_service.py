"""
Event Claim Service - lease על אירועי webhook בין workers מקבילים

claim הוא UPDATE מותנה יחיד (app.db.cas) על שורה שלא הוחלה ושאין עליה
lease חי. worker שהפסיד במרוץ מקבל None. lease שפג (worker שקרס)
נתפס מחדש אוטומטית.
"""
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging import get_logger
from app.db.cas import claim_one, compare_and_swap, fetch_fresh
from app.db.compat import utcnow
from app.db.models.webhook_event import PaymentWebhookEvent

logger = get_logger(__name__)


def _eligible(now, provider: str) -> list:
    return [
        PaymentWebhookEvent.provider == provider,
        PaymentWebhookEvent.applied_at.is_(None),
        or_(
            PaymentWebhookEvent.claim_expires_at.is_(None),
            PaymentWebhookEvent.claim_expires_at < now,
        ),
    ]


class EventClaimService:
    """Claim/lease coordinator for stored webhook events"""

    def __init__(self, db: AsyncSession, ttl_seconds: Optional[int] = None):
        self.db = db
        self.ttl_seconds = ttl_seconds or settings.WEBHOOK_CLAIM_TTL_SECONDS

    def _claim_values(self, now, worker_id: str) -> dict:
        return {
            "claimed_at": now,
            "claim_expires_at": now + timedelta(seconds=self.ttl_seconds),
            "claimed_by": worker_id[:64],
        }

    async def claim_next(self, worker_id: str, provider: str = "monobank") -> Optional[PaymentWebhookEvent]:
        """
        claim של האירוע הזכאי הוותיק ביותר.

        סדר: provider_modified_at (NULL אחרון), received_at, id.

        Returns:
            האירוע שנתפס, או None אם אין זכאי / worker אחר ניצח
        """
        now = utcnow()
        row = await claim_one(
            self.db,
            PaymentWebhookEvent,
            eligible=_eligible(now, provider),
            order_by=[
                PaymentWebhookEvent.provider_modified_at.asc().nulls_last(),
                PaymentWebhookEvent.received_at.asc(),
                PaymentWebhookEvent.id.asc(),
            ],
            values=self._claim_values(now, worker_id),
        )
        await self.db.commit()

        if row is None:
            logger.debug("No webhook event to claim", extra_data={"worker_id": worker_id})
            return None

        logger.debug(
            "Webhook event claimed",
            extra_data={"event_id": row["id"], "worker_id": worker_id},
        )
        return await fetch_fresh(self.db, PaymentWebhookEvent, row["id"])

    async def claim_event(self, event_id: str, worker_id: str) -> Optional[PaymentWebhookEvent]:
        """claim של אירוע ספציפי (apply inline מיד אחרי השמירה)."""
        now = utcnow()
        event_row = await fetch_fresh(self.db, PaymentWebhookEvent, event_id)
        if event_row is None:
            return None

        row = await compare_and_swap(
            self.db,
            PaymentWebhookEvent,
            [PaymentWebhookEvent.id == event_id, *_eligible(now, event_row.provider)],
            self._claim_values(now, worker_id),
            returning=[PaymentWebhookEvent.id],
        )
        await self.db.commit()
        if row is None:
            return None
        return await fetch_fresh(self.db, PaymentWebhookEvent, event_id)
