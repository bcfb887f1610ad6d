"""
Payment Attempt Service - אחסון ומעברים של ניסיונות תשלום

כל מעבר סטטוס של ניסיון הוא compare-and-swap על הסטטוס הנוכחי.
השירות לא מבצע commit — הקורא (orchestrator / apply / janitor) מחליט
על גבולות הטרנזקציה.
"""
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import PaymentAttemptsExhaustedError
from app.db.cas import compare_and_swap, fetch_fresh
from app.db.compat import utcnow
from app.db.models.order import PaymentProvider
from app.db.models.payment_attempt import (
    PaymentAttempt,
    AttemptStatus,
    OPEN_ATTEMPT_STATUSES,
    build_attempt_idempotency_key,
)
from app.domain.services.provider_metadata import AttemptMetadata

_ERROR_MESSAGE_MAX = 500


class PaymentAttemptService:
    """CRUD ומעברי סטטוס לניסיונות תשלום של הזמנה"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        return await fetch_fresh(self.db, PaymentAttempt, attempt_id)

    async def get_open_attempt(
        self, order_id: str, provider: PaymentProvider = PaymentProvider.MONOBANK
    ) -> Optional[PaymentAttempt]:
        """הניסיון הפתוח (creating/active) של ההזמנה — לכל היותר אחד"""
        result = await self.db.execute(
            select(PaymentAttempt)
            .where(
                PaymentAttempt.order_id == order_id,
                PaymentAttempt.provider == provider,
                PaymentAttempt.status.in_(OPEN_ATTEMPT_STATUSES),
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_reference_or_invoice(
        self,
        reference: Optional[str],
        invoice_id: Optional[str],
        provider: PaymentProvider = PaymentProvider.MONOBANK,
    ) -> Optional[PaymentAttempt]:
        """
        איתור הניסיון של אירוע webhook.

        reference הוא מזהה הניסיון (נשלח לספק בעת יצירת החשבונית);
        אם לא נמצא — חיפוש לפי מזהה החשבונית.
        """
        if reference:
            attempt = await fetch_fresh(self.db, PaymentAttempt, reference)
            if attempt is not None and attempt.provider == provider:
                return attempt

        if not invoice_id:
            return None

        result = await self.db.execute(
            select(PaymentAttempt)
            .where(
                PaymentAttempt.provider == provider,
                PaymentAttempt.provider_payment_intent_id == invoice_id,
            )
            .order_by(PaymentAttempt.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_invoice_for_order(
        self,
        order_id: str,
        psp_charge_id: Optional[str] = None,
        provider: PaymentProvider = PaymentProvider.MONOBANK,
    ) -> tuple[Optional[str], Optional[str]]:
        """
        מזהה החשבונית של הזמנה — לפעולות אדמין (החזר / ביטול).

        סדר: psp_charge_id של ההזמנה, ניסיון succeeded, ניסיון פתוח.

        Returns:
            (invoice_id, attempt_id) — כל אחד מהם עשוי להיות None
        """
        direct = (psp_charge_id or "").strip()
        if direct:
            return direct, None

        fallback_attempt_id: Optional[str] = None
        for statuses in ((AttemptStatus.SUCCEEDED,), OPEN_ATTEMPT_STATUSES):
            result = await self.db.execute(
                select(PaymentAttempt)
                .where(
                    PaymentAttempt.order_id == order_id,
                    PaymentAttempt.provider == provider,
                    PaymentAttempt.status.in_(statuses),
                )
                .order_by(
                    PaymentAttempt.updated_at.desc(),
                    PaymentAttempt.created_at.desc(),
                    PaymentAttempt.attempt_number.desc(),
                )
                .limit(1)
                .execution_options(populate_existing=True)
            )
            attempt = result.scalar_one_or_none()
            if attempt is None:
                continue
            invoice_id = (attempt.provider_payment_intent_id or "").strip() or (
                AttemptMetadata.from_db(attempt.metadata_).invoice_id
            )
            if invoice_id:
                return invoice_id, attempt.id
            fallback_attempt_id = fallback_attempt_id or attempt.id

        return None, fallback_attempt_id

    async def max_attempt_number(self, order_id: str, provider: PaymentProvider) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.max(PaymentAttempt.attempt_number), 0)).where(
                PaymentAttempt.order_id == order_id,
                PaymentAttempt.provider == provider,
            )
        )
        return int(result.scalar_one())

    async def create_creating_attempt(
        self,
        order_id: str,
        provider: PaymentProvider,
        expected_amount_minor: int,
        currency: str,
        max_attempts: int,
        lease_seconds: int,
    ) -> PaymentAttempt:
        """
        יצירת ניסיון חדש בסטטוס creating עם lease "בטיסה".

        Raises:
            PaymentAttemptsExhaustedError: חריגה ממספר הניסיונות המותר
            IntegrityError: ניסיון פתוח אחר כבר קיים (אינדקס ייחודי חלקי)
        """
        next_number = await self.max_attempt_number(order_id, provider) + 1
        if next_number > max_attempts:
            raise PaymentAttemptsExhaustedError(order_id, max_attempts)

        now = utcnow()
        attempt = PaymentAttempt(
            order_id=order_id,
            provider=provider,
            status=AttemptStatus.CREATING,
            attempt_number=next_number,
            currency=currency,
            expected_amount_minor=expected_amount_minor,
            idempotency_key=build_attempt_idempotency_key(provider, order_id, next_number),
            metadata_=AttemptMetadata().to_json(),
            inflight_until=now + timedelta(seconds=lease_seconds),
            created_at=now,
            updated_at=now,
        )
        self.db.add(attempt)
        await self.db.flush()
        return attempt

    async def activate_with_invoice(self, attempt_id: str, invoice_id: str, page_url: str) -> bool:
        """creating → active עם מזהה החשבונית; מחזיר False אם הניסיון כבר לא creating"""
        attempt = await self.get(attempt_id)
        if attempt is None:
            return False
        meta = AttemptMetadata.from_db(attempt.metadata_).merged(invoice_id=invoice_id, page_url=page_url)
        row = await compare_and_swap(
            self.db,
            PaymentAttempt,
            [PaymentAttempt.id == attempt_id, PaymentAttempt.status == AttemptStatus.CREATING],
            {
                "status": AttemptStatus.ACTIVE,
                "provider_payment_intent_id": invoice_id,
                "metadata": meta.to_json(),
                "inflight_until": None,
                "updated_at": utcnow(),
            },
            returning=[PaymentAttempt.id],
        )
        return row is not None

    async def mark_failed(
        self,
        attempt_id: str,
        error_code: str,
        error_message: Optional[str] = None,
        *,
        from_statuses: Sequence[AttemptStatus] = OPEN_ATTEMPT_STATUSES,
        provider_modified_at: Optional[datetime] = None,
        metadata_changes: Optional[dict[str, Any]] = None,
    ) -> bool:
        """ניסיון פתוח → failed. מחזיר False אם הניסיון כבר לא באחד מ-from_statuses"""
        return await self._finalize(
            attempt_id,
            AttemptStatus.FAILED,
            from_statuses,
            error_code=error_code,
            error_message=error_message,
            provider_modified_at=provider_modified_at,
            metadata_changes=metadata_changes,
        )

    async def mark_canceled(
        self,
        attempt_id: str,
        error_code: Optional[str],
        *,
        from_statuses: Sequence[AttemptStatus] = (AttemptStatus.SUCCEEDED, *OPEN_ATTEMPT_STATUSES),
        provider_modified_at: Optional[datetime] = None,
    ) -> bool:
        return await self._finalize(
            attempt_id,
            AttemptStatus.CANCELED,
            from_statuses,
            error_code=error_code,
            provider_modified_at=provider_modified_at,
        )

    async def mark_succeeded(
        self,
        attempt_id: str,
        provider_modified_at: Optional[datetime] = None,
        *,
        from_statuses: Sequence[AttemptStatus] = OPEN_ATTEMPT_STATUSES,
    ) -> bool:
        return await self._finalize(
            attempt_id,
            AttemptStatus.SUCCEEDED,
            from_statuses,
            provider_modified_at=provider_modified_at,
            clear_errors=True,
        )

    async def touch_provider_modified_at(self, attempt_id: str, provider_modified_at: Optional[datetime]) -> None:
        """רישום זמן הספק בלי לשנות סטטוס (processing/created); לעולם לא אחורה"""
        if provider_modified_at is None:
            return
        await compare_and_swap(
            self.db,
            PaymentAttempt,
            [
                PaymentAttempt.id == attempt_id,
                or_(
                    PaymentAttempt.provider_modified_at.is_(None),
                    PaymentAttempt.provider_modified_at < provider_modified_at,
                ),
            ],
            {"provider_modified_at": provider_modified_at, "updated_at": utcnow()},
            returning=[PaymentAttempt.id],
        )

    async def _finalize(
        self,
        attempt_id: str,
        to: AttemptStatus,
        from_statuses: Sequence[AttemptStatus],
        *,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        provider_modified_at: Optional[datetime] = None,
        metadata_changes: Optional[dict[str, Any]] = None,
        clear_errors: bool = False,
    ) -> bool:
        now = utcnow()
        values: dict[str, Any] = {
            "status": to,
            "finalized_at": now,
            "updated_at": now,
            "inflight_until": None,
        }
        if clear_errors:
            values["last_error_code"] = None
            values["last_error_message"] = None
        if error_code is not None:
            values["last_error_code"] = error_code[:64]
        if error_message is not None:
            values["last_error_message"] = error_message[:_ERROR_MESSAGE_MAX]
        if provider_modified_at is not None:
            # לעולם לא מזיזים את זמן הספק אחורה; NULL נדרס
            values["provider_modified_at"] = case(
                (PaymentAttempt.provider_modified_at > provider_modified_at, PaymentAttempt.provider_modified_at),
                else_=provider_modified_at,
            )
        if metadata_changes:
            attempt = await self.get(attempt_id)
            if attempt is None:
                return False
            meta = AttemptMetadata.from_db(attempt.metadata_).merged(**metadata_changes)
            values["metadata"] = meta.to_json()

        row = await compare_and_swap(
            self.db,
            PaymentAttempt,
            [PaymentAttempt.id == attempt_id, PaymentAttempt.status.in_(list(from_statuses))],
            values,
            returning=[PaymentAttempt.id],
        )
        return row is not None
