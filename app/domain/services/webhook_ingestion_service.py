"""
Webhook Ingestion Service - קליטת webhook של ספק התשלומים

זרימה:
    חתימה חסרה/שגויה → rate limit (429) או אישור 200 עם לוג אבחון בלבד
    → פענוח JSON (לא תקין → 200)
    → event_key = sha256(raw) → insert (כפילות → applied_noop, deduped;
      ב-apply, כפילות של אירוע שלא הוחל ושה-lease שלו פג מוחלת מחדש)
    → לפי WEBHOOK_MODE: apply (claim + apply מיד), store (שמירה ל-consumer),
      drop (אישור בלי שמירה)

קלט פגום לצמיתות מאושר ב-200 כדי שהספק לא ישלח שוב.
תקלות DB (SQLAlchemyError) לא נבלעות — ה-route מחזיר 503 והספק ינסה שוב.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import InvalidPayloadError
from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.db.compat import utcnow, new_id
from app.db.models.webhook_event import AppliedResult, PaymentWebhookEvent
from app.domain.services.event_claim_service import EventClaimService
from app.domain.services.psp.key_provider import VerificationKeyProvider
from app.domain.services.psp.provider_factory import get_key_provider
from app.domain.services.psp.signature import verify_signature
from app.domain.services.rate_limit_service import RateLimitService
from app.domain.services.webhook_apply_service import (
    NormalizedWebhook,
    WebhookApplyService,
    normalize_webhook_payload,
)

logger = get_logger(__name__)

WEBHOOK_PROVIDER = "monobank"


@dataclass(frozen=True)
class IngestResult:
    ok: bool
    http_status: int = 200
    deduped: bool = False
    applied_result: Optional[str] = None
    event_id: Optional[str] = None
    retry_after: Optional[int] = None


def parse_webhook_payload(raw_body: bytes) -> Optional[dict[str, Any]]:
    """JSON object בלבד; BOM בתחילת הגוף מותר. כל דבר אחר → None."""
    try:
        text = raw_body.decode("utf-8").lstrip("\ufeff")
        parsed = json.loads(text)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


class WebhookIngestionService:
    """Signature gate, dedup and routing of inbound provider webhooks"""

    def __init__(
        self,
        db: AsyncSession,
        key_provider: Optional[VerificationKeyProvider] = None,
        mode: Optional[str] = None,
        worker_id: Optional[str] = None,
    ):
        self.db = db
        self._key_provider = key_provider
        self.mode = (mode or settings.WEBHOOK_MODE).strip().lower()
        self.worker_id = worker_id or f"webhook-{new_id()[:8]}"

    @property
    def key_provider(self) -> VerificationKeyProvider:
        if self._key_provider is None:
            self._key_provider = get_key_provider()
        return self._key_provider

    async def _rate_limited(self, kind: str, subject: str, meta: dict[str, Any]) -> Optional[IngestResult]:
        decision = await RateLimitService(self.db).enforce_rate_limit(
            f"webhook:{kind}:{subject}",
            settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
            settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
        )
        if decision.ok:
            return None

        log_payment_event(
            logger,
            logging.WARNING,
            PaymentLogCode.RATE_LIMITED,
            {**meta, "reason": kind, "retryAfter": decision.retry_after_seconds},
        )
        return IngestResult(ok=False, http_status=429, retry_after=decision.retry_after_seconds)

    async def ingest(self, raw_body: bytes, signature: Optional[str], subject: str) -> IngestResult:
        """
        קליטת גוף webhook גולמי.

        Args:
            raw_body: הבתים כפי שהתקבלו — החתימה מחושבת עליהם
            signature: ערך X-Sign
            subject: נושא ה-rate limit (לפי מקור הרשת)

        Returns:
            IngestResult — http_status הוא 200 או 429

        Raises:
            SQLAlchemyError: תקלת DB זמנית
        """
        signature = (signature or "").strip() or None
        raw_sha256 = hashlib.sha256(raw_body).hexdigest()
        meta: dict[str, Any] = {
            "provider": WEBHOOK_PROVIDER,
            "mode": self.mode,
            "rawSha256": raw_sha256,
            "rawBytesLen": len(raw_body),
            "hasSignature": signature is not None,
        }

        if signature is None:
            limited = await self._rate_limited("missing_sig", subject, meta)
            if limited is not None:
                return limited
            log_payment_event(logger, logging.WARNING, PaymentLogCode.SIG_MISSING, meta)
            return IngestResult(ok=True)

        if not await verify_signature(raw_body, signature, self.key_provider):
            limited = await self._rate_limited("invalid_sig", subject, meta)
            if limited is not None:
                return limited
            log_payment_event(logger, logging.WARNING, PaymentLogCode.SIG_INVALID, {**meta, "reason": "SIG_INVALID"})
            return IngestResult(ok=True)

        payload = parse_webhook_payload(raw_body)
        if payload is None:
            log_payment_event(
                logger, logging.WARNING, PaymentLogCode.INVALID_PAYLOAD, {**meta, "reason": "INVALID_JSON"}
            )
            return IngestResult(ok=True)

        if self.mode == "drop":
            log_payment_event(logger, logging.INFO, PaymentLogCode.DROP_MODE, meta)
            return IngestResult(ok=True, applied_result="dropped")

        return await self._store_and_route(payload, raw_sha256, meta)

    async def ingest_verified(self, payload: dict[str, Any], raw_body: bytes) -> IngestResult:
        """קליטת אירוע ממקור מהימן (שאילתת סטטוס ישירה מול הספק) — בלי בדיקת חתימה."""
        raw_sha256 = hashlib.sha256(raw_body).hexdigest()
        meta = {
            "provider": WEBHOOK_PROVIDER,
            "mode": self.mode,
            "rawSha256": raw_sha256,
            "rawBytesLen": len(raw_body),
            "source": "status_poll",
        }
        return await self._store_and_route(payload, raw_sha256, meta)

    async def _store_and_route(self, payload: dict[str, Any], raw_sha256: str, meta: dict[str, Any]) -> IngestResult:
        now = utcnow()
        normalized: Optional[NormalizedWebhook]
        try:
            normalized = normalize_webhook_payload(payload)
        except InvalidPayloadError:
            normalized = None

        event = PaymentWebhookEvent(
            id=new_id(),
            provider=WEBHOOK_PROVIDER,
            event_key=raw_sha256,
            raw_sha256=raw_sha256,
            raw_payload=payload,
            received_at=now,
        )
        if normalized is not None:
            event.invoice_id = normalized.invoice_id
            event.status = normalized.status
            event.amount = normalized.amount
            event.ccy = normalized.ccy
            event.reference = normalized.reference
            event.provider_modified_at = normalized.provider_modified_at
        else:
            # נשמר לביקורת וסגור מיד — אף worker לא יתפוס אותו
            event.applied_at = now
            event.applied_result = AppliedResult.REJECTED
            event.applied_error_code = "INVALID_PAYLOAD"
            event.applied_error_message = "invoiceId and status are required"

        event_id = event.id
        try:
            async with self.db.begin_nested():
                self.db.add(event)
                await self.db.flush()
        except IntegrityError:
            result = await self.db.execute(
                select(PaymentWebhookEvent.id, PaymentWebhookEvent.applied_at).where(
                    PaymentWebhookEvent.event_key == raw_sha256
                )
            )
            existing = result.one_or_none()
            await self.db.commit()
            existing_id = existing.id if existing is not None else None
            log_payment_event(
                logger,
                logging.INFO,
                PaymentLogCode.DEDUP,
                {**meta, "eventKey": raw_sha256, "eventId": existing_id, "deduped": True},
            )

            # ניסיון קודם נפל אחרי השמירה ולפני ה-apply — ה-retry של הספק משלים אותו
            if self.mode == "apply" and existing is not None and existing.applied_at is None:
                applied = await self._claim_and_apply(existing_id)
                if applied is not None:
                    return IngestResult(ok=True, deduped=True, applied_result=applied, event_id=existing_id)

            return IngestResult(
                ok=True,
                deduped=True,
                applied_result=AppliedResult.APPLIED_NOOP.value,
                event_id=existing_id,
            )

        await self.db.commit()
        meta = {**meta, "eventKey": raw_sha256, "eventId": event_id}

        if normalized is None:
            log_payment_event(
                logger, logging.WARNING, PaymentLogCode.INVALID_PAYLOAD, {**meta, "reason": "MISSING_FIELDS"}
            )
            return IngestResult(ok=True, applied_result=AppliedResult.REJECTED.value, event_id=event_id)

        meta["invoiceId"] = normalized.invoice_id
        if self.mode == "store":
            log_payment_event(logger, logging.INFO, PaymentLogCode.STORE_MODE, meta)
            return IngestResult(ok=True, applied_result="stored", event_id=event_id)

        applied = await self._claim_and_apply(event_id)
        return IngestResult(ok=True, applied_result=applied, event_id=event_id)

    async def _claim_and_apply(self, event_id: str) -> Optional[str]:
        """
        claim + apply inline.

        Returns:
            applied_result, או None אם האירוע כבר הוחל או מוחזק ב-lease חי
        """
        claimed = await EventClaimService(self.db).claim_event(event_id, self.worker_id)
        if claimed is None:
            # worker אחר כבר תפס את האירוע
            return None

        outcome = await WebhookApplyService(self.db, worker_id=self.worker_id).apply_event(claimed)
        logger.info(
            "Payment webhook processed",
            extra_data={
                "event_id": event_id,
                "applied_result": outcome.applied_result.value,
                "error_code": outcome.error_code,
            },
        )
        return outcome.applied_result.value
