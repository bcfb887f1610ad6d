"""
Janitor Service - עבודות יישוב (reconciliation) של תשלומים

- job1: ניסיונות פתוחים עם חשבונית שלא התקדמו — שאילתת סטטוס מהספק והחלה
- job2: ניסיונות creating בלי חשבונית שה-TTL שלהם פג — ביטול ההזמנה ושחרור מלאי
- job3: החלת אירועים שמורים (WEBHOOK_MODE=store) בסדר קנוני
- job4: דוח needs_review — קריאה בלבד

כל job מחזיר {processed, applied, noop, failed}; dry_run מחזיר את מספר
המועמדים ב-processed בלי לשנות דבר. ריצה בלי מועמדים היא noop.
"""
import json
import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import JanitorModeError
from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.db.cas import claim_batch, compare_and_swap
from app.db.compat import utcnow, new_id
from app.db.models.order import Order, OrderStatus, PaymentProvider, PaymentStatus
from app.db.models.payment_attempt import AttemptStatus, OPEN_ATTEMPT_STATUSES, PaymentAttempt
from app.db.models.webhook_event import AppliedResult, PaymentWebhookEvent
from app.domain.services.event_claim_service import EventClaimService
from app.domain.services.psp.base_provider import BasePaymentGateway
from app.domain.services.psp.provider_factory import get_payment_gateway
from app.domain.services.restock_service import RestockReason, RestockService
from app.domain.services.webhook_apply_service import WebhookApplyService
from app.domain.services.webhook_ingestion_service import WebhookIngestionService

logger = get_logger(__name__)

JANITOR_JOBS = ("job1", "job2", "job3", "job4")

GRACE_SECONDS_MAX = 24 * 60 * 60
TTL_SECONDS_MAX = 24 * 60 * 60
LEASE_SECONDS_MIN = 15
LEASE_SECONDS_MAX = 30 * 60
LIMIT_MIN = 1
LIMIT_MAX = 500
NEEDS_REVIEW_AGE_HOURS_MAX = 7 * 24

JOB2_ORDER_FAILURE_CODE = "PSP_UNAVAILABLE"
JOB2_ORDER_FAILURE_MESSAGE = "Invoice was never created for the payment attempt."
JOB2_ATTEMPT_ERROR_CODE = "invoice_missing"
JOB2_ATTEMPT_ERROR_MESSAGE = "Creating attempt expired without a provider invoice."
JOB3_EVENT_ERROR_CODE = "JANITOR_JOB3_APPLY_FAILED"

APPLIED_RESULTS = (AppliedResult.APPLIED, AppliedResult.APPLIED_WITH_ISSUE)
REVIEW_RESULTS = (AppliedResult.NEEDS_REVIEW, AppliedResult.APPLIED_WITH_ISSUE)


def _clamp_int(value: Any, low: int, high: int, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    return max(low, min(high, number))


def _empty_stats() -> dict[str, int]:
    return {"processed": 0, "applied": 0, "noop": 0, "failed": 0}


def _lease_free(now):
    return or_(PaymentAttempt.janitor_claimed_until.is_(None), PaymentAttempt.janitor_claimed_until < now)


def build_status_payload(invoice_id: str, status: str, raw: Any) -> dict[str, Any]:
    """payload בפורמט webhook מתוך תשובת invoice/status"""
    base = dict(raw) if isinstance(raw, dict) else {}
    return {**base, "invoiceId": invoice_id, "status": status}


def canonical_event_order(events: list[PaymentWebhookEvent]) -> list[PaymentWebhookEvent]:
    """
    קיבוץ לפי חשבונית (או ניסיון), מיון בתוך כל קבוצה לפי
    provider_modified_at (NULL אחרון), received_at, id — והקבוצות לפי הראשון בכל אחת.
    """

    def group_key(event: PaymentWebhookEvent) -> str:
        if event.invoice_id:
            return f"invoice:{event.invoice_id}"
        if event.attempt_id:
            return f"attempt:{event.attempt_id}"
        return f"event:{event.id}"

    def sort_key(event: PaymentWebhookEvent):
        pma = event.provider_modified_at
        return (pma is None, pma or event.received_at, event.received_at, event.id)

    groups: dict[str, list[PaymentWebhookEvent]] = {}
    for event in events:
        groups.setdefault(group_key(event), []).append(event)

    ordered_groups = [sorted(group, key=sort_key) for group in groups.values()]
    ordered_groups.sort(key=lambda group: sort_key(group[0]))
    return [event for group in ordered_groups for event in group]


class JanitorService:
    """Payment reconciliation jobs"""

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[BasePaymentGateway] = None,
        webhook_mode: Optional[str] = None,
    ):
        self.db = db
        self._gateway = gateway
        self.webhook_mode = (webhook_mode or settings.WEBHOOK_MODE).strip().lower()
        self.restock = RestockService(db)

    @property
    def gateway(self) -> BasePaymentGateway:
        if self._gateway is None:
            self._gateway = get_payment_gateway()
        return self._gateway

    async def run(self, job: str, *, dry_run: bool = False, limit: Optional[int] = None) -> dict[str, Any]:
        """
        הרצת job לפי שם.

        Raises:
            ValueError: שם job לא מוכר
            JanitorModeError: job3 כש-WEBHOOK_MODE אינו store
        """
        limit = _clamp_int(limit if limit is not None else settings.JANITOR_DEFAULT_LIMIT, LIMIT_MIN, LIMIT_MAX, 50)
        handlers = {
            "job1": self.reconcile_stale_active_attempts,
            "job2": self.fail_stale_creating_attempts,
            "job3": self.apply_stored_events,
            "job4": self.needs_review_report,
        }
        handler = handlers.get(job)
        if handler is None:
            raise ValueError(f"Unknown janitor job: {job}")

        run_id = new_id()
        result = await handler(run_id=run_id, dry_run=dry_run, limit=limit)
        log_payment_event(
            logger,
            logging.INFO,
            PaymentLogCode.JANITOR_RUN,
            {
                "job": job,
                "runId": run_id,
                "dryRun": dry_run,
                "limit": limit,
                **{k: v for k, v in result.items() if k != "report"},
            },
        )
        return result

    async def _release_attempt_lease(self, attempt_id: str, run_id: str) -> None:
        try:
            await compare_and_swap(
                self.db,
                PaymentAttempt,
                [PaymentAttempt.id == attempt_id, PaymentAttempt.janitor_claimed_by == run_id],
                {"janitor_claimed_until": None, "janitor_claimed_by": None, "updated_at": PaymentAttempt.updated_at},
                returning=[PaymentAttempt.id],
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.warning(
                "Failed to release janitor lease",
                extra_data={"attempt_id": attempt_id, "run_id": run_id},
                exc_info=True,
            )

    # ── job1 ──

    def _job1_conditions(self, now, grace_seconds: int) -> list:
        return [
            PaymentAttempt.provider == PaymentProvider.MONOBANK,
            PaymentAttempt.status.in_(OPEN_ATTEMPT_STATUSES),
            PaymentAttempt.provider_payment_intent_id.is_not(None),
            PaymentAttempt.updated_at < now - timedelta(seconds=grace_seconds),
            _lease_free(now),
        ]

    async def reconcile_stale_active_attempts(self, *, run_id: str, dry_run: bool, limit: int) -> dict[str, Any]:
        """ניסיונות active עם חשבונית שלא עודכנו מעבר ל-grace — יישוב מול invoice/status"""
        grace_seconds = _clamp_int(settings.JANITOR_ACTIVE_GRACE_SECONDS, 0, GRACE_SECONDS_MAX, 900)
        lease_seconds = _clamp_int(settings.JANITOR_LEASE_SECONDS, LEASE_SECONDS_MIN, LEASE_SECONDS_MAX, 120)
        now = utcnow()
        stats = _empty_stats()

        if dry_run:
            stats["processed"] = await self._count_attempts(self._job1_conditions(now, grace_seconds), limit)
            return stats

        # updated_at נשאר כמו שהוא (ולא onupdate) — אחרת ה-grace היה מתאפס בכל ריצה
        claimed = await claim_batch(
            self.db,
            PaymentAttempt,
            eligible=self._job1_conditions(now, grace_seconds),
            order_by=[PaymentAttempt.updated_at.asc()],
            limit=limit,
            values={
                "janitor_claimed_until": now + timedelta(seconds=lease_seconds),
                "janitor_claimed_by": run_id,
                "updated_at": PaymentAttempt.updated_at,
            },
        )
        await self.db.commit()

        ingestion = WebhookIngestionService(self.db, mode="apply", worker_id=f"janitor-{run_id[:8]}")
        for row in claimed:
            stats["processed"] += 1
            attempt_id, order_id = row["id"], row["order_id"]
            invoice_id = (row["provider_payment_intent_id"] or "").strip()
            try:
                status = await self.gateway.get_invoice_status(invoice_id)
                payload = build_status_payload(status.invoice_id, status.status, status.raw)
                raw_body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
                result = await ingestion.ingest_verified(payload, raw_body)
                if result.applied_result in {r.value for r in APPLIED_RESULTS}:
                    stats["applied"] += 1
                    logger.info(
                        "Stale attempt reconciled from provider status",
                        extra_data={
                            "attempt_id": attempt_id,
                            "order_id": order_id,
                            "invoice_id": invoice_id,
                            "applied_result": result.applied_result,
                        },
                    )
                else:
                    stats["noop"] += 1
            except Exception:
                await self.db.rollback()
                stats["failed"] += 1
                logger.error(
                    "Janitor job1 attempt failed",
                    extra_data={"attempt_id": attempt_id, "order_id": order_id, "run_id": run_id},
                    exc_info=True,
                )
            finally:
                await self._release_attempt_lease(attempt_id, run_id)
        return stats

    # ── job2 ──

    def _job2_conditions(self, now, ttl_seconds: int) -> list:
        return [
            PaymentAttempt.provider == PaymentProvider.MONOBANK,
            PaymentAttempt.status == AttemptStatus.CREATING,
            PaymentAttempt.provider_payment_intent_id.is_(None),
            PaymentAttempt.created_at < now - timedelta(seconds=ttl_seconds),
            or_(PaymentAttempt.inflight_until.is_(None), PaymentAttempt.inflight_until < now),
            _lease_free(now),
            exists().where(
                and_(
                    Order.id == PaymentAttempt.order_id,
                    Order.payment_provider == PaymentProvider.MONOBANK,
                    Order.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.REQUIRES_PAYMENT]),
                    Order.status.not_in([OrderStatus.PAID, OrderStatus.CANCELED]),
                )
            ),
        ]

    async def fail_stale_creating_attempts(self, *, run_id: str, dry_run: bool, limit: int) -> dict[str, Any]:
        """ניסיונות creating בלי חשבונית שה-TTL שלהם פג — ההזמנה מבוטלת והמלאי משתחרר"""
        ttl_seconds = _clamp_int(settings.JANITOR_CREATING_TTL_SECONDS, 0, TTL_SECONDS_MAX, 120)
        lease_seconds = _clamp_int(settings.JANITOR_LEASE_SECONDS, LEASE_SECONDS_MIN, LEASE_SECONDS_MAX, 120)
        now = utcnow()
        stats = _empty_stats()

        if dry_run:
            stats["processed"] = await self._count_attempts(self._job2_conditions(now, ttl_seconds), limit)
            return stats

        claimed = await claim_batch(
            self.db,
            PaymentAttempt,
            eligible=self._job2_conditions(now, ttl_seconds),
            order_by=[PaymentAttempt.created_at.asc()],
            limit=limit,
            values={
                "janitor_claimed_until": now + timedelta(seconds=lease_seconds),
                "janitor_claimed_by": run_id,
                "updated_at": PaymentAttempt.updated_at,
            },
        )
        await self.db.commit()

        for row in claimed:
            stats["processed"] += 1
            attempt_id, order_id = row["id"], row["order_id"]
            try:
                canceled = await self._cancel_order_and_fail_creating(attempt_id, order_id, run_id)
                if not canceled:
                    stats["noop"] += 1
                    continue
                await self.restock.restock_order(order_id, reason=RestockReason.CANCELED, worker_id="monobank")
                stats["applied"] += 1
                logger.info(
                    "Expired creating attempt canceled",
                    extra_data={"attempt_id": attempt_id, "order_id": order_id, "run_id": run_id},
                )
            except Exception:
                await self.db.rollback()
                stats["failed"] += 1
                logger.error(
                    "Janitor job2 attempt failed",
                    extra_data={"attempt_id": attempt_id, "order_id": order_id, "run_id": run_id},
                    exc_info=True,
                )
            finally:
                await self._release_attempt_lease(attempt_id, run_id)
        return stats

    async def _cancel_order_and_fail_creating(self, attempt_id: str, order_id: str, run_id: str) -> bool:
        """ביטול ההזמנה וכישלון הניסיון באותה טרנזקציה — שניהם או אף אחד"""
        now = utcnow()
        order_row = await compare_and_swap(
            self.db,
            Order,
            [
                Order.id == order_id,
                Order.payment_provider == PaymentProvider.MONOBANK,
                Order.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.REQUIRES_PAYMENT]),
                Order.status.not_in([OrderStatus.PAID, OrderStatus.CANCELED]),
            ],
            {
                "status": OrderStatus.CANCELED,
                "failure_code": func.coalesce(Order.failure_code, JOB2_ORDER_FAILURE_CODE),
                "failure_message": func.coalesce(Order.failure_message, JOB2_ORDER_FAILURE_MESSAGE),
                "updated_at": now,
            },
            returning=[Order.id],
        )
        attempt_row = None
        if order_row is not None:
            attempt_row = await compare_and_swap(
                self.db,
                PaymentAttempt,
                [
                    PaymentAttempt.id == attempt_id,
                    PaymentAttempt.status == AttemptStatus.CREATING,
                    PaymentAttempt.provider_payment_intent_id.is_(None),
                    PaymentAttempt.janitor_claimed_by == run_id,
                ],
                {
                    "status": AttemptStatus.FAILED,
                    "finalized_at": now,
                    "updated_at": now,
                    "inflight_until": None,
                    "last_error_code": JOB2_ATTEMPT_ERROR_CODE,
                    "last_error_message": JOB2_ATTEMPT_ERROR_MESSAGE,
                },
                returning=[PaymentAttempt.id],
            )

        if order_row is None or attempt_row is None:
            await self.db.rollback()
            return False
        await self.db.commit()
        return True

    async def _count_attempts(self, conditions: list, limit: int) -> int:
        subquery = select(PaymentAttempt.id).where(*conditions).limit(limit).subquery()
        result = await self.db.execute(select(func.count()).select_from(subquery))
        return int(result.scalar_one())

    # ── job3 ──

    async def apply_stored_events(self, *, run_id: str, dry_run: bool, limit: int) -> dict[str, Any]:
        """
        החלת אירועים שנשמרו במצב store.

        Raises:
            JanitorModeError: WEBHOOK_MODE אינו store
        """
        if self.webhook_mode != "store":
            raise JanitorModeError("job3", "store", self.webhook_mode)

        stats = _empty_stats()
        now = utcnow()
        if dry_run:
            candidates = (
                select(PaymentWebhookEvent.id)
                .where(
                    PaymentWebhookEvent.provider == "monobank",
                    PaymentWebhookEvent.applied_at.is_(None),
                    or_(
                        PaymentWebhookEvent.claim_expires_at.is_(None),
                        PaymentWebhookEvent.claim_expires_at < now,
                    ),
                )
                .limit(limit)
                .subquery()
            )
            result = await self.db.execute(select(func.count()).select_from(candidates))
            stats["processed"] = int(result.scalar_one())
            return stats

        worker_id = f"janitor-{run_id[:8]}"
        claims = EventClaimService(self.db)
        claimed: list[PaymentWebhookEvent] = []
        for _ in range(limit):
            event = await claims.claim_next(worker_id)
            if event is None:
                break
            claimed.append(event)

        applier = WebhookApplyService(self.db, worker_id=worker_id)
        for event in canonical_event_order(claimed):
            stats["processed"] += 1
            event_id = event.id
            try:
                outcome = await applier.apply_event(event)
                if outcome.applied_result in APPLIED_RESULTS:
                    stats["applied"] += 1
                else:
                    stats["noop"] += 1
            except Exception as e:
                await self.db.rollback()
                stats["failed"] += 1
                logger.error(
                    "Janitor job3 event failed",
                    extra_data={"event_id": event_id, "run_id": run_id},
                    exc_info=True,
                )
                await self._mark_event_failed(event_id, worker_id, str(e))
        return stats

    async def _mark_event_failed(self, event_id: str, worker_id: str, message: str) -> None:
        try:
            await compare_and_swap(
                self.db,
                PaymentWebhookEvent,
                [
                    PaymentWebhookEvent.id == event_id,
                    PaymentWebhookEvent.claimed_by == worker_id,
                    PaymentWebhookEvent.applied_at.is_(None),
                ],
                {
                    "applied_at": utcnow(),
                    "applied_result": AppliedResult.APPLIED_WITH_ISSUE,
                    "applied_error_code": func.coalesce(PaymentWebhookEvent.applied_error_code, JOB3_EVENT_ERROR_CODE),
                    "applied_error_message": func.coalesce(
                        PaymentWebhookEvent.applied_error_message, message[:500] or "apply failed"
                    ),
                },
                returning=[PaymentWebhookEvent.id],
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.warning(
                "Failed to mark stored event failed",
                extra_data={"event_id": event_id},
                exc_info=True,
            )

    # ── job4 ──

    async def needs_review_report(self, *, run_id: str, dry_run: bool, limit: int) -> dict[str, Any]:
        """דוח אירועים שדורשים בדיקה ידנית. לא משנה דבר — גם לא ב-dry_run=False."""
        age_hours = _clamp_int(settings.JANITOR_NEEDS_REVIEW_AGE_HOURS, 0, NEEDS_REVIEW_AGE_HOURS_MAX, 24)
        now = utcnow()
        result = await self.db.execute(
            select(PaymentWebhookEvent.received_at, PaymentWebhookEvent.applied_error_code)
            .where(
                PaymentWebhookEvent.provider == "monobank",
                PaymentWebhookEvent.applied_result.in_(REVIEW_RESULTS),
                PaymentWebhookEvent.received_at < now - timedelta(hours=age_hours),
            )
            .order_by(PaymentWebhookEvent.received_at.asc())
            .limit(limit)
        )
        rows = result.all()

        oldest_age_minutes = None
        if rows:
            oldest_age_minutes = max(0, int((now - rows[0].received_at).total_seconds() // 60))

        reasons = Counter(
            row.applied_error_code.strip() for row in rows if row.applied_error_code and row.applied_error_code.strip()
        )
        top_reasons = [
            {"reason": reason, "count": count}
            for reason, count in sorted(reasons.items(), key=lambda item: (-item[1], item[0]))[:3]
        ]

        report = {"count": len(rows), "oldestAgeMinutes": oldest_age_minutes, "topReasons": top_reasons}
        log_payment_event(
            logger,
            logging.INFO,
            PaymentLogCode.JANITOR_RUN,
            {
                "job": "job4",
                "runId": run_id,
                "count": report["count"],
                "oldestAgeMinutes": oldest_age_minutes,
                "limit": limit,
            },
        )
        return {**_empty_stats(), "report": report}
