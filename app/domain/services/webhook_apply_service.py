"""
Webhook Apply Service - החלת אירוע ספק על ניסיון התשלום וההזמנה

האירוע כבר נתפס (claim) ע"י ה-worker. כל ההחלה — מעבר המצב, עדכון ההזמנה
והניסיון ושמירת התוצאה על האירוע — רצה בטרנזקציה אחת. שחרור המלאי
(restock) רץ אחרי ה-commit בטרנזקציות משלו; כשל בו מסמן את האירוע
applied_with_issue / RESTOCK_FAILED וההזמנה נשארת ב-release_pending.

סדר ההחלטות:
1. איתור ניסיון (reference / invoiceId) והזמנה — אחרת unmatched
2. אירוע ישן מ-provider_modified_at השמור → applied_noop / OUT_OF_ORDER
3. אי-התאמת סכום/מטבע (success) → needs_review
4. הזמנה ששולמה / needs_review → noop
5. success על הזמנה failed/refunded → needs_review
6. success → paid
7. processing/created → noop (נרשם הזמן)
8. failure/expired/reversed → failed / refunded + שחרור מלאי;
   reversed סוגר גם החזר אדמין פתוח (payment_refunds → success)
9. סטטוס לא מוכר → applied_noop / UNKNOWN_STATUS
"""
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InvalidPayloadError
from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.db.cas import compare_and_swap, fetch_fresh
from app.db.compat import utcnow
from app.db.models.order import Order, OrderStatus, PaymentProvider, PaymentStatus
from app.db.models.payment_attempt import AttemptStatus, OPEN_ATTEMPT_STATUSES, PaymentAttempt
from app.db.models.psp_operation import PaymentRefund, PspOperationStatus
from app.db.models.webhook_event import AppliedResult, PaymentWebhookEvent
from app.domain.services.payment_attempt_service import PaymentAttemptService
from app.domain.services.payment_state_service import PaymentStateService
from app.domain.services.provider_metadata import (
    InvoiceSnapshot,
    OrderPspMetadata,
    PspEvent,
    PspEventKind,
)
from app.domain.services.psp.monobank_provider import MONO_CCY, MONO_CURRENCY
from app.domain.services.restock_service import RestockReason, RestockService
from app.state_machine.payment_states import TransitionRejectReason, TransitionSource

logger = get_logger(__name__)

SUCCESS_STATUSES = frozenset({"success"})
PENDING_STATUSES = frozenset({"processing", "created"})
FAILURE_STATUSES = frozenset({"failure", "expired", "reversed"})

# סדר עדיפות — השדה הראשון שקיים קובע
TIMESTAMP_KEYS = (
    "modifiedDate",
    "modifiedAt",
    "updatedAt",
    "createdDate",
    "createdAt",
    "time",
    "timestamp",
)

# מתחת לסף — שניות; מעליו — מילישניות
_EPOCH_MILLIS_THRESHOLD = 1e11


@dataclass(frozen=True)
class NormalizedWebhook:
    invoice_id: str
    status: str
    amount: Optional[int] = None
    ccy: Optional[int] = None
    reference: Optional[str] = None
    provider_modified_at: Optional[datetime] = None


@dataclass(frozen=True)
class ApplyOutcome:
    applied_result: AppliedResult
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    attempt_id: Optional[str] = None
    order_id: Optional[str] = None
    restock_reason: Optional[RestockReason] = None
    rollback: bool = False


def parse_provider_timestamp(value: Any) -> Optional[datetime]:
    """
    זמן שינוי אצל הספק → datetime נאיבי ב-UTC.

    מספר (או מחרוזת מספרית) < 1e11 הוא שניות, אחרת מילישניות.
    מחרוזת ISO-8601 מפוענחת; כל ערך אחר → None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed

    if isinstance(value, (int, float)):
        if value != value or value <= 0:
            return None
        seconds = value if value < _EPOCH_MILLIS_THRESHOLD else value / 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _optional_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def extract_provider_timestamp(payload: Mapping[str, Any]) -> Optional[datetime]:
    for key in TIMESTAMP_KEYS:
        if key in payload and payload[key] is not None:
            return parse_provider_timestamp(payload[key])
    return None


def normalize_webhook_payload(payload: Mapping[str, Any]) -> NormalizedWebhook:
    """
    נרמול גוף ה-webhook.

    Raises:
        InvalidPayloadError: invoiceId או status חסרים
    """
    invoice_id = _optional_str(payload.get("invoiceId"))
    status = _optional_str(payload.get("status"))
    if not invoice_id or not status:
        raise InvalidPayloadError(
            "Webhook payload requires invoiceId and status",
            details={"has_invoice_id": bool(invoice_id), "has_status": bool(status)},
        )

    return NormalizedWebhook(
        invoice_id=invoice_id,
        status=status.lower(),
        amount=_optional_int(payload.get("amount")),
        ccy=_optional_int(payload.get("ccy")),
        reference=_optional_str(payload.get("reference")),
        provider_modified_at=extract_provider_timestamp(payload),
    )


def _looks_like_attempt_id(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _mismatch_reason(normalized: NormalizedWebhook, order: Order, attempt: PaymentAttempt) -> Optional[str]:
    if (order.currency or "").upper() != MONO_CURRENCY:
        return "order_currency_mismatch"
    if normalized.ccy is not None and normalized.ccy != MONO_CCY:
        return "payload_currency_mismatch"

    expected = attempt.expected_amount_minor
    if expected is None:
        expected = order.total_amount_minor
    if normalized.amount is not None and normalized.amount != expected:
        return "amount_mismatch"
    if expected != order.total_amount_minor:
        return "expected_amount_mismatch"
    return None


class WebhookApplyService:
    """Applies one claimed provider event to its attempt and order"""

    def __init__(self, db: AsyncSession, worker_id: str = "webhook"):
        self.db = db
        self.worker_id = worker_id
        self.attempts = PaymentAttemptService(db)
        self.payment_state = PaymentStateService(db)
        self.restock = RestockService(db)

    async def apply_event(self, event: PaymentWebhookEvent) -> ApplyOutcome:
        """
        החלת אירוע שנתפס ושמירת התוצאה עליו.

        Returns:
            ApplyOutcome — התוצאה כפי שנשמרה על שורת האירוע

        Raises:
            SQLAlchemyError: תקלת DB זמנית — ה-lease יפוג והאירוע ייתפס שוב
        """
        # rollback מבטל את האובייקט — שומרים ערכים מראש
        event_id = event.id
        if not event.invoice_id or not event.status:
            normalized = None
        else:
            normalized = NormalizedWebhook(
                invoice_id=event.invoice_id,
                status=event.status,
                amount=event.amount,
                ccy=event.ccy,
                reference=event.reference,
                provider_modified_at=event.provider_modified_at,
            )

        if normalized is None:
            outcome = ApplyOutcome(
                applied_result=AppliedResult.REJECTED,
                error_code="INVALID_PAYLOAD",
                error_message="invoiceId and status are required",
            )
        else:
            outcome = await self._decide(event_id, normalized)

        if outcome.rollback:
            await self.db.rollback()
        await self._persist_outcome(event_id, outcome)
        await self.db.commit()

        if outcome.restock_reason is not None and outcome.order_id:
            outcome = await self._restock(event_id, outcome)
        return outcome

    async def _persist_outcome(self, event_id: str, outcome: ApplyOutcome) -> None:
        await compare_and_swap(
            self.db,
            PaymentWebhookEvent,
            [PaymentWebhookEvent.id == event_id],
            {
                "applied_at": utcnow(),
                "applied_result": outcome.applied_result,
                "applied_error_code": outcome.error_code,
                "applied_error_message": outcome.error_message[:500] if outcome.error_message else None,
                "attempt_id": outcome.attempt_id,
                "order_id": outcome.order_id,
            },
            returning=[PaymentWebhookEvent.id],
        )

    async def _restock(self, event_id: str, outcome: ApplyOutcome) -> ApplyOutcome:
        try:
            await self.restock.restock_order(
                outcome.order_id,
                reason=outcome.restock_reason,
                worker_id=self.worker_id,
            )
            return outcome
        except Exception:
            await self.db.rollback()
            log_payment_event(
                logger,
                logging.ERROR,
                PaymentLogCode.RESTOCK_FAILED,
                {
                    "eventId": event_id,
                    "orderId": outcome.order_id,
                    "attemptId": outcome.attempt_id,
                    "restockReason": outcome.restock_reason,
                },
                exc_info=True,
            )

        failed = replace(
            outcome,
            applied_result=AppliedResult.APPLIED_WITH_ISSUE,
            error_code="RESTOCK_FAILED",
            error_message="inventory release failed; order left in release_pending",
        )
        await compare_and_swap(
            self.db,
            PaymentWebhookEvent,
            [PaymentWebhookEvent.id == event_id],
            {
                "applied_result": failed.applied_result,
                "applied_error_code": failed.error_code,
                "applied_error_message": failed.error_message,
            },
            returning=[PaymentWebhookEvent.id],
        )
        await self.db.commit()
        return failed

    def _order_metadata(
        self,
        order: Order,
        normalized: NormalizedWebhook,
        kind: PspEventKind,
        event_id: str,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        meta = OrderPspMetadata.from_db(order.psp_metadata, order.payment_provider.value)
        page_url = meta.invoice.page_url if meta.invoice and meta.invoice.invoice_id == normalized.invoice_id else None
        snapshot = InvoiceSnapshot(
            invoice_id=normalized.invoice_id,
            page_url=page_url,
            status=normalized.status,
            amount=normalized.amount,
            ccy=normalized.ccy,
            reference=normalized.reference,
        )
        event = PspEvent(
            kind=kind,
            invoice_id=normalized.invoice_id,
            status=normalized.status,
            amount=normalized.amount,
            ccy=normalized.ccy,
            reference=normalized.reference,
            reason=reason,
            event_id=event_id,
        )
        return meta.with_invoice(snapshot).with_event(event).to_json()

    async def _decide(self, event_id: str, normalized: NormalizedWebhook) -> ApplyOutcome:
        reference = normalized.reference if _looks_like_attempt_id(normalized.reference) else None
        attempt = await self.attempts.find_by_reference_or_invoice(
            reference, normalized.invoice_id, PaymentProvider.MONOBANK
        )
        log_meta = {"eventId": event_id, "invoiceId": normalized.invoice_id, "status": normalized.status}

        if attempt is None:
            log_payment_event(logger, logging.WARNING, PaymentLogCode.UNMATCHED, {**log_meta, "reason": "ATTEMPT_NOT_FOUND"})
            return ApplyOutcome(
                applied_result=AppliedResult.UNMATCHED,
                error_code="ATTEMPT_NOT_FOUND",
                error_message="no payment attempt for invoice",
            )

        order = await fetch_fresh(self.db, Order, attempt.order_id)
        if order is None:
            log_payment_event(logger, logging.WARNING, PaymentLogCode.UNMATCHED, {**log_meta, "reason": "ORDER_NOT_FOUND"})
            return ApplyOutcome(
                applied_result=AppliedResult.UNMATCHED,
                error_code="ORDER_NOT_FOUND",
                error_message="order for payment attempt not found",
                attempt_id=attempt.id,
            )

        attempt_id, order_id = attempt.id, order.id
        log_meta.update(orderId=order_id, attemptId=attempt_id)
        status = normalized.status
        pma = normalized.provider_modified_at

        def outcome(result: AppliedResult, code: Optional[str] = None, message: Optional[str] = None, **kwargs) -> ApplyOutcome:
            return ApplyOutcome(
                applied_result=result,
                error_code=code,
                error_message=message,
                attempt_id=attempt_id,
                order_id=order_id,
                **kwargs,
            )

        # 2. רק אירוע ישן ממש נדחה — זמן שווה עדיין מוחל
        if pma is not None and attempt.provider_modified_at is not None and pma < attempt.provider_modified_at:
            log_payment_event(logger, logging.INFO, PaymentLogCode.OLD_EVENT, {**log_meta, "reason": "provider_modified_at_older"})
            return outcome(AppliedResult.APPLIED_NOOP, "OUT_OF_ORDER", "provider_modified_at older than latest")

        # 3. אי-התאמת סכום / מטבע
        if status in SUCCESS_STATUSES:
            mismatch = _mismatch_reason(normalized, order, attempt)
            if mismatch:
                log_payment_event(logger, logging.WARNING, PaymentLogCode.MISMATCH, {**log_meta, "reason": mismatch})
                if order.payment_status != PaymentStatus.PAID:
                    await self.attempts.mark_failed(
                        attempt_id,
                        "AMOUNT_MISMATCH",
                        mismatch,
                        from_statuses=(*OPEN_ATTEMPT_STATUSES, AttemptStatus.FAILED),
                        provider_modified_at=pma,
                    )
                    await self.payment_state.guarded_payment_status_update(
                        order_id,
                        order.payment_provider,
                        PaymentStatus.NEEDS_REVIEW,
                        TransitionSource.MONOBANK_WEBHOOK,
                        event_id=event_id,
                        note=mismatch,
                        extra_values={
                            "failure_code": "AMOUNT_MISMATCH",
                            "failure_message": "Webhook amount/currency mismatch.",
                            "psp_metadata": self._order_metadata(
                                order, normalized, PspEventKind.NEEDS_REVIEW, event_id, mismatch
                            ),
                        },
                    )
                return outcome(AppliedResult.APPLIED_WITH_ISSUE, "AMOUNT_MISMATCH", mismatch)

        # 4. מצבים "דביקים"
        if order.payment_status == PaymentStatus.PAID and (status in SUCCESS_STATUSES or status in PENDING_STATUSES):
            await self.attempts.touch_provider_modified_at(attempt_id, pma)
            return outcome(AppliedResult.APPLIED_NOOP)
        if order.payment_status == PaymentStatus.NEEDS_REVIEW:
            return outcome(AppliedResult.APPLIED_NOOP)

        # 5. הצלחה אחרי כישלון / החזר — לבדיקה ידנית
        if status in SUCCESS_STATUSES and order.payment_status in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            await self.payment_state.guarded_payment_status_update(
                order_id,
                order.payment_provider,
                PaymentStatus.NEEDS_REVIEW,
                TransitionSource.MONOBANK_WEBHOOK,
                event_id=event_id,
                note="success_after_terminal",
                extra_values={
                    "failure_code": "OUT_OF_ORDER",
                    "failure_message": f"Provider reported success after order became {order.payment_status.value}.",
                    "psp_metadata": self._order_metadata(
                        order, normalized, PspEventKind.NEEDS_REVIEW, event_id, "success_after_terminal"
                    ),
                },
            )
            await self.attempts.touch_provider_modified_at(attempt_id, pma)
            return outcome(AppliedResult.APPLIED_WITH_ISSUE, "OUT_OF_ORDER", "success after terminal payment status")

        # 6. success → paid
        if status in SUCCESS_STATUSES:
            tr = await self.payment_state.guarded_payment_status_update(
                order_id,
                order.payment_provider,
                PaymentStatus.PAID,
                TransitionSource.MONOBANK_WEBHOOK,
                event_id=event_id,
            )
            if not tr.applied:
                return outcome(
                    AppliedResult.APPLIED_WITH_ISSUE,
                    "PAYMENT_STATE_BLOCKED",
                    f"blocked transition to paid ({tr.reason.value if tr.reason else 'unknown'})",
                )

            order_row = await compare_and_swap(
                self.db,
                Order,
                [Order.id == order_id, Order.payment_status == PaymentStatus.PAID],
                {
                    "status": OrderStatus.PAID,
                    "psp_charge_id": normalized.invoice_id,
                    "psp_metadata": self._order_metadata(order, normalized, PspEventKind.PAYMENT_SUCCEEDED, event_id),
                    "updated_at": utcnow(),
                },
                returning=[Order.id],
            )
            # ניסיון שסומן failed (למשל invoice_missing) עדיין שולם בפועל
            attempt_ok = await self.attempts.mark_succeeded(
                attempt_id,
                pma,
                from_statuses=(*OPEN_ATTEMPT_STATUSES, AttemptStatus.FAILED),
            )
            if order_row is None or not attempt_ok:
                return self._write_failed(outcome, log_meta, "paid")

            log_payment_event(logger, logging.INFO, PaymentLogCode.PAID_APPLIED, log_meta)
            return outcome(AppliedResult.APPLIED)

        # 7. ביניים
        if status in PENDING_STATUSES:
            await self.attempts.touch_provider_modified_at(attempt_id, pma)
            return outcome(AppliedResult.APPLIED_NOOP)

        # 8. כישלון / פקיעה / ביטול תשלום
        if status in FAILURE_STATUSES:
            # רק reversed הופך תשלום שהצליח ל-refunded. expired / failure על הזמנה
            # ששולמה נחסמים ב-guard (paid → failed אסור) ונרשמים כ-applied_with_issue
            is_reversal = status == "reversed" and (
                attempt.status == AttemptStatus.SUCCEEDED or order.payment_status == PaymentStatus.PAID
            )
            target = PaymentStatus.REFUNDED if is_reversal else PaymentStatus.FAILED
            tr = await self.payment_state.guarded_payment_status_update(
                order_id,
                order.payment_provider,
                target,
                TransitionSource.MONOBANK_WEBHOOK,
                event_id=event_id,
            )
            if not tr.applied and tr.reason != TransitionRejectReason.ALREADY_IN_STATE:
                return outcome(
                    AppliedResult.APPLIED_WITH_ISSUE,
                    "PAYMENT_STATE_BLOCKED",
                    f"blocked transition to {target.value} ({tr.reason.value if tr.reason else 'unknown'})",
                )

            terminal_status = AttemptStatus.CANCELED if is_reversal else AttemptStatus.FAILED
            if not tr.applied and attempt.status == terminal_status:
                await self.attempts.touch_provider_modified_at(attempt_id, pma)
                return outcome(AppliedResult.APPLIED_NOOP)

            kind = PspEventKind.PAYMENT_REVERSED if is_reversal else PspEventKind.PAYMENT_FAILED
            order_row = await compare_and_swap(
                self.db,
                Order,
                [Order.id == order_id, Order.payment_status == target],
                {
                    "psp_status_reason": status,
                    "psp_metadata": self._order_metadata(order, normalized, kind, event_id, status),
                    "updated_at": utcnow(),
                },
                returning=[Order.id],
            )
            if is_reversal:
                attempt_ok = await self.attempts.mark_canceled(attempt_id, status, provider_modified_at=pma)
            else:
                attempt_ok = await self.attempts.mark_failed(
                    attempt_id,
                    status,
                    f"Provider status: {status}",
                    provider_modified_at=pma,
                )
            if order_row is None or not attempt_ok:
                return self._write_failed(outcome, log_meta, target.value)

            if is_reversal:
                # החזר שאדמין ביקש והספק אישר כ-processing
                now = utcnow()
                await compare_and_swap(
                    self.db,
                    PaymentRefund,
                    [
                        PaymentRefund.order_id == order_id,
                        PaymentRefund.status.in_([PspOperationStatus.REQUESTED, PspOperationStatus.PROCESSING]),
                    ],
                    {"status": PspOperationStatus.SUCCESS, "provider_modified_at": pma or now, "updated_at": now},
                    returning=[PaymentRefund.id],
                )

            log_payment_event(
                logger,
                logging.INFO,
                PaymentLogCode.REFUND_APPLIED if is_reversal else PaymentLogCode.FAILURE_APPLIED,
                log_meta,
            )
            return outcome(
                AppliedResult.APPLIED,
                restock_reason=RestockReason.REFUNDED if is_reversal else RestockReason.FAILED,
            )

        # 9.
        log_payment_event(logger, logging.ERROR, PaymentLogCode.UNKNOWN_STATUS, log_meta)
        return outcome(AppliedResult.APPLIED_NOOP, "UNKNOWN_STATUS", f"unknown provider status: {status}")

    def _write_failed(self, outcome, log_meta: dict[str, Any], target: str) -> ApplyOutcome:
        log_payment_event(
            logger,
            logging.ERROR,
            PaymentLogCode.DB_WRITE_FAILED,
            {**log_meta, "toStatus": target, "reason": "order_or_attempt_not_updated"},
        )
        return outcome(
            AppliedResult.APPLIED_WITH_ISSUE,
            "DB_WRITE_FAILED",
            f"atomic update ({target}) did not update both rows",
            rollback=True,
        )
