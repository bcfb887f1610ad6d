"""
Attempt Lifecycle Service - יצירת ניסיון תשלום וחשבונית אצל הספק

שלושה שלבים, כי קריאת רשת לא רצה בתוך טרנזקציה:
1. tx #1 — ניסיון חדש בסטטוס creating עם lease "בטיסה" (inflight_until)
2. ללא tx — יצירת החשבונית אצל הספק (timeout קבוע)
3. tx #2 — שמירת מזהה החשבונית, ניסיון → active (עם ניסיונות חוזרים)

כשל בשלב 2: הניסיון נכשל, ההזמנה מבוטלת והמלאי משתחרר.
כשל בשלב 3: החשבונית מבוטלת אצל הספק, הניסיון נכשל
(PSP_INVOICE_PERSIST_FAILED), ההזמנה מבוטלת והמלאי משתחרר — ורק אז
PspInvoicePersistError. כל צעד פיצוי עצמאי: כשל באחד לא מונע את הבאים.
"""
import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    CheckoutConflictError,
    ExternalServiceException,
    OrderNotFoundError,
    OrderStateInvalidError,
    PspInvoicePersistError,
    PspUnavailableError,
)
from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.db.cas import compare_and_swap, fetch_fresh
from app.db.compat import utcnow
from app.db.models.order import Order, OrderStatus, PaymentProvider, PaymentStatus
from app.db.models.payment_attempt import AttemptStatus, PaymentAttempt
from app.domain.services.payment_attempt_service import PaymentAttemptService
from app.domain.services.provider_metadata import (
    AttemptMetadata,
    InvoiceSnapshot,
    OrderPspMetadata,
    PspEvent,
    PspEventKind,
)
from app.domain.services.psp.base_provider import BasePaymentGateway, CreatedInvoice
from app.domain.services.psp.monobank_provider import MONO_CURRENCY
from app.domain.services.psp.provider_factory import get_payment_gateway
from app.domain.services.restock_service import RestockReason, RestockService

logger = get_logger(__name__)

PAYABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.REQUIRES_PAYMENT)
INVOICE_MISSING = "invoice_missing"


class _InvoiceNotPersisted(Exception):
    """הניסיון או ההזמנה כבר לא במצב שמאפשר לשמור את החשבונית"""


def _attempt_snapshot(attempt: PaymentAttempt) -> Optional[dict[str, Any]]:
    """ניסיון active עם חשבונית מלאה — מוחזר ללקוח כמו שהוא"""
    if attempt.status != AttemptStatus.ACTIVE or not attempt.provider_payment_intent_id:
        return None
    meta = AttemptMetadata.from_db(attempt.metadata_)
    if not meta.page_url:
        return None
    return {
        "attempt_id": attempt.id,
        "invoice_id": attempt.provider_payment_intent_id,
        "page_url": meta.page_url,
    }


class AttemptLifecycleService:
    """Two-phase attempt creation with compensation"""

    def __init__(self, db: AsyncSession, gateway: Optional[BasePaymentGateway] = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.attempts = PaymentAttemptService(db)
        self.restock = RestockService(db)

    async def _read_payable_order(self, order_id: str) -> Order:
        order = await fetch_fresh(self.db, Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        if order.payment_provider != PaymentProvider.MONOBANK:
            raise OrderStateInvalidError(
                order_id,
                "Order is not payable with this provider",
                details={"payment_provider": order.payment_provider.value},
            )
        if order.payment_status not in PAYABLE_STATUSES:
            raise OrderStateInvalidError(
                order_id,
                "Order is not payable in its current state",
                details={"payment_status": order.payment_status.value},
            )
        if (order.currency or "").upper() != MONO_CURRENCY:
            raise OrderStateInvalidError(
                order_id, "Order currency is not supported", details={"currency": order.currency}
            )
        if not order.total_amount_minor or order.total_amount_minor <= 0:
            raise OrderStateInvalidError(order_id, "Order total must be positive")
        return order

    async def _resolve_open_attempt(self, order_id: str, attempt: PaymentAttempt) -> Optional[dict[str, Any]]:
        """
        ניסיון פתוח קיים.

        Returns:
            snapshot לשימוש חוזר, או None אם הניסיון סומן failed ואפשר ליצור חדש

        Raises:
            CheckoutConflictError: הניסיון עדיין בתהליך
        """
        snapshot = _attempt_snapshot(attempt)
        if snapshot is not None:
            return snapshot

        now = utcnow()
        lease_alive = attempt.inflight_until is not None and attempt.inflight_until > now
        if (
            attempt.status == AttemptStatus.CREATING
            and not attempt.provider_payment_intent_id
            and not lease_alive
        ):
            # קריאת הרשת של הניסיון הקודם מתה — ההזמנה עצמה נשארת פתוחה
            marked = await self.attempts.mark_failed(
                attempt.id,
                INVOICE_MISSING,
                "Invoice was never persisted for creating attempt",
                from_statuses=(AttemptStatus.CREATING,),
            )
            await self.db.commit()
            if marked:
                logger.warning(
                    "Stale creating attempt failed",
                    extra_data={"order_id": order_id, "attempt_id": attempt.id},
                )
                return None

        raise CheckoutConflictError(order_id, attempt.id)

    async def create_attempt_and_remote_invoice(self, order_id: str) -> dict[str, Any]:
        """
        יצירת ניסיון תשלום וחשבונית אצל הספק.

        Returns:
            {"attempt_id", "invoice_id", "page_url"}

        Raises:
            OrderNotFoundError, OrderStateInvalidError, CheckoutConflictError,
            PaymentAttemptsExhaustedError, PspUnavailableError, PspInvoicePersistError
        """
        order = await self._read_payable_order(order_id)
        amount_minor = order.total_amount_minor
        currency = order.currency

        existing = await self.attempts.get_open_attempt(order_id, PaymentProvider.MONOBANK)
        if existing is not None:
            snapshot = await self._resolve_open_attempt(order_id, existing)
            if snapshot is not None:
                return snapshot

        # שלב 1
        try:
            attempt = await self.attempts.create_creating_attempt(
                order_id,
                PaymentProvider.MONOBANK,
                expected_amount_minor=amount_minor,
                currency=currency,
                max_attempts=settings.PAYMENT_MAX_ATTEMPTS,
                lease_seconds=settings.PAYMENT_CREATING_LEASE_SECONDS,
            )
            await self.db.commit()
        except IntegrityError:
            # בקשה מקבילה יצרה ניסיון פתוח
            await self.db.rollback()
            concurrent = await self.attempts.get_open_attempt(order_id, PaymentProvider.MONOBANK)
            snapshot = _attempt_snapshot(concurrent) if concurrent is not None else None
            if snapshot is not None:
                return snapshot
            raise CheckoutConflictError(order_id, concurrent.id if concurrent else None)

        attempt_id = attempt.id

        # שלב 2
        try:
            invoice = await self.gateway.create_invoice(
                order_id=order_id,
                reference=attempt_id,
                amount_minor=amount_minor,
                redirect_url=settings.PAYMENT_REDIRECT_URL or None,
                webhook_url=settings.PAYMENT_WEBHOOK_URL or None,
            )
        except (ExternalServiceException, ValueError) as e:
            psp_code = getattr(e, "psp_code", None) or "PSP_UNAVAILABLE"
            log_payment_event(
                logger,
                logging.ERROR,
                PaymentLogCode.CREATE_INVOICE_FAILED,
                {"orderId": order_id, "attemptId": attempt_id, "errorCode": psp_code},
            )
            await self._compensate_fail_attempt(order_id, attempt_id, psp_code, str(e))
            await self._compensate_cancel_order(order_id, attempt_id, "Payment provider unavailable.")
            raise PspUnavailableError(order_id, psp_code) from e

        # שלב 3
        last_error: Optional[Exception] = None
        for _ in range(max(1, settings.PAYMENT_FINALIZE_RETRIES)):
            try:
                await self._persist_invoice(order_id, attempt_id, invoice)
                await self.db.commit()
                logger.info(
                    "Payment attempt activated",
                    extra_data={"order_id": order_id, "attempt_id": attempt_id, "invoice_id": invoice.invoice_id},
                )
                return {
                    "attempt_id": attempt_id,
                    "invoice_id": invoice.invoice_id,
                    "page_url": invoice.page_url,
                }
            except _InvoiceNotPersisted as e:
                await self.db.rollback()
                last_error = e
                break
            except SQLAlchemyError as e:
                await self.db.rollback()
                last_error = e

        await self._compensate_persist_failure(order_id, attempt_id, invoice, last_error)
        raise PspInvoicePersistError(order_id, attempt_id, invoice.invoice_id)

    async def _persist_invoice(self, order_id: str, attempt_id: str, invoice: CreatedInvoice) -> None:
        activated = await self.attempts.activate_with_invoice(attempt_id, invoice.invoice_id, invoice.page_url)
        if not activated:
            raise _InvoiceNotPersisted(f"attempt {attempt_id} is no longer creating")

        order = await fetch_fresh(self.db, Order, order_id)
        if order is None:
            raise _InvoiceNotPersisted(f"order {order_id} disappeared")

        meta = (
            OrderPspMetadata.from_db(order.psp_metadata, order.payment_provider.value)
            .with_invoice(InvoiceSnapshot(invoice_id=invoice.invoice_id, page_url=invoice.page_url))
            .with_event(PspEvent(kind=PspEventKind.INVOICE_CREATED, invoice_id=invoice.invoice_id, reference=attempt_id))
        )
        row = await compare_and_swap(
            self.db,
            Order,
            [
                Order.id == order_id,
                Order.payment_provider == PaymentProvider.MONOBANK,
                Order.payment_status.in_(PAYABLE_STATUSES),
            ],
            {"psp_charge_id": invoice.invoice_id, "psp_metadata": meta.to_json(), "updated_at": utcnow()},
            returning=[Order.id],
        )
        if row is None:
            raise _InvoiceNotPersisted(f"order {order_id} is no longer payable")

    async def _compensate_persist_failure(
        self,
        order_id: str,
        attempt_id: str,
        invoice: CreatedInvoice,
        error: Optional[Exception],
    ) -> None:
        log_meta = {"orderId": order_id, "attemptId": attempt_id, "invoiceId": invoice.invoice_id}
        log_payment_event(
            logger,
            logging.ERROR,
            PaymentLogCode.INVOICE_PERSIST_FAILED,
            {**log_meta, "reason": "persist_retry_exhausted", "errorCode": type(error).__name__ if error else None},
        )

        await self._compensate_fail_attempt(
            order_id,
            attempt_id,
            "PSP_INVOICE_PERSIST_FAILED",
            str(error) if error else "Invoice persistence failed.",
            metadata_changes={
                "invoice_id": invoice.invoice_id,
                "page_url": invoice.page_url,
                "failure_reason": "persist_retry_exhausted",
            },
        )

        try:
            await self.gateway.cancel_invoice(invoice.invoice_id)
        except Exception:
            log_payment_event(logger, logging.ERROR, PaymentLogCode.INVOICE_CANCEL_FAILED, log_meta, exc_info=True)

        await self._compensate_cancel_order(order_id, attempt_id, "Invoice persistence failed.")

    async def _compensate_fail_attempt(
        self,
        order_id: str,
        attempt_id: str,
        error_code: str,
        error_message: str,
        metadata_changes: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            await self.attempts.mark_failed(
                attempt_id,
                error_code,
                error_message,
                metadata_changes=metadata_changes,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(
                "Failed to mark payment attempt failed",
                extra_data={"order_id": order_id, "attempt_id": attempt_id, "error_code": error_code},
                exc_info=True,
            )

    async def _compensate_cancel_order(self, order_id: str, attempt_id: str, reason: str) -> None:
        try:
            await self.cancel_order_and_release(order_id, reason)
        except Exception:
            await self.db.rollback()
            logger.error(
                "Failed to cancel order after payment provider failure",
                extra_data={"order_id": order_id, "attempt_id": attempt_id},
                exc_info=True,
            )

    async def cancel_order_and_release(self, order_id: str, reason: str, worker_id: str = "monobank") -> bool:
        """
        ביטול הזמנה שעדיין ממתינה לתשלום ושחרור המלאי שלה.

        Returns:
            False אם ההזמנה כבר לא במצב שניתן לבטל (שולמה / נכשלה)
        """
        row = await compare_and_swap(
            self.db,
            Order,
            [
                Order.id == order_id,
                Order.payment_provider == PaymentProvider.MONOBANK,
                Order.payment_status.in_(PAYABLE_STATUSES),
            ],
            {
                "status": OrderStatus.CANCELED,
                "failure_code": "PSP_UNAVAILABLE",
                "failure_message": reason,
                "updated_at": utcnow(),
            },
            returning=[Order.id],
        )
        await self.db.commit()
        if row is None:
            logger.warning(
                "Order cancel skipped",
                extra_data={"order_id": order_id, "reason": reason},
            )
            return False

        await self.restock.restock_order(order_id, reason=RestockReason.CANCELED, worker_id=worker_id)
        return True

