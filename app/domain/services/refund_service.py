"""
Refund Service - החזר מלא של הזמנה ששולמה (פעולת אדמין)

שורת payment_refunds אחת להזמנה (ext_ref ייחודי):
- processing / success → הבקשה כבר התקבלה; מוחזרת השורה הקיימת (deduped)
- requested / failure → פנייה חוזרת לספק עם אותו ext_ref
- ההזמנה כבר refunded → השורה מסומנת success בלי לפנות לספק

הספק מאשר החזר בדרך כלל כ-processing; ה-webhook reversed שמגיע אחר כך
מעביר את ההזמנה ל-refunded ומשחרר את המלאי. אם הספק מדווח success מיד,
המעבר והשחרור נעשים כאן.
"""
import logging
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    ExternalServiceException,
    OrderNotFoundError,
    PaymentOperationRejectedError,
    PspUnavailableError,
)
from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.db.cas import compare_and_swap, fetch_fresh
from app.db.compat import utcnow, new_id
from app.db.models.order import Order, PaymentProvider, PaymentStatus
from app.db.models.payment_attempt import AttemptStatus
from app.db.models.psp_operation import PaymentRefund, PspOperationStatus, build_refund_ext_ref
from app.domain.services.payment_attempt_service import PaymentAttemptService
from app.domain.services.payment_state_service import PaymentStateService
from app.domain.services.psp.base_provider import BasePaymentGateway
from app.domain.services.psp.monobank_provider import MONO_CURRENCY
from app.domain.services.psp.provider_factory import get_payment_gateway
from app.domain.services.restock_service import RestockReason, RestockService
from app.state_machine.payment_states import TransitionRejectReason, TransitionSource

logger = get_logger(__name__)

REFUND_WORKER_ID = "admin-refund"
DEDUPED_STATUSES = (PspOperationStatus.PROCESSING, PspOperationStatus.SUCCESS)


def order_summary(order: Order) -> dict[str, Any]:
    """מצב ההזמנה שמוחזר לאדמין אחרי החזר / ביטול"""
    return {
        "id": order.id,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "inventory_status": order.inventory_status.value,
        "stock_restored": bool(order.stock_restored),
    }


def _refund_view(refund: PaymentRefund) -> dict[str, Any]:
    return {
        "id": refund.id,
        "ext_ref": refund.ext_ref,
        "status": refund.status.value,
        "amount_minor": refund.amount_minor,
        "currency": refund.currency,
    }


class RefundService:
    """Admin-initiated full refund with ext_ref idempotency"""

    def __init__(self, db: AsyncSession, gateway: Optional[BasePaymentGateway] = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.attempts = PaymentAttemptService(db)
        self.payment_state = PaymentStateService(db)
        self.restock = RestockService(db)

    async def _get_refund(self, ext_ref: str) -> Optional[PaymentRefund]:
        result = await self.db.execute(
            select(PaymentRefund)
            .where(PaymentRefund.ext_ref == ext_ref)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _set_status(
        self,
        refund_id: str,
        to: PspOperationStatus,
        from_statuses: tuple[PspOperationStatus, ...] = (),
    ) -> bool:
        where = [PaymentRefund.id == refund_id]
        if from_statuses:
            where.append(PaymentRefund.status.in_(from_statuses))
        now = utcnow()
        row = await compare_and_swap(
            self.db,
            PaymentRefund,
            where,
            {"status": to, "provider_modified_at": now, "updated_at": now},
            returning=[PaymentRefund.id],
        )
        return row is not None

    async def _response(self, order_id: str, refund_id: str, deduped: bool) -> dict[str, Any]:
        order = await fetch_fresh(self.db, Order, order_id)
        refund = await fetch_fresh(self.db, PaymentRefund, refund_id)
        return {"order": order_summary(order), "refund": _refund_view(refund), "deduped": deduped}

    async def _insert_requested(
        self,
        order: Order,
        ext_ref: str,
        attempt_id: Optional[str],
        request_id: Optional[str],
    ) -> Optional[str]:
        """שורת requested חדשה. מחזיר None אם בקשה מקבילה כבר יצרה אותה"""
        now = utcnow()
        refund = PaymentRefund(
            id=new_id(),
            provider=PaymentProvider.MONOBANK.value,
            order_id=order.id,
            attempt_id=attempt_id,
            ext_ref=ext_ref,
            status=PspOperationStatus.REQUESTED,
            amount_minor=order.total_amount_minor,
            currency=MONO_CURRENCY,
            request_id=request_id,
            provider_created_at=now,
            provider_modified_at=now,
        )
        refund_id = refund.id
        try:
            async with self.db.begin_nested():
                self.db.add(refund)
                await self.db.flush()
        except IntegrityError:
            await self.db.commit()
            return None
        await self.db.commit()
        return refund_id

    async def _reuse_existing(
        self, order: Order, refund: PaymentRefund, log_meta: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        """
        שורה קיימת: processing / success מוחזרת כמו שהיא.

        Returns:
            תשובה סופית, או None אם צריך לפנות שוב לספק
        """
        status = refund.status
        if order.payment_status == PaymentStatus.REFUNDED and status != PspOperationStatus.SUCCESS:
            # ה-webhook כבר השלים את ההחזר
            await self._set_status(refund.id, PspOperationStatus.SUCCESS)
            await self.db.commit()
            status = PspOperationStatus.SUCCESS

        if status not in DEDUPED_STATUSES:
            return None

        log_payment_event(
            logger,
            logging.INFO,
            PaymentLogCode.REFUND_REQUESTED,
            {**log_meta, "operationId": refund.id, "status": status, "deduped": True, "reason": "existing_refund"},
        )
        return await self._response(order.id, refund.id, deduped=True)

    async def request_full_refund(self, order_id: str, request_id: Optional[str] = None) -> dict[str, Any]:
        """
        החזר מלא של הזמנת monobank ששולמה.

        Returns:
            {"order", "refund": {id, ext_ref, status, amount_minor, currency}, "deduped"}

        Raises:
            OrderNotFoundError, PaymentOperationRejectedError, PspUnavailableError
        """
        if not settings.PAYMENT_REFUND_ENABLED:
            raise PaymentOperationRejectedError(order_id, "REFUND_DISABLED", "Refunds are disabled")

        order = await fetch_fresh(self.db, Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.payment_provider != PaymentProvider.MONOBANK:
            raise PaymentOperationRejectedError(
                order_id, "REFUND_PROVIDER_NOT_SUPPORTED", "Refund is supported only for monobank orders"
            )
        amount_minor = order.total_amount_minor
        if not amount_minor or amount_minor <= 0:
            raise PaymentOperationRejectedError(order_id, "REFUND_ORDER_MONEY_INVALID", "Invalid order amount")
        if (order.currency or "").upper() != MONO_CURRENCY:
            raise PaymentOperationRejectedError(
                order_id, "REFUND_ORDER_CURRENCY_INVALID", "Refund requires UAH order currency"
            )

        ext_ref = build_refund_ext_ref(order_id)
        log_meta: dict[str, Any] = {"orderId": order_id, "requestId": request_id, "extRef": ext_ref}

        refund = await self._get_refund(ext_ref)
        refund_id: Optional[str] = None
        if refund is None:
            self._require_paid(order)
            invoice_id, attempt_id = await self._resolve_invoice(order)
            refund_id = await self._insert_requested(order, ext_ref, attempt_id, request_id)
            if refund_id is None:
                refund = await self._get_refund(ext_ref)

        if refund_id is None:
            if refund is None:
                raise PspUnavailableError(order_id, "REFUND_CONFLICT")
            reused = await self._reuse_existing(order, refund, log_meta)
            if reused is not None:
                return reused

            self._require_paid(order)
            invoice_id, attempt_id = await self._resolve_invoice(order)
            refund_id = refund.id
            await self._set_status(
                refund_id,
                PspOperationStatus.REQUESTED,
                from_statuses=(PspOperationStatus.REQUESTED, PspOperationStatus.FAILURE),
            )
            await self.db.commit()

        log_meta.update(operationId=refund_id, invoiceId=invoice_id, attemptId=attempt_id)

        try:
            accepted = await self.gateway.refund_payment(invoice_id, ext_ref=ext_ref, amount_minor=amount_minor)
        except (ExternalServiceException, ValueError) as e:
            psp_code = getattr(e, "psp_code", None) or "PSP_UNAVAILABLE"
            await self._set_status(refund_id, PspOperationStatus.FAILURE)
            await self.db.commit()
            log_payment_event(logger, logging.ERROR, PaymentLogCode.REFUND_FAILED, {**log_meta, "errorCode": psp_code})
            raise PspUnavailableError(order_id, psp_code) from e

        if accepted.status == PspOperationStatus.FAILURE.value:
            await self._set_status(refund_id, PspOperationStatus.FAILURE)
            await self.db.commit()
            log_payment_event(
                logger, logging.ERROR, PaymentLogCode.REFUND_FAILED, {**log_meta, "errorCode": "PSP_REFUND_FAILURE"}
            )
            raise PspUnavailableError(order_id, "PSP_REFUND_FAILURE")

        await self._set_status(refund_id, PspOperationStatus.PROCESSING, from_statuses=(PspOperationStatus.REQUESTED,))
        await self.db.commit()

        if accepted.status == PspOperationStatus.SUCCESS.value:
            await self._complete_refund(order_id, refund_id, invoice_id, log_meta)

        log_payment_event(
            logger,
            logging.INFO,
            PaymentLogCode.REFUND_REQUESTED,
            {**log_meta, "status": accepted.status, "deduped": False, "reason": "refund_requested"},
        )
        return await self._response(order_id, refund_id, deduped=False)

    def _require_paid(self, order: Order) -> None:
        if order.payment_status != PaymentStatus.PAID:
            raise PaymentOperationRejectedError(
                order.id, "REFUND_ORDER_NOT_PAID", "Order is not refundable in its current state"
            )

    async def _resolve_invoice(self, order: Order) -> tuple[str, Optional[str]]:
        invoice_id, attempt_id = await self.attempts.find_invoice_for_order(order.id, order.psp_charge_id)
        if not invoice_id:
            raise PaymentOperationRejectedError(
                order.id, "REFUND_MISSING_PROVIDER_REF", "Missing invoice identifier for refund"
            )
        return invoice_id, attempt_id

    async def _complete_refund(
        self, order_id: str, refund_id: str, invoice_id: str, log_meta: dict[str, Any]
    ) -> None:
        """הספק אישר את ההחזר מיד — paid → refunded ושחרור המלאי"""
        tr = await self.payment_state.guarded_payment_status_update(
            order_id,
            PaymentProvider.MONOBANK,
            PaymentStatus.REFUNDED,
            TransitionSource.ADMIN,
            note="refund_succeeded",
        )
        if not tr.applied and tr.reason != TransitionRejectReason.ALREADY_IN_STATE:
            # השורה נשארת processing — ה-webhook של הספק יכריע
            await self.db.commit()
            return

        attempt = await self.attempts.find_by_reference_or_invoice(None, invoice_id)
        if attempt is not None:
            await self.attempts.mark_canceled(attempt.id, "reversed", from_statuses=(AttemptStatus.SUCCEEDED,))
        await self._set_status(refund_id, PspOperationStatus.SUCCESS)
        await self.db.commit()
        log_payment_event(logger, logging.INFO, PaymentLogCode.REFUND_APPLIED, {**log_meta, "source": "admin"})

        try:
            await self.restock.restock_order(order_id, reason=RestockReason.REFUNDED, worker_id=REFUND_WORKER_ID)
        except Exception:
            # ההזמנה נשארת release_pending — ה-sweep ישחרר
            await self.db.rollback()
            log_payment_event(
                logger, logging.ERROR, PaymentLogCode.RESTOCK_FAILED, {**log_meta, "restockReason": "refunded"},
                exc_info=True,
            )
