"""
Payment Cancel Service - ביטול חשבונית שטרם שולמה ושחרור המלאי (פעולת אדמין)

שורת payment_cancels אחת להזמנה (ext_ref ייחודי):
requested → (invoice/remove אצל הספק) → processing → (restock canceled) → success.
כשל אצל הספק → failure, ובקשה חוזרת מנסה שוב.

בקשה מקבילה שמוצאת שורה קיימת:
- success → deduped
- processing → משלימה את השחרור (restock הוא idempotent)
- requested → ממתינה קצרות; אם השורה עדיין requested → PAYMENT_OPERATION_IN_PROGRESS
- failure → לוקחת את השורה חזרה ל-requested (CAS) ופונה שוב לספק
"""
import asyncio
import logging
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    ErrorCode,
    ExternalServiceException,
    OrderNotFoundError,
    PaymentOperationRejectedError,
    PspUnavailableError,
)
from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.db.cas import compare_and_swap, fetch_fresh
from app.db.compat import utcnow, new_id
from app.db.models.order import (
    InventoryStatus,
    Order,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
)
from app.db.models.payment_attempt import OPEN_ATTEMPT_STATUSES
from app.db.models.psp_operation import PaymentCancel, PspOperationStatus, build_cancel_ext_ref
from app.domain.services.payment_attempt_service import PaymentAttemptService
from app.domain.services.payment_state_service import PaymentStateService
from app.domain.services.psp.base_provider import BasePaymentGateway
from app.domain.services.psp.provider_factory import get_payment_gateway
from app.domain.services.refund_service import order_summary
from app.domain.services.restock_service import RestockReason, RestockService
from app.state_machine.payment_states import TransitionSource

logger = get_logger(__name__)

CANCEL_WORKER_ID = "admin-cancel-payment"
CANCEL_FAILURE_CODE = "ADMIN_CANCELED"
REQUESTED_POLL_ATTEMPTS = 5
REQUESTED_POLL_DELAY_SECONDS = 0.075

CANCELABLE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.REQUIRES_PAYMENT, PaymentStatus.FAILED)


def _is_final_canceled(order: Order) -> bool:
    return (
        order.status == OrderStatus.CANCELED
        and order.inventory_status == InventoryStatus.RELEASED
        and bool(order.stock_restored)
    )


def _cancel_view(cancel_id: Optional[str], ext_ref: str, status: PspOperationStatus) -> dict[str, Any]:
    return {"id": cancel_id, "ext_ref": ext_ref, "status": status.value}


class PaymentCancelService:
    """Admin cancel of an unpaid invoice with ext_ref idempotency"""

    def __init__(self, db: AsyncSession, gateway: Optional[BasePaymentGateway] = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.attempts = PaymentAttemptService(db)
        self.payment_state = PaymentStateService(db)
        self.restock = RestockService(db)

    async def _get_cancel(self, ext_ref: str) -> Optional[PaymentCancel]:
        result = await self.db.execute(
            select(PaymentCancel)
            .where(PaymentCancel.ext_ref == ext_ref)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _set_status(
        self,
        cancel_id: str,
        to: PspOperationStatus,
        request_id: Optional[str],
        *,
        from_statuses: tuple[PspOperationStatus, ...] = (),
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        psp_response: Optional[dict[str, Any]] = None,
    ) -> bool:
        where = [PaymentCancel.id == cancel_id]
        if from_statuses:
            where.append(PaymentCancel.status.in_(from_statuses))
        values: dict[str, Any] = {
            "status": to,
            "request_id": request_id,
            "error_code": error_code,
            "error_message": error_message[:500] if error_message else None,
            "updated_at": utcnow(),
        }
        if psp_response is not None:
            values["psp_response"] = psp_response
        row = await compare_and_swap(
            self.db,
            PaymentCancel,
            where,
            values,
            returning=[PaymentCancel.id],
        )
        return row is not None

    async def _insert_requested(
        self,
        order_id: str,
        ext_ref: str,
        invoice_id: str,
        attempt_id: Optional[str],
        request_id: Optional[str],
    ) -> Optional[str]:
        """שורת requested חדשה. מחזיר None אם כבר קיימת שורה לאותו ext_ref"""
        cancel = PaymentCancel(
            id=new_id(),
            order_id=order_id,
            attempt_id=attempt_id,
            ext_ref=ext_ref,
            invoice_id=invoice_id,
            status=PspOperationStatus.REQUESTED,
            request_id=request_id,
        )
        cancel_id = cancel.id
        try:
            async with self.db.begin_nested():
                self.db.add(cancel)
                await self.db.flush()
        except IntegrityError:
            await self.db.commit()
            return None
        await self.db.commit()
        return cancel_id

    async def _poll_requested(self, ext_ref: str) -> Optional[PaymentCancel]:
        """המתנה קצרה לבקשה מקבילה שכבר פנתה לספק"""
        current = await self._get_cancel(ext_ref)
        for _ in range(REQUESTED_POLL_ATTEMPTS):
            if current is None or current.status != PspOperationStatus.REQUESTED:
                break
            await asyncio.sleep(REQUESTED_POLL_DELAY_SECONDS)
            current = await self._get_cancel(ext_ref)
        return current

    async def _response(self, order_id: str, cancel: dict[str, Any], deduped: bool) -> dict[str, Any]:
        order = await fetch_fresh(self.db, Order, order_id)
        return {"order": order_summary(order), "cancel": cancel, "deduped": deduped}

    async def cancel_unpaid_payment(self, order_id: str, request_id: Optional[str] = None) -> dict[str, Any]:
        """
        ביטול חשבונית monobank שטרם שולמה ושחרור המלאי של ההזמנה.

        Returns:
            {"order", "cancel": {id, ext_ref, status}, "deduped"}

        Raises:
            OrderNotFoundError, PaymentOperationRejectedError, PspUnavailableError
        """
        order = await fetch_fresh(self.db, Order, order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.payment_provider != PaymentProvider.MONOBANK:
            raise PaymentOperationRejectedError(
                order_id,
                "CANCEL_PROVIDER_NOT_SUPPORTED",
                "Cancel payment is supported only for monobank orders",
                error_code=ErrorCode.CANCEL_NOT_ALLOWED,
            )
        if order.status == OrderStatus.PAID or order.payment_status not in CANCELABLE_PAYMENT_STATUSES:
            raise PaymentOperationRejectedError(
                order_id,
                "CANCEL_NOT_ALLOWED",
                f"Order payment is {order.payment_status.value} and cannot be canceled",
                error_code=ErrorCode.CANCEL_NOT_ALLOWED,
            )

        ext_ref = build_cancel_ext_ref(order_id)
        log_meta: dict[str, Any] = {"orderId": order_id, "requestId": request_id, "extRef": ext_ref}

        if _is_final_canceled(order):
            existing = await self._get_cancel(ext_ref)
            return {
                "order": order_summary(order),
                "cancel": _cancel_view(existing.id if existing else None, ext_ref, PspOperationStatus.SUCCESS),
                "deduped": True,
            }

        invoice_id, attempt_id = await self.attempts.find_invoice_for_order(order_id, order.psp_charge_id)
        if not invoice_id:
            raise PaymentOperationRejectedError(
                order_id,
                "CANCEL_MISSING_PROVIDER_REF",
                "Missing invoice identifier for cancel",
                error_code=ErrorCode.CANCEL_NOT_ALLOWED,
            )

        cancel_id = await self._insert_requested(order_id, ext_ref, invoice_id, attempt_id, request_id)
        if cancel_id is None:
            settled = await self._resolve_existing(order_id, ext_ref, request_id, log_meta)
            if isinstance(settled, dict):
                return settled
            cancel_id = settled

        log_meta.update(operationId=cancel_id, invoiceId=invoice_id, attemptId=attempt_id)

        try:
            psp_response = await self.gateway.remove_invoice(invoice_id)
        except (ExternalServiceException, ValueError) as e:
            psp_code = getattr(e, "psp_code", None) or "PSP_UNAVAILABLE"
            await self._set_status(
                cancel_id,
                PspOperationStatus.FAILURE,
                request_id,
                error_code=psp_code,
                error_message=str(e),
            )
            await self.db.commit()
            log_payment_event(logger, logging.ERROR, PaymentLogCode.CANCEL_FAILED, {**log_meta, "errorCode": psp_code})
            raise PspUnavailableError(order_id, psp_code) from e

        await self._set_status(
            cancel_id,
            PspOperationStatus.PROCESSING,
            request_id,
            from_statuses=(PspOperationStatus.REQUESTED,),
            psp_response=psp_response,
        )
        await self.db.commit()
        return await self._finalize(order_id, cancel_id, ext_ref, request_id, log_meta, deduped=False)

    async def _resolve_existing(
        self,
        order_id: str,
        ext_ref: str,
        request_id: Optional[str],
        log_meta: dict[str, Any],
    ) -> dict[str, Any] | str:
        """
        שורה קיימת לאותו ext_ref.

        Returns:
            תשובה סופית (dict), או מזהה השורה שנלקחה חזרה ל-requested
        """
        current = await self._get_cancel(ext_ref)
        if current is None:
            raise PspUnavailableError(order_id, "CANCEL_CONFLICT")

        if current.status == PspOperationStatus.REQUESTED:
            current = await self._poll_requested(ext_ref)
            if current is None or current.status == PspOperationStatus.REQUESTED:
                raise PaymentOperationRejectedError(
                    order_id,
                    "CANCEL_IN_PROGRESS",
                    "Cancel payment is already in progress. Retry shortly.",
                    error_code=ErrorCode.PAYMENT_OPERATION_IN_PROGRESS,
                )

        if current.status == PspOperationStatus.SUCCESS:
            return await self._response(
                order_id, _cancel_view(current.id, ext_ref, PspOperationStatus.SUCCESS), deduped=True
            )
        if current.status == PspOperationStatus.PROCESSING:
            return await self._finalize(order_id, current.id, ext_ref, request_id, log_meta, deduped=True)

        retried = await self._set_status(
            current.id,
            PspOperationStatus.REQUESTED,
            request_id,
            from_statuses=(PspOperationStatus.FAILURE,),
        )
        await self.db.commit()
        if not retried:
            raise PaymentOperationRejectedError(
                order_id,
                "CANCEL_IN_PROGRESS",
                "Cancel payment is already in progress. Retry shortly.",
                error_code=ErrorCode.PAYMENT_OPERATION_IN_PROGRESS,
            )
        return current.id

    async def _finalize(
        self,
        order_id: str,
        cancel_id: str,
        ext_ref: str,
        request_id: Optional[str],
        log_meta: dict[str, Any],
        deduped: bool,
    ) -> dict[str, Any]:
        """הספק פסל את החשבונית — ביטול ההזמנה, שחרור המלאי, שורה → success"""
        order_row = await compare_and_swap(
            self.db,
            Order,
            [
                Order.id == order_id,
                Order.payment_provider == PaymentProvider.MONOBANK,
                Order.payment_status.in_(CANCELABLE_PAYMENT_STATUSES),
            ],
            {
                "status": OrderStatus.CANCELED,
                "failure_code": func.coalesce(Order.failure_code, CANCEL_FAILURE_CODE),
                "failure_message": func.coalesce(Order.failure_message, "Payment canceled by admin."),
                "updated_at": utcnow(),
            },
            returning=[Order.id],
        )
        if order_row is None:
            # webhook של תשלום הגיע בין הביטול אצל הספק לבין כאן
            await self._set_status(
                cancel_id,
                PspOperationStatus.FAILURE,
                request_id,
                error_code="ORDER_NOT_CANCELABLE",
                error_message="Order left a cancelable payment state",
            )
            await self.db.commit()
            log_payment_event(
                logger, logging.ERROR, PaymentLogCode.CANCEL_FAILED, {**log_meta, "reason": "order_not_cancelable"}
            )
            raise PaymentOperationRejectedError(
                order_id,
                "CANCEL_NOT_ALLOWED",
                "Order is no longer cancelable",
                error_code=ErrorCode.CANCEL_NOT_ALLOWED,
            )

        open_attempt = await self.attempts.get_open_attempt(order_id, PaymentProvider.MONOBANK)
        if open_attempt is not None:
            await self.attempts.mark_canceled(open_attempt.id, CANCEL_FAILURE_CODE, from_statuses=OPEN_ATTEMPT_STATUSES)
        await self.db.commit()

        try:
            await self.restock.restock_order(order_id, reason=RestockReason.CANCELED, worker_id=CANCEL_WORKER_ID)
        except Exception:
            await self.db.rollback()
            log_payment_event(
                logger,
                logging.ERROR,
                PaymentLogCode.CANCEL_FAILED,
                {**log_meta, "reason": "finalize_failed", "restockReason": "canceled"},
                exc_info=True,
            )
            raise

        # הזמנה בלי תנועות reserve — restock לא נוגע בסטטוס התשלום
        order = await fetch_fresh(self.db, Order, order_id)
        if order.payment_status != PaymentStatus.FAILED:
            await self.payment_state.guarded_payment_status_update(
                order_id,
                PaymentProvider.MONOBANK,
                PaymentStatus.FAILED,
                TransitionSource.ADMIN,
                note="admin_cancel",
            )
        await self._set_status(
            cancel_id,
            PspOperationStatus.SUCCESS,
            request_id,
            from_statuses=(PspOperationStatus.PROCESSING,),
        )
        await self.db.commit()

        log_payment_event(
            logger,
            logging.INFO,
            PaymentLogCode.CANCEL_APPLIED,
            {**log_meta, "operationId": cancel_id, "deduped": deduped},
        )
        return await self._response(order_id, _cancel_view(cancel_id, ext_ref, PspOperationStatus.SUCCESS), deduped)
