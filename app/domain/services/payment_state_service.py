"""
Payment State Service - מעבר מצב תשלום מוגן (guarded transition)

מעבר הוא UPDATE מותנה אחד: WHERE id=? AND payment_provider=? AND
payment_status IN (<מותרים>). שני workers שמנסים לעבור על אותה הזמנה —
רק אחד מעדכן; השני רואה 0 שורות וקורא את המצב הנוכחי רק לצורך אבחון.
דחייה היא תוצאה ולא חריגה.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger, log_payment_event, PaymentLogCode
from app.db.cas import compare_and_swap
from app.db.compat import utcnow
from app.db.models.order import Order, PaymentProvider, PaymentStatus
from app.state_machine.payment_states import (
    NONE_PROVIDER_FORBIDDEN_TARGETS,
    TransitionRejectReason,
    TransitionSource,
    allowed_from,
    is_valid_transition,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    reason: Optional[TransitionRejectReason] = None
    from_status: Optional[PaymentStatus] = None
    current_provider: Optional[PaymentProvider] = None


class PaymentStateService:
    """Guarded payment-status transitions for orders"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _current_state(self, order_id: str):
        result = await self.db.execute(
            select(Order.payment_status, Order.payment_provider).where(Order.id == order_id)
        )
        return result.one_or_none()

    def _log_rejection(
        self,
        order_id: str,
        from_status: Optional[PaymentStatus],
        to: PaymentStatus,
        source: TransitionSource,
        reason: str,
        event_id: Optional[str],
        note: Optional[str],
        provider: PaymentProvider,
    ) -> None:
        log_payment_event(
            logger,
            logging.WARNING,
            PaymentLogCode.TRANSITION_REJECTED,
            {
                "orderId": order_id,
                "fromStatus": from_status,
                "toStatus": to,
                "source": source,
                "eventId": event_id,
                "note": note,
                "provider": provider,
                "reason": reason,
            },
        )

    async def guarded_payment_status_update(
        self,
        order_id: str,
        payment_provider: PaymentProvider,
        to: PaymentStatus,
        source: TransitionSource,
        *,
        event_id: Optional[str] = None,
        note: Optional[str] = None,
        extra_where: Sequence[Any] = (),
        extra_values: Optional[dict[str, Any]] = None,
        allow_same_state: Optional[bool] = None,
    ) -> TransitionResult:
        """
        מעבר ל-``to`` רק אם (ספק, סטטוס נוכחי) הוא קודם מותר לפי המטריצה.

        Args:
            extra_where: תנאים נוספים על השורה (למשל restocked_at IS NOT NULL)
            extra_values: עמודות נוספות לעדכון באותו UPDATE
            allow_same_state: ברירת מחדל — True אם יש extra_values

        Returns:
            TransitionResult — applied=True, או applied=False עם reason
        """
        if payment_provider == PaymentProvider.NONE and to in NONE_PROVIDER_FORBIDDEN_TARGETS:
            current = await self._current_state(order_id)
            if current is None:
                return TransitionResult(applied=False, reason=TransitionRejectReason.NOT_FOUND)
            self._log_rejection(
                order_id, current.payment_status, to, source,
                "provider_none_disallows_target", event_id, note, payment_provider,
            )
            return TransitionResult(
                applied=False,
                reason=TransitionRejectReason.INVALID_TRANSITION,
                from_status=current.payment_status,
                current_provider=current.payment_provider,
            )

        if allow_same_state is None:
            allow_same_state = bool(extra_values)
        eligible_from = allowed_from(payment_provider, to, allow_same_state)

        values = dict(extra_values or {})
        values["payment_status"] = to
        values.setdefault("updated_at", utcnow())

        row = await compare_and_swap(
            self.db,
            Order,
            [
                Order.id == order_id,
                Order.payment_provider == payment_provider,
                Order.payment_status.in_(eligible_from),
                *extra_where,
            ],
            values,
            returning=[Order.id, Order.payment_status],
        )
        if row is not None:
            return TransitionResult(applied=True, current_provider=payment_provider)

        current = await self._current_state(order_id)
        if current is None:
            return TransitionResult(applied=False, reason=TransitionRejectReason.NOT_FOUND)

        def _result(reason: TransitionRejectReason) -> TransitionResult:
            return TransitionResult(
                applied=False,
                reason=reason,
                from_status=current.payment_status,
                current_provider=current.payment_provider,
            )

        if current.payment_provider != payment_provider:
            self._log_rejection(
                order_id, current.payment_status, to, source,
                "provider_mismatch", event_id, note, payment_provider,
            )
            return _result(TransitionRejectReason.PROVIDER_MISMATCH)

        if current.payment_status == to:
            return _result(TransitionRejectReason.ALREADY_IN_STATE)

        if not is_valid_transition(payment_provider, current.payment_status, to):
            self._log_rejection(
                order_id, current.payment_status, to, source,
                "invalid_transition", event_id, note, payment_provider,
            )
            return _result(TransitionRejectReason.INVALID_TRANSITION)

        # מעבר חוקי שנחסם ע"י extra_where (או שהמצב השתנה בין ה-UPDATE לקריאה)
        self._log_rejection(
            order_id, current.payment_status, to, source,
            "blocked", event_id, note, payment_provider,
        )
        return _result(TransitionRejectReason.BLOCKED)
