"""
Restock Service - החזרת מלאי ברמת הזמנה

restock_order משחרר את כל שורות ה-reserve של ההזמנה ומסמן אותה סופית.
הסימון stock_restored=True / restocked_at נעשה פעם אחת בלבד (UPDATE מותנה
על stock_restored=False) ורק אחרי שכל השחרורים הצליחו. כשל בשחרור משאיר
את ההזמנה ב-release_pending — ה-sweep הבא ינסה שוב.
"""
import enum
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import OrderNotFoundError, OrderStateInvalidError
from app.core.logging import get_logger
from app.db.cas import compare_and_swap
from app.db.compat import utcnow, new_id
from app.db.models.order import (
    Order,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    InventoryStatus,
)
from app.domain.services.inventory_service import InventoryService
from app.domain.services.payment_state_service import PaymentStateService
from app.state_machine.payment_states import TransitionSource

logger = get_logger(__name__)

ORPHAN_FAILURE_MESSAGE = "Orphan order: no inventory reservation was recorded."


class RestockReason(str, enum.Enum):
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    STALE = "stale"


def _lifecycle_writable():
    """הזמנה ששולמה או הוחזרה אצל ספק חיצוני שומרת על ה-status שלה"""
    return or_(
        Order.payment_provider == PaymentProvider.NONE,
        Order.payment_status.not_in([PaymentStatus.PAID, PaymentStatus.REFUNDED]),
    )


class RestockService:
    """Order-level inventory release"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.inventory = InventoryService(db)
        self.payment_state = PaymentStateService(db)

    async def _try_claim_lease(self, order_id: str, worker_id: str, ttl_minutes: int) -> bool:
        """claim של ה-sweep lease — רק אם אין claim או שפג תוקפו"""
        now = utcnow()
        row = await compare_and_swap(
            self.db,
            Order,
            [
                Order.id == order_id,
                Order.stock_restored.is_(False),
                or_(Order.sweep_claim_expires_at.is_(None), Order.sweep_claim_expires_at < now),
            ],
            {
                "sweep_claimed_at": now,
                "sweep_claim_expires_at": now + timedelta(minutes=ttl_minutes),
                "sweep_run_id": new_id(),
                "sweep_claimed_by": worker_id,
                "updated_at": now,
            },
            returning=[Order.id],
        )
        return row is not None

    async def _finalize_orphan(self, order_id: str, provider: PaymentProvider, source: TransitionSource) -> bool:
        """הזמנה ללא תנועות reserve — הופכת לסופית בלי לגעת במלאי"""
        now = utcnow()
        touched = await compare_and_swap(
            self.db,
            Order,
            [Order.id == order_id, Order.stock_restored.is_(False)],
            {
                "inventory_status": InventoryStatus.RELEASED,
                "failure_code": func.coalesce(Order.failure_code, "STALE_ORPHAN"),
                "failure_message": func.coalesce(Order.failure_message, ORPHAN_FAILURE_MESSAGE),
                "stock_restored": True,
                "restocked_at": now,
                "updated_at": now,
            },
            returning=[Order.id],
        )
        if touched is None:
            await self.db.commit()
            return False

        await compare_and_swap(
            self.db,
            Order,
            [Order.id == order_id, _lifecycle_writable()],
            {"status": OrderStatus.INVENTORY_FAILED},
            returning=[Order.id],
        )
        await self.payment_state.guarded_payment_status_update(
            order_id,
            provider,
            PaymentStatus.FAILED,
            source,
            extra_where=[Order.restocked_at == now],
        )
        await self.db.commit()
        logger.info(
            "Orphan order finalized",
            extra_data={"order_id": order_id, "provider": provider.value},
        )
        return True

    async def restock_order(
        self,
        order_id: str,
        reason: Optional[RestockReason] = None,
        already_claimed: bool = False,
        worker_id: Optional[str] = None,
        claim_ttl_minutes: Optional[int] = None,
    ) -> bool:
        """
        שחרור כל המלאי השמור של הזמנה.

        Args:
            reason: failed / refunded / canceled / stale
            already_claimed: הקורא (sweep) כבר מחזיק ב-lease
            worker_id: מזהה ה-worker לצורך trace

        Returns:
            True אם ההזמנה סומנה סופית בקריאה הזו (שוחררה או orphan)

        Raises:
            OrderNotFoundError: ההזמנה לא קיימת
            OrderStateInvalidError: הזמנה ששולמה ללא reason=refunded
        """
        result = await self.db.execute(
            select(
                Order.payment_provider,
                Order.payment_status,
                Order.inventory_status,
                Order.stock_restored,
                Order.restocked_at,
            ).where(Order.id == order_id)
        )
        order = result.one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)

        provider = order.payment_provider
        is_no_payment = provider == PaymentProvider.NONE
        source = TransitionSource.JANITOR if already_claimed else TransitionSource.SYSTEM

        if (
            order.inventory_status == InventoryStatus.RELEASED
            or order.stock_restored
            or order.restocked_at is not None
        ):
            return False

        # גם ב-inventory_status=none ייתכנו תנועות (קריסה בין reserve לעדכון הסטטוס)
        reserved = await self.inventory.reserved_lines(order_id)

        if not reserved:
            if reason == RestockReason.STALE or (
                is_no_payment and reason in (RestockReason.FAILED, RestockReason.CANCELED)
            ):
                return await self._finalize_orphan(order_id, provider, source)
            return False

        # עבור ספק none סטטוס paid אינו סופי (נכפה ע"י CHECK) — לכן רק לספק חיצוני
        if not is_no_payment and order.payment_status == PaymentStatus.PAID and reason != RestockReason.REFUNDED:
            raise OrderStateInvalidError(
                order_id,
                "Cannot restock a paid order without refund reason",
                details={"reason": reason.value if reason else None},
            )

        if not already_claimed:
            claimed = await self._try_claim_lease(
                order_id,
                worker_id or "restock",
                claim_ttl_minutes or settings.RESTOCK_CLAIM_TTL_MINUTES,
            )
            if not claimed:
                # worker אחר מטפל בהזמנה
                await self.db.commit()
                return False

        await compare_and_swap(
            self.db,
            Order,
            [Order.id == order_id, Order.inventory_status != InventoryStatus.RELEASED],
            {"inventory_status": InventoryStatus.RELEASE_PENDING, "updated_at": utcnow()},
            returning=[Order.id],
        )
        await self.db.commit()

        for product_id, _quantity in reserved:
            await self.inventory.release(order_id, product_id)

        finalized_at = utcnow()
        finalized = await compare_and_swap(
            self.db,
            Order,
            [Order.id == order_id, Order.stock_restored.is_(False)],
            {"stock_restored": True, "restocked_at": finalized_at, "updated_at": finalized_at},
            returning=[Order.id],
        )
        if finalized is None:
            await self.db.commit()
            return False

        await compare_and_swap(
            self.db,
            Order,
            [Order.id == order_id],
            {"inventory_status": InventoryStatus.RELEASED, "updated_at": finalized_at},
            returning=[Order.id],
        )

        lifecycle: Optional[OrderStatus] = None
        if reason in (RestockReason.FAILED, RestockReason.STALE):
            lifecycle = OrderStatus.INVENTORY_FAILED
        elif reason == RestockReason.CANCELED:
            lifecycle = OrderStatus.CANCELED
        if lifecycle is not None:
            await compare_and_swap(
                self.db,
                Order,
                [Order.id == order_id, _lifecycle_writable()],
                {"status": lifecycle},
                returning=[Order.id],
            )

        target: Optional[PaymentStatus] = None
        if reason == RestockReason.REFUNDED and not is_no_payment:
            target = PaymentStatus.REFUNDED
        elif reason in (RestockReason.FAILED, RestockReason.CANCELED, RestockReason.STALE):
            target = PaymentStatus.FAILED

        # failed / refunded כבר סופיים — אין מעבר נוסף
        if target is not None and order.payment_status not in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            await self.payment_state.guarded_payment_status_update(
                order_id,
                provider,
                target,
                source,
                extra_where=[Order.restocked_at == finalized_at],
            )
        await self.db.commit()

        logger.info(
            "Order restocked",
            extra_data={
                "order_id": order_id,
                "reason": reason.value if reason else None,
                "lines": len(reserved),
            },
        )
        return True
