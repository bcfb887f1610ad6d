"""
Inventory Service - שמירה ושחרור מלאי אטומיים

כל תנועה היא:
1. INSERT של שורת inventory_moves עם move_key ייחודי (בתוך savepoint) —
   תנועה חוזרת נתקלת ב-IntegrityError ומזוהה כ-replay.
2. UPDATE מותנה אחד על products.stock (הפחתה רק אם stock >= qty).
אם ה-UPDATE לא תפס שורה, ה-savepoint מתגלגל אחורה יחד עם שורת התנועה.
"""
import enum
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InsufficientStockError, ValidationException
from app.core.logging import get_logger
from app.db.cas import compare_and_swap
from app.db.compat import utcnow, new_id
from app.db.models.inventory_move import InventoryMove, MoveKind, build_move_key
from app.db.models.order import Order, OrderItem, OrderStatus, InventoryStatus
from app.db.models.product import Product

logger = get_logger(__name__)


class MoveOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_RESERVED = "already_reserved"
    ALREADY_RELEASED = "already_released"
    NO_RESERVE = "no_reserve"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


@dataclass(frozen=True)
class MoveResult:
    outcome: MoveOutcome

    @property
    def ok(self) -> bool:
        return self.outcome != MoveOutcome.INSUFFICIENT_STOCK

    @property
    def applied(self) -> bool:
        return self.outcome == MoveOutcome.APPLIED


class _StockGuardFailed(Exception):
    """גורם ל-rollback של ה-savepoint כשה-UPDATE המותנה לא תפס שורה"""


def _validate_quantity(quantity) -> None:
    # bool הוא int בפייתון — לא כמות חוקית
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationException("Quantity must be a positive integer", field="quantity")


class InventoryService:
    """Append-only inventory ledger over products.stock"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _move_exists(self, move_key: str) -> bool:
        result = await self.db.execute(
            select(InventoryMove.id).where(InventoryMove.move_key == move_key)
        )
        return result.scalar_one_or_none() is not None

    async def _insert_move(
        self, move_key: str, order_id: str, product_id: str, quantity: int, kind: MoveKind
    ) -> None:
        await self.db.execute(
            insert(InventoryMove.__table__).values(
                id=new_id(),
                move_key=move_key,
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                kind=kind,
                created_at=utcnow(),
            )
        )

    async def reserve(self, order_id: str, product_id: str, quantity: int) -> MoveResult:
        """
        שמירת ``quantity`` יחידות של מוצר עבור הזמנה.

        Returns:
            APPLIED — המלאי הופחת; ALREADY_RESERVED — כבר נשמר (replay);
            INSUFFICIENT_STOCK — אין מספיק מלאי (לא נוצרה תנועה)
        """
        _validate_quantity(quantity)
        move_key = build_move_key(MoveKind.RESERVE, order_id, product_id)

        if await self._move_exists(move_key):
            return MoveResult(MoveOutcome.ALREADY_RESERVED)

        try:
            async with self.db.begin_nested():
                await self._insert_move(move_key, order_id, product_id, quantity, MoveKind.RESERVE)
                row = await compare_and_swap(
                    self.db,
                    Product,
                    [Product.id == product_id, Product.stock >= quantity],
                    {"stock": Product.stock - quantity, "updated_at": utcnow()},
                    returning=[Product.id, Product.stock],
                )
                if row is None:
                    raise _StockGuardFailed()
        except IntegrityError:
            # worker מקביל רשם את אותה תנועה לפנינו
            return MoveResult(MoveOutcome.ALREADY_RESERVED)
        except _StockGuardFailed:
            return MoveResult(MoveOutcome.INSUFFICIENT_STOCK)

        return MoveResult(MoveOutcome.APPLIED)

    async def _reserved_quantity(self, reserve_key: str) -> Optional[int]:
        result = await self.db.execute(
            select(InventoryMove.quantity).where(InventoryMove.move_key == reserve_key)
        )
        return result.scalar_one_or_none()

    async def release(self, order_id: str, product_id: str) -> MoveResult:
        """
        שחרור הכמות ששוריינה. מחזיר NO_RESERVE אם לא הייתה שמירה,
        ALREADY_RELEASED אם כבר שוחרר. חריגת DB מתפשטת לקורא — הקורא לא
        מסמן stock_restored עד שכל השחרורים הצליחו.
        """
        reserve_key = build_move_key(MoveKind.RESERVE, order_id, product_id)
        release_key = build_move_key(MoveKind.RELEASE, order_id, product_id)

        quantity = await self._reserved_quantity(reserve_key)
        if quantity is None:
            return MoveResult(MoveOutcome.NO_RESERVE)
        _validate_quantity(quantity)
        if await self._move_exists(release_key):
            return MoveResult(MoveOutcome.ALREADY_RELEASED)

        try:
            async with self.db.begin_nested():
                await self._insert_move(release_key, order_id, product_id, quantity, MoveKind.RELEASE)
                row = await compare_and_swap(
                    self.db,
                    Product,
                    [Product.id == product_id],
                    {"stock": Product.stock + quantity, "updated_at": utcnow()},
                    returning=[Product.id],
                )
                if row is None:
                    raise RuntimeError(f"product {product_id} missing during release")
        except IntegrityError:
            return MoveResult(MoveOutcome.ALREADY_RELEASED)

        return MoveResult(MoveOutcome.APPLIED)

    async def reserved_lines(self, order_id: str) -> list[tuple[str, int]]:
        """(product_id, quantity) של כל תנועות ה-reserve של ההזמנה"""
        result = await self.db.execute(
            select(InventoryMove.product_id, InventoryMove.quantity)
            .where(
                InventoryMove.order_id == order_id,
                InventoryMove.kind == MoveKind.RESERVE,
            )
            .order_by(InventoryMove.product_id)
        )
        return [(row.product_id, row.quantity) for row in result.all()]

    async def reserve_order(self, order_id: str) -> None:
        """
        שמירת מלאי לכל שורות ההזמנה.

        כשל באחת השורות משחרר את מה שכבר נשמר, מסמן INVENTORY_FAILED
        וזורק InsufficientStockError.
        """
        claimed = await compare_and_swap(
            self.db,
            Order,
            [Order.id == order_id, Order.inventory_status == InventoryStatus.NONE],
            {"inventory_status": InventoryStatus.RESERVING, "updated_at": utcnow()},
            returning=[Order.id],
        )
        if claimed is None:
            # כבר בתהליך / נשמר — replay של checkout
            await self.db.commit()
            return

        result = await self.db.execute(
            select(OrderItem.product_id, OrderItem.quantity)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.product_id)
        )
        lines = [(row.product_id, row.quantity) for row in result.all()]

        reserved: list[str] = []
        for product_id, quantity in lines:
            outcome = await self.reserve(order_id, product_id, quantity)
            if not outcome.ok:
                for done_product_id in reserved:
                    await self.release(order_id, done_product_id)
                await compare_and_swap(
                    self.db,
                    Order,
                    [Order.id == order_id],
                    {
                        "inventory_status": InventoryStatus.FAILED,
                        "status": OrderStatus.INVENTORY_FAILED,
                        "failure_code": "INSUFFICIENT_STOCK",
                        "updated_at": utcnow(),
                    },
                    returning=[Order.id],
                )
                await self.db.commit()
                logger.info(
                    "Inventory reservation failed",
                    extra_data={"order_id": order_id, "product_id": product_id, "quantity": quantity},
                )
                raise InsufficientStockError(product_id, quantity)
            reserved.append(product_id)

        await compare_and_swap(
            self.db,
            Order,
            [Order.id == order_id, Order.inventory_status == InventoryStatus.RESERVING],
            {
                "inventory_status": InventoryStatus.RESERVED,
                "status": OrderStatus.INVENTORY_RESERVED,
                "updated_at": utcnow(),
            },
            returning=[Order.id],
        )
        await self.db.commit()
