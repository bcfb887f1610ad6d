"""
Inventory Move Model - יומן תנועות מלאי (append-only)
"""
import enum

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Enum as SQLEnum

from app.db.compat import utcnow, new_id, enum_values
from app.db.database import Base


class MoveKind(str, enum.Enum):
    RESERVE = "reserve"
    RELEASE = "release"


def build_move_key(kind: MoveKind, order_id: str, product_id: str) -> str:
    return f"{kind.value}:{order_id}:{product_id}"


class InventoryMove(Base):
    """
    תנועת מלאי בודדת.

    move_key ייחודי — שמירה/שחרור חוזרים לאותה שורת הזמנה נחסמים ברמת ה-DB
    ומזוהים כ-replay.
    """

    __tablename__ = "inventory_moves"

    id = Column(String(36), primary_key=True, default=new_id)
    move_key = Column(String(200), nullable=False, unique=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    kind = Column(
        SQLEnum(MoveKind, name="inventory_move_kind", native_enum=False, length=16, values_callable=enum_values),
        nullable=False,
    )
    created_at = Column(DateTime, default=utcnow, nullable=False)
