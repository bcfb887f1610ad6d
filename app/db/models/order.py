"""
Order Model - הזמנה, מצב תשלום ומצב מלאי
"""
import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    CheckConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from app.db.compat import utcnow, new_id, enum_values
from app.db.database import Base


class PaymentProvider(str, enum.Enum):
    NONE = "none"
    MONOBANK = "monobank"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    REQUIRES_PAYMENT = "requires_payment"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    NEEDS_REVIEW = "needs_review"


class OrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    INVENTORY_RESERVED = "INVENTORY_RESERVED"
    INVENTORY_FAILED = "INVENTORY_FAILED"
    PAID = "PAID"
    CANCELED = "CANCELED"


class InventoryStatus(str, enum.Enum):
    NONE = "none"
    RESERVING = "reserving"
    RESERVED = "reserved"
    RELEASE_PENDING = "release_pending"
    RELEASED = "released"
    FAILED = "failed"


def _enum(enum_cls, name: str) -> SQLEnum:
    # VARCHAR + CHECK ולא enum native — ערך חדש לא דורש מיגרציה ב-PostgreSQL
    return SQLEnum(enum_cls, name=name, native_enum=False, length=32, values_callable=enum_values)


class Order(Base):
    """הזמנה — מצב התשלום משתנה רק דרך guarded_payment_status_update"""

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    total_amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="UAH")

    payment_provider = Column(_enum(PaymentProvider, "payment_provider"), nullable=False, default=PaymentProvider.MONOBANK)
    payment_status = Column(_enum(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING)
    status = Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.CREATED)
    inventory_status = Column(_enum(InventoryStatus, "inventory_status"), nullable=False, default=InventoryStatus.NONE)

    failure_code = Column(String(64), nullable=True)
    failure_message = Column(String(500), nullable=True)

    # מפתח idempotency מהלקוח — יצירת הזמנה חוזרת לא יוצרת כפילות
    idempotency_key = Column(String(128), nullable=False, unique=True)

    stock_restored = Column(Boolean, nullable=False, default=False)
    restocked_at = Column(DateTime, nullable=True)

    psp_charge_id = Column(String(128), nullable=True)
    psp_status_reason = Column(String(128), nullable=True)
    psp_metadata = Column(JSON, nullable=True)

    # lease של sweep — מונע שני workers על אותה הזמנה
    sweep_claimed_at = Column(DateTime, nullable=True)
    sweep_claim_expires_at = Column(DateTime, nullable=True)
    sweep_run_id = Column(String(36), nullable=True)
    sweep_claimed_by = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", lazy="selectin")

    __table_args__ = (
        CheckConstraint("total_amount_minor >= 0", name="ck_orders_total_non_negative"),
        # ספק none לא מגיע ל-requires_payment / refunded
        CheckConstraint(
            "payment_provider <> 'none' OR payment_status NOT IN ('requires_payment', 'refunded')",
            name="ck_orders_none_provider_statuses",
        ),
        Index("ix_orders_sweep_candidates", "payment_status", "stock_restored", "created_at"),
    )


class OrderItem(Base):
    """שורת הזמנה — מוצר וכמות ששוריינו"""

    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_minor = Column(Integer, nullable=False, default=0)

    order = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )
