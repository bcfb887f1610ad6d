"""
PSP Operation Models - החזרים וביטולי חשבונית שיזם אדמין

כל פעולה נרשמת פעם אחת לפי ext_ref (ייחודי להזמנה) — בקשה חוזרת מזהה את
השורה הקיימת במקום לפנות שוב לספק. מחזור חיים:
requested → processing (הספק קיבל) → success, או failure (ניתן לנסות שוב).
"""
import enum

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, JSON, Enum as SQLEnum

from app.db.compat import utcnow, new_id, enum_values
from app.db.database import Base


class PspOperationStatus(str, enum.Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"


def _status_column() -> Column:
    return Column(
        SQLEnum(PspOperationStatus, name="psp_operation_status", native_enum=False, length=16, values_callable=enum_values),
        nullable=False,
        default=PspOperationStatus.REQUESTED,
    )


def build_refund_ext_ref(order_id: str) -> str:
    # החזר מלא בלבד — אחד להזמנה
    return f"refund:{order_id}:full"


def build_cancel_ext_ref(order_id: str) -> str:
    return f"cancel:{order_id}"


class PaymentRefund(Base):
    """החזר מלא של הזמנה ששולמה"""

    __tablename__ = "payment_refunds"

    id = Column(String(36), primary_key=True, default=new_id)
    provider = Column(String(20), nullable=False, default="monobank")
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    attempt_id = Column(String(36), nullable=True)
    ext_ref = Column(String(128), nullable=False, unique=True)
    status = _status_column()
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    request_id = Column(String(64), nullable=True)
    provider_created_at = Column(DateTime, nullable=True)
    provider_modified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PaymentCancel(Base):
    """ביטול חשבונית שטרם שולמה ושחרור המלאי של ההזמנה"""

    __tablename__ = "payment_cancels"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    attempt_id = Column(String(36), nullable=True)
    ext_ref = Column(String(128), nullable=False, unique=True)
    invoice_id = Column(String(128), nullable=False)
    status = _status_column()
    request_id = Column(String(64), nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(String(500), nullable=True)
    psp_response = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
