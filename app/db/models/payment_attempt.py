"""
Payment Attempt Model - ניסיון תשלום מול הספק (חשבונית אחת)
"""
import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    UniqueConstraint,
    text,
    Enum as SQLEnum,
)

from app.db.compat import utcnow, new_id, enum_values
from app.db.database import Base
from app.db.models.order import PaymentProvider


class AttemptStatus(str, enum.Enum):
    CREATING = "creating"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


OPEN_ATTEMPT_STATUSES = (AttemptStatus.CREATING, AttemptStatus.ACTIVE)
TERMINAL_ATTEMPT_STATUSES = (AttemptStatus.SUCCEEDED, AttemptStatus.FAILED, AttemptStatus.CANCELED)


def build_attempt_idempotency_key(provider: str, order_id: str, attempt_number: int) -> str:
    """מפתח דטרמיניסטי — אותו ניסיון תמיד שולח לספק את אותו מפתח"""
    provider_value = getattr(provider, "value", provider)
    return f"{provider_value}:{order_id}:{attempt_number}"


_OPEN_ATTEMPT_WHERE = text("status IN ('creating', 'active')")


class PaymentAttempt(Base):
    """ניסיון תשלום — לכל היותר ניסיון פתוח אחד (creating/active) להזמנה"""

    __tablename__ = "payment_attempts"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    provider = Column(
        SQLEnum(PaymentProvider, name="attempt_provider", native_enum=False, length=32, values_callable=enum_values),
        nullable=False,
    )
    status = Column(
        SQLEnum(AttemptStatus, name="attempt_status", native_enum=False, length=32, values_callable=enum_values),
        nullable=False,
        default=AttemptStatus.CREATING,
    )
    attempt_number = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    expected_amount_minor = Column(Integer, nullable=False)
    idempotency_key = Column(String(200), nullable=False, unique=True)

    provider_payment_intent_id = Column(String(128), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    last_error_code = Column(String(64), nullable=True)
    last_error_message = Column(String(500), nullable=True)

    # זמן השינוי האחרון אצל הספק שהוחל — בסיס לדחיית אירועים ישנים
    provider_modified_at = Column(DateTime, nullable=True)
    # lease לקריאת יצירת החשבונית "בטיסה" — ניסיון creating עם lease חי לא נדרס
    inflight_until = Column(DateTime, nullable=True)
    # lease של ה-janitor (יישוב מול הספק) — worker אחד לכל ניסיון
    janitor_claimed_until = Column(DateTime, nullable=True)
    janitor_claimed_by = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    finalized_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("order_id", "provider", "attempt_number", name="uq_attempt_order_provider_number"),
        Index(
            "uq_payment_attempts_one_open_per_order",
            "order_id",
            unique=True,
            postgresql_where=_OPEN_ATTEMPT_WHERE,
            sqlite_where=_OPEN_ATTEMPT_WHERE,
        ),
        Index("ix_payment_attempts_provider_intent", "provider", "provider_payment_intent_id"),
        Index("ix_payment_attempts_status_updated", "status", "updated_at"),
    )
