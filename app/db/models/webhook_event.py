"""
Payment Webhook Event Model - רשומת אירוע מהספק (dedup, סדר, lease ותוצאה).

כל גוף webhook נשמר פעם אחת לפי event_key (sha256 של הגוף הגולמי).
worker שמעבד אירוע מחזיק lease (claimed_at/claim_expires_at/claimed_by);
lease שפג זמינה ל-worker אחר. התוצאה נשמרת תמיד (applied_result) לביקורת.
"""
import enum

from sqlalchemy import Column, String, Integer, DateTime, JSON, Index, Enum as SQLEnum

from app.db.compat import utcnow, new_id, enum_values
from app.db.database import Base


class AppliedResult(str, enum.Enum):
    APPLIED = "applied"
    APPLIED_NOOP = "applied_noop"
    APPLIED_WITH_ISSUE = "applied_with_issue"
    UNMATCHED = "unmatched"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


class PaymentWebhookEvent(Base):
    """אירוע webhook של ספק תשלומים"""

    __tablename__ = "payment_webhook_events"

    id = Column(String(36), primary_key=True, default=new_id)
    provider = Column(String(20), nullable=False)
    event_key = Column(String(64), nullable=False, unique=True)
    raw_sha256 = Column(String(64), nullable=False)

    invoice_id = Column(String(128), nullable=True, index=True)
    status = Column(String(32), nullable=True)
    amount = Column(Integer, nullable=True)
    ccy = Column(Integer, nullable=True)
    reference = Column(String(128), nullable=True)
    raw_payload = Column(JSON, nullable=True)

    received_at = Column(DateTime, default=utcnow, nullable=False)
    provider_modified_at = Column(DateTime, nullable=True)

    claimed_at = Column(DateTime, nullable=True)
    claim_expires_at = Column(DateTime, nullable=True)
    claimed_by = Column(String(64), nullable=True)

    applied_at = Column(DateTime, nullable=True)
    applied_result = Column(
        SQLEnum(AppliedResult, name="applied_result", native_enum=False, length=32, values_callable=enum_values),
        nullable=True,
    )
    applied_error_code = Column(String(64), nullable=True)
    applied_error_message = Column(String(500), nullable=True)

    attempt_id = Column(String(36), nullable=True)
    order_id = Column(String(36), nullable=True)

    __table_args__ = (
        Index("ix_payment_webhook_events_claimable", "applied_at", "claim_expires_at"),
        Index("ix_payment_webhook_events_result_received", "applied_result", "received_at"),
    )
