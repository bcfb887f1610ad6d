"""
Provider Metadata - מבנים טיפוסיים ל-psp_metadata של הזמנה ול-metadata של ניסיון תשלום

השדות נשמרים כ-JSON ב-DB עם מפתחות camelCase (invoiceId, pageUrl).
כל קריאה עוברת ולידציה; רשימת events מתארכת בלבד — היסטוריה לא נכתבת מחדש.
"""
import enum
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.db.compat import utcnow


class PspEventKind(str, enum.Enum):
    INVOICE_CREATED = "invoice_created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REVERSED = "payment_reversed"
    NEEDS_REVIEW = "needs_review"


class _MetadataModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class InvoiceSnapshot(_MetadataModel):
    """המצב האחרון שהספק דיווח עליו לחשבונית"""

    invoice_id: str
    page_url: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    ccy: Optional[int] = None
    reference: Optional[str] = None


class PspEvent(_MetadataModel):
    kind: PspEventKind
    at: datetime = Field(default_factory=utcnow)
    invoice_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    ccy: Optional[int] = None
    reference: Optional[str] = None
    reason: Optional[str] = None
    event_id: Optional[str] = None


class OrderPspMetadata(_MetadataModel):
    provider: Literal["monobank", "none"] = "monobank"
    invoice: Optional[InvoiceSnapshot] = None
    events: tuple[PspEvent, ...] = ()

    @classmethod
    def from_db(cls, raw: Optional[dict[str, Any]], provider: str = "monobank") -> "OrderPspMetadata":
        """ולידציה של הערך השמור; ערך ריק מחזיר מבנה ריק לספק הנתון"""
        if not raw:
            return cls(provider=provider)
        return cls.model_validate(raw)

    def with_invoice(self, snapshot: InvoiceSnapshot) -> "OrderPspMetadata":
        return self.model_copy(update={"invoice": snapshot})

    def with_event(self, event: PspEvent) -> "OrderPspMetadata":
        return self.model_copy(update={"events": (*self.events, event)})


class AttemptMetadata(_MetadataModel):
    invoice_id: Optional[str] = None
    page_url: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_db(cls, raw: Optional[dict[str, Any]]) -> "AttemptMetadata":
        if not raw:
            return cls()
        return cls.model_validate(raw)

    def merged(self, **changes: Any) -> "AttemptMetadata":
        return self.model_copy(update={k: v for k, v in changes.items() if v is not None})
