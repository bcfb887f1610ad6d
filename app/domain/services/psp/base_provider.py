"""
ממשק בסיסי לספק תשלומים (PSP) — Dependency Inversion.

ה-orchestrator, ה-janitor ובדיקת החתימה תלויים רק בממשק הזה.
כל מימוש אחראי על HTTP, מיפוי שגיאות ל-PspError ו-circuit breaker.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class CreatedInvoice:
    invoice_id: str
    page_url: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceStatus:
    invoice_id: str
    status: str
    amount: Optional[int] = None
    ccy: Optional[int] = None
    reference: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundAccepted:
    invoice_id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


class BasePaymentGateway(ABC):
    """ממשק אחיד ליצירה, ביטול ושאילתת חשבוניות אצל הספק."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק (monobank) — נשמר על ניסיון התשלום."""

    @abstractmethod
    async def create_invoice(
        self,
        *,
        order_id: str,
        reference: str,
        amount_minor: int,
        redirect_url: Optional[str] = None,
        webhook_url: Optional[str] = None,
    ) -> CreatedInvoice:
        """
        יצירת חשבונית מרוחקת.

        Args:
            reference: מזהה ניסיון התשלום — חוזר אלינו ב-webhook
            amount_minor: סכום ביחידות מינימליות (חיובי)

        Raises:
            PspTimeoutError: הספק לא ענה בזמן הקבוע
            PspError: כל כשל אחר (4xx, 5xx, תשובה ללא invoiceId/pageUrl)
        """

    @abstractmethod
    async def cancel_invoice(self, invoice_id: str) -> None:
        """ביטול חשבונית שנוצרה. Raises: PspError."""

    @abstractmethod
    async def refund_payment(self, invoice_id: str, *, ext_ref: str, amount_minor: int) -> RefundAccepted:
        """
        החזר (מלא או חלקי) של תשלום שהצליח.

        Args:
            ext_ref: מזהה idempotency שלנו — הספק מזהה בקשה חוזרת לפיו

        Returns:
            RefundAccepted — status הוא processing / success / failure כפי שהספק דיווח

        Raises:
            PspError
        """

    @abstractmethod
    async def remove_invoice(self, invoice_id: str) -> dict[str, Any]:
        """פסילת חשבונית שטרם שולמה. Raises: PspError."""

    @abstractmethod
    async def get_invoice_status(self, invoice_id: str) -> InvoiceStatus:
        """שאילתת מצב חשבונית (ל-reconcile ע"י ה-janitor). Raises: PspError."""

    @abstractmethod
    async def fetch_public_key(self) -> str:
        """מפתח האימות הציבורי של ה-webhooks כפי שהספק מחזיר אותו."""
