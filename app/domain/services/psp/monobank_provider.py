"""
Monobank Provider — מימוש BasePaymentGateway מעל ה-invoice API של מונובנק.

נקודות קצה:
- POST /api/merchant/invoice/create
- POST /api/merchant/invoice/cancel   (ביטול חשבונית / החזר עם extRef)
- POST /api/merchant/invoice/remove   (פסילת חשבונית שלא שולמה)
- GET  /api/merchant/invoice/status?invoiceId=
- GET  /api/merchant/pubkey

כל קריאה חסומה ב-PSP_TIMEOUT_SECONDS ועוברת דרך ה-circuit breaker.
אין retry ברמת ה-HTTP: יצירת חשבונית אינה אידמפוטנטית אצל הספק.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import PspError, PspTimeoutError
from app.core.logging import get_logger
from app.domain.services.psp.base_provider import (
    BasePaymentGateway,
    CreatedInvoice,
    InvoiceStatus,
    RefundAccepted,
)

logger = get_logger(__name__)

MONO_CCY = 980
MONO_CURRENCY = "UAH"

_PAGE_URL_KEYS = ("pageUrl", "paymentUrl", "invoiceUrl")


def _pick_str(data: Any, keys: tuple[str, ...]) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def build_invoice_payload(
    *,
    order_id: str,
    reference: str,
    amount_minor: int,
    redirect_url: Optional[str] = None,
    webhook_url: Optional[str] = None,
) -> dict[str, Any]:
    """גוף הבקשה ליצירת חשבונית (debit, UAH)."""
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
        raise ValueError("Invalid invoice amount (minor units)")
    payload: dict[str, Any] = {
        "amount": amount_minor,
        "ccy": MONO_CCY,
        "paymentType": "debit",
        "merchantPaymInfo": {
            "reference": reference,
            "destination": f"Order {order_id}",
        },
    }
    if redirect_url:
        payload["redirectUrl"] = redirect_url
    if webhook_url:
        payload["webHookUrl"] = webhook_url
    return payload


class MonobankProvider(BasePaymentGateway):
    """
    לקוח HTTP למונובנק.

    ``transport`` מאפשר להזריק httpx.MockTransport בבדיקות.
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._circuit_breaker = circuit_breaker
        self._base_url = (base_url or settings.PSP_API_BASE_URL).rstrip("/")
        self._token = token if token is not None else settings.PSP_TOKEN
        self._timeout = timeout_seconds or settings.PSP_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "monobank"

    # ── HTTP helper פנימי ──

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """בקשה בודדת לספק. מחזיר JSON מפוענח (או מחרוזת / None לגוף ריק)."""
        headers = {}
        if self._token:
            headers["X-Token"] = self._token
        started = time.monotonic()

        async def _send() -> httpx.Response:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                try:
                    response = await client.request(method, path, json=json, params=params, headers=headers)
                except httpx.TimeoutException as exc:
                    raise PspTimeoutError(path, self._timeout) from exc
                except httpx.RequestError as exc:
                    raise PspError(
                        "PSP_UNKNOWN",
                        f"{path} network error",
                        details={"operation": path, "error_type": type(exc).__name__},
                    ) from exc
            if response.status_code >= 400:
                raise PspError.from_response(path, response)
            return response

        try:
            response = await self._circuit_breaker.execute(_send)
        finally:
            logger.debug(
                "PSP request finished",
                extra_data={
                    "endpoint": path,
                    "method": method,
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                },
            )

        text = response.text.strip()
        if not text:
            return None
        try:
            return response.json()
        except ValueError:
            return text

    # ── ממשק ציבורי ──

    async def create_invoice(
        self,
        *,
        order_id: str,
        reference: str,
        amount_minor: int,
        redirect_url: Optional[str] = None,
        webhook_url: Optional[str] = None,
    ) -> CreatedInvoice:
        payload = build_invoice_payload(
            order_id=order_id,
            reference=reference,
            amount_minor=amount_minor,
            redirect_url=redirect_url,
            webhook_url=webhook_url,
        )
        data = await self._request("POST", "/api/merchant/invoice/create", json=payload)

        invoice_id = _pick_str(data, ("invoiceId",))
        page_url = _pick_str(data, _PAGE_URL_KEYS)
        if not invoice_id or not page_url:
            raise PspError(
                "PSP_UNKNOWN",
                "Monobank invoice response missing invoiceId/pageUrl",
                details={"operation": "invoice/create", "has_invoice_id": bool(invoice_id)},
            )
        return CreatedInvoice(invoice_id=invoice_id, page_url=page_url, raw=data)

    async def cancel_invoice(self, invoice_id: str) -> None:
        await self._request("POST", "/api/merchant/invoice/cancel", json={"invoiceId": invoice_id})

    async def refund_payment(self, invoice_id: str, *, ext_ref: str, amount_minor: int) -> RefundAccepted:
        payload: dict[str, Any] = {"invoiceId": invoice_id, "extRef": ext_ref}
        if not isinstance(amount_minor, bool) and isinstance(amount_minor, int) and amount_minor > 0:
            payload["amount"] = amount_minor
        data = await self._request("POST", "/api/merchant/invoice/cancel", json=payload)

        status = _pick_str(data, ("status",))
        if not status:
            raise PspError(
                "PSP_UNKNOWN",
                "Monobank refund response missing status",
                details={"operation": "invoice/cancel"},
            )
        return RefundAccepted(
            invoice_id=_pick_str(data, ("invoiceId",)) or invoice_id,
            status=status.lower(),
            raw=data,
        )

    async def remove_invoice(self, invoice_id: str) -> dict[str, Any]:
        data = await self._request("POST", "/api/merchant/invoice/remove", json={"invoiceId": invoice_id})
        # 200 עם גוף ריק הוא הצלחה
        return data if isinstance(data, dict) else {}

    async def get_invoice_status(self, invoice_id: str) -> InvoiceStatus:
        data = await self._request("GET", "/api/merchant/invoice/status", params={"invoiceId": invoice_id})
        status = _pick_str(data, ("status",))
        if not status:
            raise PspError(
                "PSP_UNKNOWN",
                "Monobank status response missing status",
                details={"operation": "invoice/status"},
            )
        amount = data.get("amount") if isinstance(data.get("amount"), int) else None
        ccy = data.get("ccy") if isinstance(data.get("ccy"), int) else None
        return InvoiceStatus(
            invoice_id=_pick_str(data, ("invoiceId",)) or invoice_id,
            status=status.lower(),
            amount=amount,
            ccy=ccy,
            reference=_pick_str(data, ("reference",)),
            raw=data,
        )

    async def fetch_public_key(self) -> str:
        data = await self._request("GET", "/api/merchant/pubkey")
        key = data.strip() if isinstance(data, str) else _pick_str(data, ("key",))
        if not key:
            raise PspError(
                "PSP_UNKNOWN",
                "Monobank pubkey missing in response",
                details={"operation": "pubkey"},
            )
        return key
