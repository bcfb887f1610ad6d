"""
תרחיש 2 — פיצוי כשיצירת החשבונית נכשלת

מכסה:
- הספק לא זמין → 503, ההזמנה מבוטלת והמלאי חוזר
- החשבונית נוצרה אבל לא נשמרה → ביטול החשבונית פעם אחת,
  ניסיון PSP_INVOICE_PERSIST_FAILED, הזמנה מבוטלת, מלאי חוזר
- ניסיון חוזר של הלקוח על הזמנה מבוטלת נדחה
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import PspTimeoutError
from app.db.models.order import OrderStatus, PaymentStatus, InventoryStatus
from app.db.models.payment_attempt import AttemptStatus
from app.domain.services.payment_attempt_service import PaymentAttemptService


@pytest.mark.scenario
class TestInvoiceCompensation:
    """כשל אחרי שמלאי נשמר — ההזמנה לא נשארת תקועה"""

    async def test_provider_timeout(
        self, reserved_order, fake_gateway, create_attempt, load_order, load_attempts, stock_of
    ):
        order, product = reserved_order
        fake_gateway.create_error = PspTimeoutError("invoice/create", 10.0)

        response = await create_attempt(order.id)

        assert response.status_code == 503
        assert response.json()["error"]["details"]["psp_code"] == "PSP_TIMEOUT"
        [attempt] = await load_attempts(order.id)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.last_error_code == "PSP_TIMEOUT"
        fresh = await load_order(order.id)
        assert fresh.status == OrderStatus.CANCELED
        assert fresh.payment_status == PaymentStatus.FAILED
        assert fresh.inventory_status == InventoryStatus.RELEASED
        assert await stock_of(product.id) == 10

    async def test_invoice_persist_failure(
        self, reserved_order, fake_gateway, create_attempt, load_order, load_attempts, stock_of
    ):
        order, product = reserved_order
        db_down = AsyncMock(side_effect=OperationalError("UPDATE payment_attempts", {}, Exception("db down")))

        with patch.object(PaymentAttemptService, "activate_with_invoice", db_down):
            response = await create_attempt(order.id)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ERR_5002"
        assert db_down.await_count == 2

        # החשבונית בוטלה אצל הספק פעם אחת בלבד
        assert fake_gateway.canceled == ["inv_1"]

        [attempt] = await load_attempts(order.id)
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.last_error_code == "PSP_INVOICE_PERSIST_FAILED"
        assert attempt.metadata_["invoiceId"] == "inv_1"

        fresh = await load_order(order.id)
        assert fresh.status == OrderStatus.CANCELED
        assert fresh.stock_restored is True
        assert await stock_of(product.id) == 10

        # הלקוח מנסה שוב — ההזמנה כבר לא ניתנת לתשלום
        retry = await create_attempt(order.id)
        assert retry.status_code == 409
        assert len(fake_gateway.created) == 1
