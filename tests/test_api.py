"""
בדיקות API — webhook, ניסיונות תשלום, janitor, החזר / ביטול ע"י אדמין ו-health.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.core.exceptions import PspError
from app.db.cas import fetch_fresh
from app.db.models.order import Order, PaymentStatus
from app.db.models.payment_attempt import AttemptStatus
from app.domain.services.webhook_ingestion_service import WebhookIngestionService


class TestWebhookEndpoint:

    @pytest.mark.unit
    async def test_signed_success_marks_order_paid(
        self, test_client, db_session, reserved_order, attempt_factory, webhook_signer, webhook_body
    ):
        order, _product = reserved_order
        await attempt_factory(order)
        body = webhook_body("inv_test_1", "success")

        response = await test_client.post(
            "/api/payments/webhook",
            content=body,
            headers={"X-Sign": webhook_signer.sign(body), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["applied_result"] == "applied"
        assert data["deduped"] is False
        assert response.headers["Cache-Control"] == "no-store"
        assert (await fetch_fresh(db_session, Order, order.id)).payment_status == PaymentStatus.PAID

        again = await test_client.post(
            "/api/payments/webhook",
            content=body,
            headers={"X-Sign": webhook_signer.sign(body)},
        )
        assert again.json()["deduped"] is True
        assert again.json()["event_id"] == data["event_id"]

    @pytest.mark.unit
    async def test_unsigned_acknowledged_then_limited(self, test_client, webhook_signer, webhook_body):
        body = webhook_body("inv_test_1", "success")

        with patch.object(settings, "WEBHOOK_RATE_LIMIT_MAX_REQUESTS", 1):
            first = await test_client.post("/api/payments/webhook", content=body)
            second = await test_client.post("/api/payments/webhook", content=body)

        assert first.status_code == 200
        assert first.json()["event_id"] is None
        assert second.status_code == 429
        assert 1 <= int(second.headers["Retry-After"]) <= settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS
        assert second.json()["ok"] is False

    @pytest.mark.unit
    async def test_database_outage_returns_503(self, test_client, webhook_signer, webhook_body):
        db_down = AsyncMock(side_effect=OperationalError("INSERT payment_webhook_events", {}, Exception("db down")))

        with patch.object(WebhookIngestionService, "ingest", db_down):
            response = await test_client.post("/api/payments/webhook", content=webhook_body("inv_1", "success"))

        assert response.status_code == 503
        assert response.headers["Cache-Control"] == "no-store"
        assert response.json()["error"]["code"] == "ERR_5003"


class TestAttemptsEndpoint:

    @pytest.mark.unit
    async def test_create_attempt(self, test_client, reserved_order, fake_gateway):
        order, _product = reserved_order

        response = await test_client.post(f"/api/payments/orders/{order.id}/attempts")

        assert response.status_code == 200
        data = response.json()
        assert data["invoice_id"] == "inv_1"
        assert data["page_url"] == "https://pay.test/inv_1"
        assert data["attempt_id"]

    @pytest.mark.unit
    async def test_unknown_order_404(self, test_client, fake_gateway):
        response = await test_client.post("/api/payments/orders/missing/attempts")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_2001"

    @pytest.mark.unit
    async def test_provider_down_503(self, test_client, db_session, reserved_order, fake_gateway):
        order, _product = reserved_order
        fake_gateway.create_error = PspError("PSP_UNKNOWN", "psp is down")

        response = await test_client.post(f"/api/payments/orders/{order.id}/attempts")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ERR_5001"
        assert (await fetch_fresh(db_session, Order, order.id)).stock_restored is True

    @pytest.mark.unit
    async def test_paid_order_409(self, test_client, order_factory, fake_gateway):
        order = await order_factory(payment_status=PaymentStatus.PAID)

        response = await test_client.post(f"/api/payments/orders/{order.id}/attempts")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_2002"


class TestJanitorEndpoint:

    @pytest.mark.unit
    async def test_missing_key_401(self, test_client):
        response = await test_client.post("/api/internal/janitor/job4")
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_wrong_key_403(self, test_client):
        response = await test_client.post("/api/internal/janitor/job4", headers={"X-Admin-API-Key": "wrong"})
        assert response.status_code == 403

    @pytest.mark.unit
    async def test_unconfigured_key_403(self, test_client, admin_headers):
        with patch.object(settings, "ADMIN_API_KEY", ""):
            response = await test_client.post("/api/internal/janitor/job4", headers=admin_headers)
        assert response.status_code == 403

    @pytest.mark.unit
    async def test_unknown_job_404(self, test_client, admin_headers):
        response = await test_client.post("/api/internal/janitor/job9", headers=admin_headers)
        assert response.status_code == 404

    @pytest.mark.unit
    async def test_job3_outside_store_mode_409(self, test_client, admin_headers):
        with patch.object(settings, "WEBHOOK_MODE", "apply"):
            response = await test_client.post("/api/internal/janitor/job3", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_4001"

    @pytest.mark.unit
    async def test_job4_report(self, test_client, admin_headers):
        response = await test_client.post("/api/internal/janitor/job4", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["job"] == "job4"
        assert data["report"]["count"] == 0

    @pytest.mark.unit
    async def test_sweep_dry_run(self, test_client, admin_headers, product_factory, order_factory):
        product = await product_factory(stock=5)
        await order_factory([(product, 1)], reserve=True, age_minutes=90)

        response = await test_client.post(
            "/api/internal/janitor/restock_stale_pending_orders",
            params={"dryRun": "true"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["dryRun"] is True
        assert data["processed"] == 1
        assert data["applied"] == 0

    @pytest.mark.unit
    async def test_limit_validated(self, test_client, admin_headers):
        response = await test_client.post(
            "/api/internal/janitor/job1",
            params={"limit": 0},
            headers=admin_headers,
        )
        assert response.status_code == 422


class TestAdminPaymentEndpoints:

    @pytest.mark.unit
    @pytest.mark.parametrize("action", ["refund", "cancel-payment"])
    async def test_missing_key_401(self, test_client, action):
        response = await test_client.post(f"/api/internal/orders/some-order/{action}")
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_refund_disabled_409(self, test_client, admin_headers, order_factory, fake_gateway):
        order = await order_factory(payment_status=PaymentStatus.PAID)

        response = await test_client.post(f"/api/internal/orders/{order.id}/refund", headers=admin_headers)

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "ERR_2005"
        assert error["details"]["reason"] == "REFUND_DISABLED"

    @pytest.mark.unit
    async def test_refund_accepted(self, test_client, admin_headers, order_factory, attempt_factory, fake_gateway):
        order = await order_factory(payment_status=PaymentStatus.PAID)
        await attempt_factory(order, status=AttemptStatus.SUCCEEDED)

        with patch.object(settings, "PAYMENT_REFUND_ENABLED", True):
            response = await test_client.post(f"/api/internal/orders/{order.id}/refund", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["deduped"] is False
        assert data["refund"]["status"] == "processing"
        assert data["order"]["id"] == order.id
        assert len(fake_gateway.refunds) == 1

    @pytest.mark.unit
    async def test_cancel_payment(self, test_client, db_session, admin_headers, reserved_order, attempt_factory, fake_gateway):
        order, _product = reserved_order
        await attempt_factory(order)

        response = await test_client.post(f"/api/internal/orders/{order.id}/cancel-payment", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["cancel"]["status"] == "success"
        fresh_order = await fetch_fresh(db_session, Order, order.id)
        assert fresh_order.payment_status == PaymentStatus.FAILED
        assert fresh_order.stock_restored is True

    @pytest.mark.unit
    async def test_cancel_paid_order_409(self, test_client, admin_headers, order_factory, attempt_factory, fake_gateway):
        order = await order_factory(payment_status=PaymentStatus.PAID)
        await attempt_factory(order, status=AttemptStatus.SUCCEEDED)

        response = await test_client.post(f"/api/internal/orders/{order.id}/cancel-payment", headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_2006"
        assert fake_gateway.removed == []

    @pytest.mark.unit
    async def test_cancel_provider_down_503(self, test_client, db_session, admin_headers, reserved_order, attempt_factory, fake_gateway):
        order, _product = reserved_order
        await attempt_factory(order)
        fake_gateway.remove_error = PspError("PSP_TIMEOUT", "timeout")

        response = await test_client.post(f"/api/internal/orders/{order.id}/cancel-payment", headers=admin_headers)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ERR_5001"
        assert (await fetch_fresh(db_session, Order, order.id)).payment_status == PaymentStatus.PENDING


class TestHealthAndHeaders:

    @pytest.mark.unit
    async def test_health(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "X-Correlation-ID" in response.headers

    @pytest.mark.unit
    async def test_correlation_id_echoed(self, test_client):
        response = await test_client.get("/health", headers={"X-Correlation-ID": "req-123"})
        assert response.headers["X-Correlation-ID"] == "req-123"
