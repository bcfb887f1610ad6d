"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory; file-backed for concurrency races)
- Fake payment provider gateway and webhook signer (ECDSA P-256)
- Test data factories (products, orders, attempts, webhook events)
"""
# DATABASE_URL / ADMIN_API_KEY לפני ייבוא app — settings נטען בייבוא
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-api-key")

import base64
import hashlib
import json
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from app.db.cas import fetch_fresh
from app.db.compat import utcnow, new_id
from app.db.database import Base, get_db
from app.db.models.order import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    InventoryStatus,
)
from app.db.models.payment_attempt import (
    AttemptStatus,
    PaymentAttempt,
    build_attempt_idempotency_key,
)
from app.db.models.product import Product
from app.db.models.webhook_event import AppliedResult, PaymentWebhookEvent
from app.domain.services.inventory_service import InventoryService
from app.domain.services.provider_metadata import AttemptMetadata
from app.domain.services.psp.base_provider import (
    BasePaymentGateway,
    CreatedInvoice,
    InvoiceStatus,
    RefundAccepted,
)
from app.domain.services.psp.key_provider import StaticKeyProvider
from app.domain.services.psp.provider_factory import (
    reset_providers,
    set_key_provider,
    set_payment_gateway,
)
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-api-key"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def concurrent_sessions(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    sessionmaker מעל קובץ SQLite עם NullPool — לכל session חיבור משלו,
    כך ששני sessions ב-asyncio.gather מתחרים על נעילות DB אמיתיות.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        poolclass=NullPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Circuit Breaker / Providers Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


@pytest.fixture(autouse=True)
def reset_psp_providers():
    """ספק התשלומים וספק המפתח הם singletons — מאופסים בין בדיקות"""
    reset_providers()
    yield
    reset_providers()


class FakeRedis:
    """תחליף ל-Redis לבדיקות — in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = value
        self._ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Payment Provider Fakes
# ============================================================================

class FakeGateway(BasePaymentGateway):
    """
    ספק תשלומים מזויף.

    create_error / cancel_error / status_error / refund_error / remove_error —
    חריגה שתיזרק בקריאה הבאה.
    refund_status — הסטטוס שהספק מחזיר על בקשת החזר.
    statuses — תשובות invoice/status לפי מזהה חשבונית.
    """

    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.canceled: list[str] = []
        self.status_calls: list[str] = []
        self.pubkey_calls = 0
        self.statuses: dict[str, InvoiceStatus] = {}
        self.public_key: Optional[str] = None
        self.create_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.refunds: list[dict[str, Any]] = []
        self.refund_status = "processing"
        self.refund_error: Optional[Exception] = None
        self.removed: list[str] = []
        self.remove_error: Optional[Exception] = None

    @property
    def provider_name(self) -> str:
        return "monobank"

    async def create_invoice(
        self,
        *,
        order_id: str,
        reference: str,
        amount_minor: int,
        redirect_url: Optional[str] = None,
        webhook_url: Optional[str] = None,
    ) -> CreatedInvoice:
        if self.create_error is not None:
            raise self.create_error
        invoice_id = f"inv_{len(self.created) + 1}"
        self.created.append({
            "order_id": order_id,
            "reference": reference,
            "amount_minor": amount_minor,
            "invoice_id": invoice_id,
        })
        return CreatedInvoice(
            invoice_id=invoice_id,
            page_url=f"https://pay.test/{invoice_id}",
            raw={"invoiceId": invoice_id},
        )

    async def cancel_invoice(self, invoice_id: str) -> None:
        self.canceled.append(invoice_id)
        if self.cancel_error is not None:
            raise self.cancel_error

    async def refund_payment(self, invoice_id: str, *, ext_ref: str, amount_minor: int) -> RefundAccepted:
        self.refunds.append({"invoice_id": invoice_id, "ext_ref": ext_ref, "amount_minor": amount_minor})
        if self.refund_error is not None:
            raise self.refund_error
        return RefundAccepted(
            invoice_id=invoice_id,
            status=self.refund_status,
            raw={"invoiceId": invoice_id, "status": self.refund_status},
        )

    async def remove_invoice(self, invoice_id: str) -> dict[str, Any]:
        self.removed.append(invoice_id)
        if self.remove_error is not None:
            raise self.remove_error
        return {}

    async def get_invoice_status(self, invoice_id: str) -> InvoiceStatus:
        self.status_calls.append(invoice_id)
        if self.status_error is not None:
            raise self.status_error
        return self.statuses[invoice_id]

    async def fetch_public_key(self) -> str:
        self.pubkey_calls += 1
        if self.public_key is None:
            raise RuntimeError("no public key configured")
        return self.public_key

    def set_status(self, invoice_id: str, status: str, **fields: Any) -> None:
        raw = {"invoiceId": invoice_id, "status": status, **fields}
        self.statuses[invoice_id] = InvoiceStatus(
            invoice_id=invoice_id,
            status=status,
            amount=fields.get("amount"),
            ccy=fields.get("ccy"),
            reference=fields.get("reference"),
            raw=raw,
        )


@pytest.fixture
def fake_gateway() -> FakeGateway:
    """FakeGateway רשום כספק התשלומים של התהליך"""
    gateway = FakeGateway()
    set_payment_gateway(gateway)
    return gateway


class WebhookSigner:
    """חותם גופי webhook כמו הספק: ECDSA-SHA256, חתימת DER ב-base64"""

    def __init__(self) -> None:
        self.private_key = ec.generate_private_key(ec.SECP256R1())

    @property
    def public_key_pem(self) -> str:
        return self.private_key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")

    @property
    def public_key_b64(self) -> str:
        """base64 של ה-PEM — הפורמט ש-/api/merchant/pubkey מחזיר"""
        return base64.b64encode(self.public_key_pem.encode("ascii")).decode("ascii")

    def sign(self, raw_body: bytes) -> str:
        signature = self.private_key.sign(raw_body, ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode("ascii")


@pytest.fixture
def webhook_signer() -> WebhookSigner:
    """חותם + ספק מפתח סטטי עם המפתח הציבורי שלו"""
    signer = WebhookSigner()
    set_key_provider(StaticKeyProvider(signer.public_key_pem))
    return signer


def build_webhook_body(
    invoice_id: str,
    status: str,
    *,
    reference: Optional[str] = None,
    amount: Optional[int] = 1000,
    ccy: Optional[int] = 980,
    modified_date: Optional[str] = "2026-01-01T10:00:00Z",
) -> bytes:
    payload: dict[str, Any] = {"invoiceId": invoice_id, "status": status}
    if amount is not None:
        payload["amount"] = amount
    if ccy is not None:
        payload["ccy"] = ccy
    if reference is not None:
        payload["reference"] = reference
    if modified_date is not None:
        payload["modifiedDate"] = modified_date
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


@pytest.fixture
def webhook_body():
    """Builder לגוף webhook בפורמט הספק"""
    return build_webhook_body


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def product_factory(db_session: AsyncSession):
    """Factory for creating test products"""
    async def _create_product(title: str = "Test Product", stock: int = 10) -> Product:
        product = Product(id=new_id(), title=title, stock=stock)
        db_session.add(product)
        await db_session.commit()
        await db_session.refresh(product)
        return product

    return _create_product


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """
    Factory for creating test orders.

    lines — [(product, quantity)]; reserve=True שומר את המלאי דרך ה-ledger.
    age_minutes מזיז את created_at לאחור (לבדיקות sweeps).
    """
    async def _create_order(
        lines: Optional[list[tuple[Product, int]]] = None,
        *,
        total_amount_minor: int = 1000,
        currency: str = "UAH",
        payment_provider: PaymentProvider = PaymentProvider.MONOBANK,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        status: OrderStatus = OrderStatus.CREATED,
        inventory_status: InventoryStatus = InventoryStatus.NONE,
        reserve: bool = False,
        age_minutes: int = 0,
    ) -> Order:
        created_at = utcnow() - timedelta(minutes=age_minutes)
        order = Order(
            id=new_id(),
            total_amount_minor=total_amount_minor,
            currency=currency,
            payment_provider=payment_provider,
            payment_status=payment_status,
            status=status,
            inventory_status=inventory_status,
            idempotency_key=f"checkout-{new_id()}",
            created_at=created_at,
            updated_at=created_at,
        )
        db_session.add(order)
        for product, quantity in lines or []:
            db_session.add(
                OrderItem(
                    id=new_id(),
                    order_id=order.id,
                    product_id=product.id,
                    quantity=quantity,
                    unit_price_minor=500,
                )
            )
        await db_session.commit()

        if reserve:
            await InventoryService(db_session).reserve_order(order.id)
        return await fetch_fresh(db_session, Order, order.id)

    return _create_order


@pytest.fixture
def attempt_factory(db_session: AsyncSession):
    """Factory for creating payment attempts (ברירת מחדל: active עם חשבונית)"""
    async def _create_attempt(
        order: Order,
        *,
        status: AttemptStatus = AttemptStatus.ACTIVE,
        invoice_id: Optional[str] = "inv_test_1",
        attempt_number: int = 1,
        expected_amount_minor: Optional[int] = None,
        age_seconds: int = 0,
        inflight_until: Optional[datetime] = None,
        provider_modified_at: Optional[datetime] = None,
    ) -> PaymentAttempt:
        created_at = utcnow() - timedelta(seconds=age_seconds)
        metadata = AttemptMetadata()
        if invoice_id:
            metadata = AttemptMetadata(invoice_id=invoice_id, page_url=f"https://pay.test/{invoice_id}")
        attempt = PaymentAttempt(
            id=new_id(),
            order_id=order.id,
            provider=PaymentProvider.MONOBANK,
            status=status,
            attempt_number=attempt_number,
            currency=order.currency,
            expected_amount_minor=(
                expected_amount_minor if expected_amount_minor is not None else order.total_amount_minor
            ),
            idempotency_key=build_attempt_idempotency_key(PaymentProvider.MONOBANK, order.id, attempt_number),
            provider_payment_intent_id=invoice_id,
            metadata_=metadata.to_json(),
            inflight_until=inflight_until,
            provider_modified_at=provider_modified_at,
            created_at=created_at,
            updated_at=created_at,
        )
        db_session.add(attempt)
        await db_session.commit()
        return await fetch_fresh(db_session, PaymentAttempt, attempt.id)

    return _create_attempt


@pytest.fixture
def event_factory(db_session: AsyncSession):
    """Factory for stored webhook events (כמו שנשמרים ב-WEBHOOK_MODE=store)"""
    async def _create_event(
        invoice_id: Optional[str] = "inv_test_1",
        status: Optional[str] = "success",
        *,
        reference: Optional[str] = None,
        amount: Optional[int] = 1000,
        ccy: Optional[int] = 980,
        provider_modified_at: Optional[datetime] = None,
        received_minutes_ago: int = 0,
        applied_result: Optional[AppliedResult] = None,
        applied_error_code: Optional[str] = None,
        claim_expires_at: Optional[datetime] = None,
        claimed_by: Optional[str] = None,
    ) -> PaymentWebhookEvent:
        received_at = utcnow() - timedelta(minutes=received_minutes_ago)
        event_key = hashlib.sha256(new_id().encode("utf-8")).hexdigest()
        event = PaymentWebhookEvent(
            id=new_id(),
            provider="monobank",
            event_key=event_key,
            raw_sha256=event_key,
            invoice_id=invoice_id,
            status=status,
            amount=amount,
            ccy=ccy,
            reference=reference,
            raw_payload={"invoiceId": invoice_id, "status": status},
            received_at=received_at,
            provider_modified_at=provider_modified_at,
            claimed_at=utcnow() if claimed_by else None,
            claim_expires_at=claim_expires_at,
            claimed_by=claimed_by,
            applied_at=received_at if applied_result is not None else None,
            applied_result=applied_result,
            applied_error_code=applied_error_code,
        )
        db_session.add(event)
        await db_session.commit()
        return await fetch_fresh(db_session, PaymentWebhookEvent, event.id)

    return _create_event


@pytest.fixture
async def reserved_order(product_factory, order_factory):
    """הזמנת monobank ממתינה לתשלום עם 2 יחידות שמורות ממוצר במלאי 10"""
    product = await product_factory(stock=10)
    order = await order_factory([(product, 2)], reserve=True)
    return order, product


# הערה: אין צורך בניקוי טבלאות בין בדיקות —
# כל בדיקה מקבלת DB in-memory חדש דרך async_engine (function-scoped).
