"""
בדיקות ל-RestockSweepService — sweeps באצווה עם sweep lease ותקציב זמן.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from app.db.cas import compare_and_swap, fetch_fresh
from app.db.compat import utcnow
from app.db.models.order import (
    InventoryStatus,
    Order,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
)
from app.db.models.payment_attempt import AttemptStatus
from app.db.models.product import Product
from app.domain.services.restock_service import RestockService
from app.domain.services.restock_sweep_service import (
    MIN_OLDER_THAN_MINUTES,
    RestockSweepService,
    SweepOptions,
)


async def _set_order(db_session, order_id: str, **values) -> None:
    await compare_and_swap(db_session, Order, [Order.id == order_id], values)
    await db_session.commit()


@pytest.fixture
async def stale_order(product_factory, order_factory):
    """הזמנת monobank ממתינה כבר 90 דק' עם 2 יחידות שמורות"""
    product = await product_factory(stock=10)
    order = await order_factory([(product, 2)], reserve=True, age_minutes=90)
    return order, product


class TestSweepOptions:

    @pytest.mark.unit
    def test_values_clamped(self):
        options = SweepOptions.build(
            default_older_than=60,
            default_worker_id="sweep",
            older_than_minutes=1,
            batch_size=1000,
            claim_ttl_minutes=0,
            time_budget_seconds=600,
            worker_id="   ",
        )
        assert options.older_than_minutes == MIN_OLDER_THAN_MINUTES
        assert options.batch_size == 100
        assert options.claim_ttl_minutes == 1
        assert options.time_budget_seconds == 25.0
        assert options.worker_id == "sweep"


class TestStalePendingSweep:

    @pytest.mark.unit
    async def test_dry_run_only_counts(self, db_session, stale_order):
        order, product = stale_order

        stats = await RestockSweepService(db_session).restock_stale_pending_orders(dry_run=True)

        assert stats["processed"] == 1
        assert stats["applied"] == 0
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.stock_restored is False
        assert fresh.sweep_claimed_by is None
        assert (await fetch_fresh(db_session, Product, product.id)).stock == 8

    @pytest.mark.unit
    async def test_stale_order_restocked(self, db_session, stale_order):
        order, product = stale_order

        stats = await RestockSweepService(db_session).restock_stale_pending_orders(worker_id="sweeper-1")

        assert stats == {"processed": 1, "applied": 1, "noop": 0, "failed": 0}
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.stock_restored is True
        assert fresh.inventory_status == InventoryStatus.RELEASED
        assert fresh.status == OrderStatus.INVENTORY_FAILED
        assert fresh.payment_status == PaymentStatus.FAILED
        assert fresh.sweep_claimed_by == "sweeper-1"
        assert (await fetch_fresh(db_session, Product, product.id)).stock == 10

    @pytest.mark.unit
    async def test_young_order_untouched(self, db_session, reserved_order):
        stats = await RestockSweepService(db_session).restock_stale_pending_orders(older_than_minutes=1)

        assert stats["processed"] == 0

    @pytest.mark.unit
    async def test_order_with_open_attempt_skipped(self, db_session, stale_order, attempt_factory):
        order, _product = stale_order
        await attempt_factory(order, status=AttemptStatus.ACTIVE)

        stats = await RestockSweepService(db_session).restock_stale_pending_orders()

        assert stats["processed"] == 0
        assert (await fetch_fresh(db_session, Order, order.id)).stock_restored is False

    @pytest.mark.unit
    async def test_finished_attempt_does_not_block(self, db_session, stale_order, attempt_factory):
        order, _product = stale_order
        await attempt_factory(order, status=AttemptStatus.FAILED)

        stats = await RestockSweepService(db_session).restock_stale_pending_orders()

        assert stats["applied"] == 1

    @pytest.mark.unit
    async def test_live_lease_skipped_until_expired(self, db_session, stale_order):
        order, _product = stale_order
        await _set_order(
            db_session,
            order.id,
            sweep_claimed_by="other-worker",
            sweep_claim_expires_at=utcnow() + timedelta(minutes=5),
        )
        service = RestockSweepService(db_session)

        assert (await service.restock_stale_pending_orders())["processed"] == 0

        await _set_order(db_session, order.id, sweep_claim_expires_at=utcnow() - timedelta(seconds=1))
        assert (await service.restock_stale_pending_orders())["applied"] == 1

    @pytest.mark.unit
    async def test_restock_error_counted_as_failed(self, db_session, stale_order):
        order, _product = stale_order
        broken = AsyncMock(side_effect=OperationalError("UPDATE products", {}, Exception("db down")))

        with patch.object(RestockService, "restock_order", broken):
            stats = await RestockSweepService(db_session).restock_stale_pending_orders()

        assert stats == {"processed": 1, "applied": 0, "noop": 0, "failed": 1}
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.stock_restored is False
        # ה-lease נשאר — הריצה הבאה תתפוס רק אחרי שיפוג
        assert fresh.sweep_claim_expires_at > utcnow()

    @pytest.mark.unit
    async def test_batch_processes_oldest_first(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=10)
        newer = await order_factory([(product, 1)], reserve=True, age_minutes=70)
        older = await order_factory([(product, 1)], reserve=True, age_minutes=120)

        stats = await RestockSweepService(db_session).restock_stale_pending_orders(batch_size=1)

        assert stats["applied"] == 2
        assert (await fetch_fresh(db_session, Order, older.id)).restocked_at <= (
            await fetch_fresh(db_session, Order, newer.id)
        ).restocked_at


class TestStuckReservingSweep:

    @pytest.mark.unit
    async def test_release_pending_order_finished(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=10)
        order = await order_factory([(product, 3)], reserve=True, age_minutes=20)
        await _set_order(db_session, order.id, inventory_status=InventoryStatus.RELEASE_PENDING)

        stats = await RestockSweepService(db_session).restock_stuck_reserving_orders()

        assert stats["applied"] == 1
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.inventory_status == InventoryStatus.RELEASED
        assert fresh.failure_code == "STUCK_RESERVING_TIMEOUT"
        assert (await fetch_fresh(db_session, Product, product.id)).stock == 10

    @pytest.mark.unit
    async def test_existing_failure_code_kept(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=10)
        order = await order_factory([(product, 1)], reserve=True, age_minutes=20)
        await _set_order(
            db_session,
            order.id,
            inventory_status=InventoryStatus.RESERVING,
            failure_code="EARLIER_FAILURE",
        )

        await RestockSweepService(db_session).restock_stuck_reserving_orders()

        assert (await fetch_fresh(db_session, Order, order.id)).failure_code == "EARLIER_FAILURE"

    @pytest.mark.unit
    async def test_reserved_order_not_stuck(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=10)
        await order_factory([(product, 1)], reserve=True, age_minutes=20)

        stats = await RestockSweepService(db_session).restock_stuck_reserving_orders()

        assert stats["processed"] == 0


class TestNoPaymentSweep:

    @pytest.mark.unit
    async def test_orphan_no_payment_order_finalized(self, db_session, order_factory):
        order = await order_factory(
            payment_provider=PaymentProvider.NONE,
            payment_status=PaymentStatus.PAID,
            age_minutes=45,
        )

        stats = await RestockSweepService(db_session).restock_stale_no_payment_orders()

        assert stats["applied"] == 1
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.stock_restored is True
        assert fresh.status == OrderStatus.INVENTORY_FAILED
        assert fresh.payment_status == PaymentStatus.FAILED
        assert fresh.failure_code == "STALE_ORPHAN"

    @pytest.mark.unit
    async def test_psp_orders_ignored(self, db_session, order_factory):
        await order_factory(age_minutes=45)

        stats = await RestockSweepService(db_session).restock_stale_no_payment_orders()

        assert stats["processed"] == 0
