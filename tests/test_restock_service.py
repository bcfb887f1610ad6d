"""
בדיקות ל-RestockService — שחרור מלאי ברמת הזמנה וסימון חד-פעמי.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from app.core.exceptions import OrderNotFoundError, OrderStateInvalidError
from app.db.cas import compare_and_swap, fetch_fresh
from app.db.compat import utcnow
from app.db.models.order import (
    Order,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    InventoryStatus,
)
from app.db.models.product import Product
from app.domain.services.inventory_service import InventoryService
from app.domain.services.restock_service import RestockReason, RestockService


class TestRestockOrder:

    @pytest.mark.unit
    async def test_failed_restock_releases_and_finalizes(self, db_session, reserved_order):
        order, product = reserved_order

        restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.FAILED)

        assert restocked is True
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.stock_restored is True
        assert fresh.restocked_at is not None
        assert fresh.inventory_status == InventoryStatus.RELEASED
        assert fresh.status == OrderStatus.INVENTORY_FAILED
        assert fresh.payment_status == PaymentStatus.FAILED
        assert (await fetch_fresh(db_session, Product, product.id)).stock == 10

    @pytest.mark.unit
    async def test_second_restock_is_noop(self, db_session, reserved_order):
        order, product = reserved_order
        service = RestockService(db_session)

        assert await service.restock_order(order.id, reason=RestockReason.CANCELED) is True
        assert await service.restock_order(order.id, reason=RestockReason.CANCELED) is False
        assert (await fetch_fresh(db_session, Product, product.id)).stock == 10

    @pytest.mark.unit
    async def test_canceled_reason_sets_order_canceled(self, db_session, reserved_order):
        order, _product = reserved_order

        await RestockService(db_session).restock_order(order.id, reason=RestockReason.CANCELED)

        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.status == OrderStatus.CANCELED
        assert fresh.payment_status == PaymentStatus.FAILED

    @pytest.mark.unit
    async def test_paid_order_requires_refund_reason(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=5)
        order = await order_factory([(product, 1)], reserve=True, payment_status=PaymentStatus.PAID)

        with pytest.raises(OrderStateInvalidError):
            await RestockService(db_session).restock_order(order.id, reason=RestockReason.FAILED)

    @pytest.mark.unit
    async def test_refunded_reason_on_paid_order(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=5)
        order = await order_factory([(product, 1)], reserve=True, payment_status=PaymentStatus.PAID)

        restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.REFUNDED)

        assert restocked is True
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.payment_status == PaymentStatus.REFUNDED
        assert (await fetch_fresh(db_session, Product, product.id)).stock == 5

    @pytest.mark.unit
    async def test_live_lease_of_other_worker_skips(self, db_session, reserved_order):
        order, product = reserved_order
        await compare_and_swap(
            db_session,
            Order,
            [Order.id == order.id],
            {"sweep_claim_expires_at": utcnow() + timedelta(minutes=5), "sweep_claimed_by": "other"},
        )
        await db_session.commit()

        restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.FAILED)

        assert restocked is False
        assert (await fetch_fresh(db_session, Product, product.id)).stock == 8

    @pytest.mark.unit
    async def test_stale_orphan_finalized_without_moves(self, db_session, order_factory):
        order = await order_factory()

        restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.STALE)

        assert restocked is True
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.stock_restored is True
        assert fresh.failure_code == "STALE_ORPHAN"
        assert fresh.payment_status == PaymentStatus.FAILED

    @pytest.mark.unit
    async def test_orphan_with_failed_reason_untouched_for_psp(self, db_session, order_factory):
        order = await order_factory()

        restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.FAILED)

        assert restocked is False
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.stock_restored is False

    @pytest.mark.unit
    async def test_no_payment_orphan_finalized_on_cancel(self, db_session, order_factory):
        order = await order_factory(payment_provider=PaymentProvider.NONE)

        restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.CANCELED)

        assert restocked is True
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.inventory_status == InventoryStatus.RELEASED
        assert fresh.stock_restored is True

    @pytest.mark.unit
    async def test_missing_order(self, db_session):
        with pytest.raises(OrderNotFoundError):
            await RestockService(db_session).restock_order("missing", reason=RestockReason.STALE)


class TestTerminalOrderStatusKept:
    """release מאוחר לא דורס status של הזמנה ששולמה או הוחזרה"""

    @pytest.mark.unit
    async def test_stale_release_of_refunded_order(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=5)
        order = await order_factory(
            [(product, 1)],
            reserve=True,
            payment_status=PaymentStatus.REFUNDED,
        )
        status_before = (await fetch_fresh(db_session, Order, order.id)).status

        restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.STALE)

        assert restocked is True
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.status == status_before
        assert fresh.status != OrderStatus.INVENTORY_FAILED
        assert fresh.payment_status == PaymentStatus.REFUNDED
        assert fresh.inventory_status == InventoryStatus.RELEASED
        assert (await fetch_fresh(db_session, Product, product.id)).stock == 5

    @pytest.mark.unit
    async def test_paid_during_release_stays_paid(self, db_session, reserved_order):
        order, product = reserved_order
        original_release = InventoryService.release

        async def release_then_paid(self, order_id, product_id):
            result = await original_release(self, order_id, product_id)
            # webhook מקביל סימן את ההזמנה כשולמה באמצע ה-sweep
            await compare_and_swap(
                db_session,
                Order,
                [Order.id == order_id],
                {"payment_status": PaymentStatus.PAID, "status": OrderStatus.PAID},
            )
            await db_session.commit()
            return result

        with patch.object(InventoryService, "release", release_then_paid):
            restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.STALE)

        assert restocked is True
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.status == OrderStatus.PAID
        assert fresh.payment_status == PaymentStatus.PAID
        assert fresh.stock_restored is True

    @pytest.mark.unit
    async def test_stale_orphan_of_refunded_order(self, db_session, order_factory):
        order = await order_factory(payment_status=PaymentStatus.REFUNDED)

        restocked = await RestockService(db_session).restock_order(order.id, reason=RestockReason.STALE)

        assert restocked is True
        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.status == OrderStatus.CREATED
        assert fresh.payment_status == PaymentStatus.REFUNDED
