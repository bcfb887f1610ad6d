"""
בדיקות ל-InventoryService — שמירה/שחרור אטומיים ו-replay.
"""
import asyncio

import pytest
from sqlalchemy import func, select

from app.core.exceptions import InsufficientStockError, ValidationException
from app.db.cas import fetch_fresh
from app.db.compat import new_id
from app.db.models.inventory_move import InventoryMove, MoveKind
from app.db.models.order import Order, OrderStatus, InventoryStatus
from app.db.models.product import Product
from app.domain.services.inventory_service import InventoryService, MoveOutcome


async def _stock(db_session, product_id: str) -> int:
    product = await fetch_fresh(db_session, Product, product_id)
    return product.stock


async def _move_count(db_session, order_id: str, kind: MoveKind) -> int:
    result = await db_session.execute(
        select(func.count()).select_from(InventoryMove).where(
            InventoryMove.order_id == order_id, InventoryMove.kind == kind
        )
    )
    return result.scalar_one()


class TestReserve:

    @pytest.mark.unit
    async def test_reserve_decrements_stock(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=5)
        order = await order_factory([(product, 3)])

        result = await InventoryService(db_session).reserve(order.id, product.id, 3)
        await db_session.commit()

        assert result.outcome == MoveOutcome.APPLIED
        assert await _stock(db_session, product.id) == 2

    @pytest.mark.unit
    async def test_replay_does_not_decrement_twice(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=5)
        order = await order_factory([(product, 3)])
        service = InventoryService(db_session)

        await service.reserve(order.id, product.id, 3)
        replay = await service.reserve(order.id, product.id, 3)
        await db_session.commit()

        assert replay.outcome == MoveOutcome.ALREADY_RESERVED
        assert replay.ok
        assert await _stock(db_session, product.id) == 2
        assert await _move_count(db_session, order.id, MoveKind.RESERVE) == 1

    @pytest.mark.unit
    async def test_insufficient_stock_leaves_no_move(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=1)
        order = await order_factory([(product, 2)])

        result = await InventoryService(db_session).reserve(order.id, product.id, 2)
        await db_session.commit()

        assert result.outcome == MoveOutcome.INSUFFICIENT_STOCK
        assert not result.ok
        assert await _stock(db_session, product.id) == 1
        assert await _move_count(db_session, order.id, MoveKind.RESERVE) == 0

    @pytest.mark.unit
    async def test_last_unit_goes_to_one_order(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=1)
        first = await order_factory([(product, 1)])
        second = await order_factory([(product, 1)])
        service = InventoryService(db_session)

        results = [
            await service.reserve(first.id, product.id, 1),
            await service.reserve(second.id, product.id, 1),
        ]
        await db_session.commit()

        assert [r.outcome for r in results] == [MoveOutcome.APPLIED, MoveOutcome.INSUFFICIENT_STOCK]
        assert await _stock(db_session, product.id) == 0

    @pytest.mark.unit
    @pytest.mark.parametrize("quantity", [0, -1, True, 1.5])
    async def test_invalid_quantity_rejected(self, db_session, quantity):
        with pytest.raises(ValidationException):
            await InventoryService(db_session).reserve("order", "product", quantity)


class TestRelease:

    @pytest.mark.unit
    async def test_release_restores_reserved_quantity(self, db_session, reserved_order):
        order, product = reserved_order
        service = InventoryService(db_session)

        result = await service.release(order.id, product.id)
        await db_session.commit()

        assert result.outcome == MoveOutcome.APPLIED
        assert await _stock(db_session, product.id) == 10

    @pytest.mark.unit
    async def test_release_twice_is_noop(self, db_session, reserved_order):
        order, product = reserved_order
        service = InventoryService(db_session)

        await service.release(order.id, product.id)
        again = await service.release(order.id, product.id)
        await db_session.commit()

        assert again.outcome == MoveOutcome.ALREADY_RELEASED
        assert await _stock(db_session, product.id) == 10
        assert await _move_count(db_session, order.id, MoveKind.RELEASE) == 1

    @pytest.mark.unit
    async def test_release_without_reserve(self, db_session, product_factory, order_factory):
        product = await product_factory(stock=4)
        order = await order_factory([(product, 1)])

        result = await InventoryService(db_session).release(order.id, product.id)

        assert result.outcome == MoveOutcome.NO_RESERVE
        assert await _stock(db_session, product.id) == 4


class TestReserveOrder:

    @pytest.mark.unit
    async def test_reserve_order_marks_reserved(self, db_session, reserved_order):
        order, product = reserved_order

        assert order.inventory_status == InventoryStatus.RESERVED
        assert order.status == OrderStatus.INVENTORY_RESERVED
        assert await _stock(db_session, product.id) == 8

    @pytest.mark.unit
    async def test_reserve_order_replay_is_noop(self, db_session, reserved_order):
        order, product = reserved_order

        await InventoryService(db_session).reserve_order(order.id)

        assert await _stock(db_session, product.id) == 8

    @pytest.mark.unit
    async def test_partial_failure_releases_reserved_lines(self, db_session, product_factory, order_factory):
        plenty = await product_factory(title="Plenty", stock=10)
        scarce = await product_factory(title="Scarce", stock=1)
        order = await order_factory([(plenty, 2), (scarce, 5)])

        with pytest.raises(InsufficientStockError):
            await InventoryService(db_session).reserve_order(order.id)

        fresh = await fetch_fresh(db_session, Order, order.id)
        assert fresh.inventory_status == InventoryStatus.FAILED
        assert fresh.status == OrderStatus.INVENTORY_FAILED
        assert fresh.failure_code == "INSUFFICIENT_STOCK"
        assert await _stock(db_session, plenty.id) == 10
        assert await _stock(db_session, scarce.id) == 1


class TestConcurrentReserve:
    """שני sessions על חיבורים נפרדים מתחרים על היחידה האחרונה"""

    @pytest.mark.unit
    async def test_last_unit_race_has_one_winner(self, concurrent_sessions):
        product_id = new_id()
        order_ids = [new_id(), new_id()]
        async with concurrent_sessions() as seed:
            seed.add(Product(id=product_id, title="Last", stock=1))
            for order_id in order_ids:
                seed.add(
                    Order(
                        id=order_id,
                        total_amount_minor=500,
                        idempotency_key=f"checkout-{order_id}",
                    )
                )
            await seed.commit()

        async def reserve(order_id: str):
            async with concurrent_sessions() as session:
                result = await InventoryService(session).reserve(order_id, product_id, 1)
                await session.commit()
                return result

        results = await asyncio.gather(*(reserve(order_id) for order_id in order_ids))

        assert sorted(r.outcome.value for r in results) == sorted(
            [MoveOutcome.APPLIED.value, MoveOutcome.INSUFFICIENT_STOCK.value]
        )
        async with concurrent_sessions() as check:
            assert await _stock(check, product_id) == 0
            moves = await check.execute(
                select(func.count()).select_from(InventoryMove).where(InventoryMove.kind == MoveKind.RESERVE)
            )
            assert moves.scalar_one() == 1
