"""Tests for OrderService.update_status and the order queries."""

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from storefront.core.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    Unavailable,
    ValidationError,
)
from storefront.models.shop import Order, OrderStatus, PaymentStatus
from storefront.modules.shop.refs import NumericId, OpaqueId
from storefront.modules.shop.service import OrderLine


async def _place(orders, product, actor, address, quantity=1):
    return await orders.place_order(
        actor, [OrderLine(NumericId(product.id), quantity)], address, "card"
    )


async def _advance(orders, order, admin, *statuses):
    for status in statuses:
        order = await orders.update_status(OpaqueId(order.order_number), status, admin)
    return order


class TestUpdateStatus:
    async def test_full_lifecycle(self, orders, make_product, owner, admin, address):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address)

        order = await _advance(orders, order, admin, "processing", "shipped")
        assert order.status is OrderStatus.SHIPPED
        assert order.delivered_at is None

        order = await _advance(orders, order, admin, OrderStatus.DELIVERED)
        assert order.status is OrderStatus.DELIVERED
        assert order.delivered_at is not None
        assert order.payment_status is PaymentStatus.PAID
        assert order.paid_at is not None

    async def test_address_by_numeric_id(self, orders, make_product, owner, admin, address):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address)

        updated = await orders.update_status(NumericId(order.id), "processing", admin)

        assert updated.status is OrderStatus.PROCESSING

    async def test_owner_cannot_change_status(self, orders, make_product, owner, address):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address)

        with pytest.raises(Forbidden):
            await orders.update_status(OpaqueId(order.order_number), "processing", owner)

    async def test_unknown_status(self, orders, make_product, owner, admin, address):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address)

        with pytest.raises(ValidationError):
            await orders.update_status(OpaqueId(order.order_number), "returned", admin)

    async def test_skipping_a_step(self, orders, make_product, owner, admin, address):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address)

        with pytest.raises(InvalidTransition):
            await orders.update_status(OpaqueId(order.order_number), "shipped", admin)

        reloaded = await orders.get_order(OpaqueId(order.order_number), admin)
        assert reloaded.status is OrderStatus.PENDING

    @pytest.mark.parametrize("target", ["pending", "processing", "shipped", "cancelled"])
    async def test_delivered_is_final(
        self, orders, ledger, make_product, owner, admin, address, target
    ):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address, 2)
        order = await _advance(orders, order, admin, "processing", "shipped", "delivered")

        with pytest.raises(InvalidTransition):
            await orders.update_status(OpaqueId(order.order_number), target, admin)

        assert await ledger.available(product.id) == 3

    async def test_unknown_order(self, orders, admin):
        with pytest.raises(NotFound):
            await orders.update_status(OpaqueId("ORD-MISSING"), "processing", admin)

    async def test_commit_failure_maps_to_unavailable(
        self, db, orders, session_factory, make_product, owner, admin, address, monkeypatch
    ):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address)
        order_id, order_number = order.id, order.order_number

        async def locked_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "commit", locked_commit)

        with pytest.raises(Unavailable):
            await orders.update_status(OpaqueId(order_number), "processing", admin)

        async with session_factory() as session:
            status = await session.scalar(select(Order.status).where(Order.id == order_id))
        assert status is OrderStatus.PENDING


class TestCancelThroughStatus:
    async def test_returns_stock_once(self, orders, cancellations, ledger, make_product, owner, admin, address):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address, 3)

        order = await orders.update_status(OpaqueId(order.order_number), "cancelled", admin)

        assert order.status is OrderStatus.CANCELLED
        assert order.cancelled_at is not None
        assert [i.reserved_quantity for i in order.items] == [0]
        assert await ledger.available(product.id) == 5

        result = await cancellations.cancel(OpaqueId(order.order_number), owner)
        assert result.action == "already_cancelled"
        assert await ledger.available(product.id) == 5

    async def test_cancelled_is_final(self, orders, make_product, owner, admin, address):
        product = await make_product("STS-1", stock=5)
        order = await _place(orders, product, owner, address)
        await orders.update_status(OpaqueId(order.order_number), "cancelled", admin)

        with pytest.raises(InvalidTransition):
            await orders.update_status(OpaqueId(order.order_number), "processing", admin)


class TestQueries:
    async def test_owner_sees_own_order(self, orders, make_product, owner, address):
        product = await make_product("QRY-1", stock=5)
        order = await _place(orders, product, owner, address)

        found = await orders.get_order(OpaqueId(order.order_number), owner)

        assert found.id == order.id

    async def test_other_owner_forbidden(self, orders, make_product, owner, other_owner, address):
        product = await make_product("QRY-1", stock=5)
        order = await _place(orders, product, owner, address)

        with pytest.raises(Forbidden):
            await orders.get_order(OpaqueId(order.order_number), other_owner)

    async def test_admin_sees_any_order(self, orders, make_product, owner, admin, address):
        product = await make_product("QRY-1", stock=5)
        order = await _place(orders, product, owner, address)

        assert (await orders.get_order(NumericId(order.id), admin)).id == order.id

    async def test_missing_order(self, orders, owner):
        with pytest.raises(NotFound):
            await orders.get_order(OpaqueId("ORD-NOPE"), owner)

    async def test_list_scoped_to_owner(
        self, orders, make_product, owner, other_owner, admin, address
    ):
        product = await make_product("QRY-1", stock=10)
        mine = await _place(orders, product, owner, address)
        theirs = await _place(orders, product, other_owner, address)

        assert [o.id for o in await orders.list_orders(owner)] == [mine.id]
        assert [o.id for o in await orders.list_orders(other_owner)] == [theirs.id]
        assert {o.id for o in await orders.list_orders(admin)} == {mine.id, theirs.id}

    async def test_list_filter_and_paging(self, orders, make_product, owner, admin, address):
        product = await make_product("QRY-1", stock=10)
        placed = [await _place(orders, product, owner, address) for _ in range(3)]
        await _advance(orders, placed[0], admin, "processing")

        processing = await orders.list_orders(owner, status=OrderStatus.PROCESSING)
        assert [o.id for o in processing] == [placed[0].id]

        page = await orders.list_orders(owner, limit=2, offset=0)
        rest = await orders.list_orders(owner, limit=2, offset=2)
        assert len(page) == 2
        assert len(rest) == 1
        assert {o.id for o in page + rest} == {o.id for o in placed}
