"""Tests for CancellationService: stock return, idempotence and admin delete."""

import pytest

from storefront.core.errors import Forbidden, InvalidTransition, NotFound, Unavailable
from storefront.models.shop import OrderStatus
from storefront.modules.shop.cancellation import CancellationService
from storefront.modules.shop.ledger import InventoryLedger
from storefront.modules.shop.refs import NumericId, OpaqueId
from storefront.modules.shop.service import OrderLine


class FailingLedger(InventoryLedger):
    """Ledger whose release fails for selected products."""

    def __init__(self, session_factory, failing):
        super().__init__(session_factory, retry_attempts=1, retry_delay=0)
        self.failing = set(failing)

    async def release(self, product_id, quantity):
        if product_id in self.failing:
            raise Unavailable("Inventory update failed")
        return await super().release(product_id, quantity)


async def _place(orders, actor, address, *lines):
    return await orders.place_order(
        actor,
        [OrderLine(NumericId(product.id), quantity) for product, quantity in lines],
        address,
        "card",
    )


class TestCancel:
    async def test_restores_stock(
        self, orders, cancellations, ledger, make_product, owner, address
    ):
        first = await make_product("CNL-1", stock=5)
        second = await make_product("CNL-2", stock=4)
        order = await _place(orders, owner, address, (first, 2), (second, 4))
        assert await ledger.available(second.id) == 0

        result = await cancellations.cancel(OpaqueId(order.order_number), owner)

        assert result.action == "cancelled"
        assert result.complete
        assert sorted(line.product_id for line in result.released) == [first.id, second.id]
        assert result.order.status is OrderStatus.CANCELLED
        assert result.order.cancelled_at is not None
        assert all(item.reserved_quantity == 0 for item in result.order.items)
        assert await ledger.available(first.id) == 5
        assert await ledger.available(second.id) == 4

    async def test_second_cancel_is_noop(
        self, orders, cancellations, ledger, make_product, owner, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 3))

        await cancellations.cancel(OpaqueId(order.order_number), owner)
        result = await cancellations.cancel(OpaqueId(order.order_number), owner)

        assert result.action == "already_cancelled"
        assert result.released == []
        assert await ledger.available(product.id) == 5

    async def test_shipped_order_can_be_cancelled(
        self, orders, cancellations, ledger, make_product, owner, admin, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 2))
        for status in ("processing", "shipped"):
            await orders.update_status(OpaqueId(order.order_number), status, admin)

        result = await cancellations.cancel(OpaqueId(order.order_number), owner)

        assert result.action == "cancelled"
        assert await ledger.available(product.id) == 5

    async def test_delivered_cannot_be_cancelled(
        self, orders, cancellations, ledger, make_product, owner, admin, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 2))
        for status in ("processing", "shipped", "delivered"):
            await orders.update_status(OpaqueId(order.order_number), status, admin)

        with pytest.raises(InvalidTransition):
            await cancellations.cancel(OpaqueId(order.order_number), owner)
        assert await ledger.available(product.id) == 3

    async def test_other_owner_forbidden(
        self, orders, cancellations, ledger, make_product, owner, other_owner, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 2))

        with pytest.raises(Forbidden):
            await cancellations.cancel(OpaqueId(order.order_number), other_owner)

        reloaded = await orders.get_order(OpaqueId(order.order_number), owner)
        assert reloaded.status is OrderStatus.PENDING
        assert await ledger.available(product.id) == 3

    async def test_admin_may_cancel(
        self, orders, cancellations, ledger, make_product, owner, admin, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 2))

        result = await cancellations.cancel(NumericId(order.id), admin)

        assert result.action == "cancelled"
        assert await ledger.available(product.id) == 5

    async def test_unknown_order(self, cancellations, owner):
        with pytest.raises(NotFound):
            await cancellations.cancel(OpaqueId("ORD-NOPE"), owner)


class TestPartialRelease:
    async def test_failed_line_reported_others_released(
        self, db, orders, session_factory, ledger, make_product, owner, address
    ):
        first = await make_product("CNL-1", stock=5)
        second = await make_product("CNL-2", stock=5)
        order = await _place(orders, owner, address, (first, 2), (second, 3))
        service = CancellationService(db, ledger=FailingLedger(session_factory, {first.id}))

        result = await service.cancel(OpaqueId(order.order_number), owner)

        assert result.action == "cancelled"
        assert not result.complete
        assert [line.product_id for line in result.failed] == [first.id]
        assert result.failed[0].error == "Inventory update failed"
        assert [line.product_id for line in result.released] == [second.id]
        assert result.order.status is OrderStatus.CANCELLED

        held = {item.product_id: item.reserved_quantity for item in result.order.items}
        assert held == {first.id: 2, second.id: 0}
        assert await ledger.available(first.id) == 3
        assert await ledger.available(second.id) == 5

        body = result.to_dict()
        assert body["complete"] is False
        assert body["failed_lines"][0]["quantity"] == 2


class TestAdminDelete:
    async def test_delete_leaves_stock(
        self, orders, cancellations, ledger, make_product, owner, admin, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 2))

        result = await cancellations.admin_delete(OpaqueId(order.order_number), admin)

        assert result.action == "deleted"
        assert result.order_number == order.order_number
        assert await ledger.available(product.id) == 3
        with pytest.raises(NotFound):
            await orders.get_order(OpaqueId(order.order_number), admin)

    async def test_owner_cannot_delete(
        self, orders, cancellations, make_product, owner, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 2))

        with pytest.raises(Forbidden):
            await cancellations.admin_delete(OpaqueId(order.order_number), owner)


class TestCancelOrRemove:
    async def test_owner_cancels(
        self, orders, cancellations, ledger, make_product, owner, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 2))

        result = await cancellations.cancel_or_remove(OpaqueId(order.order_number), owner)

        assert result.action == "cancelled"
        assert await ledger.available(product.id) == 5

    async def test_admin_deletes(
        self, orders, cancellations, ledger, make_product, owner, admin, address
    ):
        product = await make_product("CNL-1", stock=5)
        order = await _place(orders, owner, address, (product, 2))

        result = await cancellations.cancel_or_remove(OpaqueId(order.order_number), admin)

        assert result.action == "deleted"
        assert await ledger.available(product.id) == 3
