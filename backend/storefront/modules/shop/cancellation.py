"""
Cancellation Service - order cancellation and administrative removal.

Cancelling is not one transaction: the status change is committed first, then
each line's stock goes back through the ledger on its own. A line that cannot
be released keeps its reserved_quantity and is reported to the caller; the
other lines are still released.
"""

from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    ShopError,
    Unavailable,
)
from storefront.core.security import Actor
from storefront.models.shop import Order, OrderStatus, utcnow
from storefront.modules.shop.ledger import InventoryLedger, get_ledger
from storefront.modules.shop.refs import EntityRef, describe
from storefront.modules.shop.service import fetch_order, swap_status


@dataclass
class LineRelease:
    """Outcome of returning one order line's stock."""

    item_id: int
    product_id: int
    quantity: int
    error: str | None = None


@dataclass
class CancellationResult:
    order_number: str
    action: str  # "cancelled", "already_cancelled" or "deleted"
    order: Order | None = None
    released: list[LineRelease] = field(default_factory=list)
    failed: list[LineRelease] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_number": self.order_number,
            "action": self.action,
            "complete": self.complete,
            "released": [vars(line) for line in self.released],
            "failed_lines": [vars(line) for line in self.failed],
        }


class CancellationService:
    """
    Reverses committed orders.

    Usage:
        service = CancellationService(db_session)
        result = await service.cancel(OpaqueId("ORD-1A2B3C4D"), actor)
    """

    def __init__(self, db: AsyncSession, ledger: InventoryLedger | None = None) -> None:
        self.db = db
        self.ledger = ledger or get_ledger()

    async def cancel(self, order_ref: EntityRef, actor: Actor) -> CancellationResult:
        """
        Cancel an order and return its reserved stock.

        Cancelling an already cancelled order succeeds without effect.

        Raises:
            NotFound: no such order
            Forbidden: actor is neither the owner nor privileged
            InvalidTransition: order already delivered
        """
        order = await self._require(order_ref)
        if not actor.can_access(order.owner_id):
            raise Forbidden("Not authorized to cancel this order")

        # Status only moves forward, so this loop ends within a few rounds
        for _ in range(len(OrderStatus)):
            current = order.status
            if current is OrderStatus.CANCELLED:
                await self._commit()
                return CancellationResult(
                    order_number=order.order_number,
                    action="already_cancelled",
                    order=order,
                )
            if not current.can_transition_to(OrderStatus.CANCELLED):
                await self._commit()
                raise InvalidTransition(f"Cannot cancel order in {current.value} status")
            if await swap_status(
                self.db, order, current, OrderStatus.CANCELLED, cancelled_at=utcnow()
            ):
                break
        else:
            raise InvalidTransition(f"Order {order.order_number} keeps changing, try again")

        await self._commit()
        logger.info(f"Order {order.order_number} cancelled by {actor.owner_id}")

        result = CancellationResult(
            order_number=order.order_number,
            action="cancelled",
            order=order,
        )
        await self._release_lines(order, result)
        await self._commit()

        if result.failed:
            logger.error(
                f"Order {order.order_number} cancelled with {len(result.failed)} "
                f"lines still holding stock"
            )
        return result

    async def admin_delete(self, order_ref: EntityRef, actor: Actor) -> CancellationResult:
        """Hard-delete an order. Inventory is left untouched."""
        if not actor.is_privileged:
            raise Forbidden("Only privileged actors can delete orders")

        order = await self._require(order_ref)
        order_number = order.order_number

        await self.db.delete(order)
        await self._commit()

        logger.info(f"Order {order_number} deleted by {actor.owner_id}")
        return CancellationResult(order_number=order_number, action="deleted")

    async def cancel_or_remove(self, order_ref: EntityRef, actor: Actor) -> CancellationResult:
        """Single entry point: privileged actors delete, owners cancel."""
        if actor.is_privileged:
            return await self.admin_delete(order_ref, actor)
        return await self.cancel(order_ref, actor)

    async def _release_lines(self, order: Order, result: CancellationResult) -> None:
        """Return each line's reserved stock, continuing past failures."""
        for item in sorted(order.items, key=lambda i: (i.product_id, i.id)):
            quantity = item.reserved_quantity
            if quantity <= 0:
                continue

            line = LineRelease(item_id=item.id, product_id=item.product_id, quantity=quantity)
            try:
                await self.ledger.release(item.product_id, quantity)
            except ShopError as e:
                logger.warning(
                    f"Releasing {quantity} of product {item.product_id} "
                    f"for order {order.order_number} failed: {e.detail}"
                )
                line.error = e.detail
                result.failed.append(line)
                continue

            item.reserved_quantity = 0
            result.released.append(line)

    async def _require(self, order_ref: EntityRef) -> Order:
        order = await fetch_order(self.db, order_ref)
        if order is None:
            raise NotFound(f"Order {describe(order_ref)} not found")
        return order

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise Unavailable("Order update failed") from e
