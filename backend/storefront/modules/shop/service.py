"""
Order Service - order placement, status changes and queries.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.core.config import settings
from storefront.core.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    ShopError,
    Unavailable,
    ValidationError,
)
from storefront.core.security import Actor
from storefront.models.shop import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)
from storefront.modules.shop.cart import CartService
from storefront.modules.shop.catalog import CatalogReader, ProductSnapshot, get_catalog
from storefront.modules.shop.ledger import InventoryLedger, get_ledger
from storefront.modules.shop.refs import EntityRef, NumericId, describe, ref_clause

REQUIRED_ADDRESS_FIELDS = ("street", "city", "state", "postal_code", "country")
OPTIONAL_ADDRESS_FIELDS = ("name", "phone")

CENT = Decimal("0.01")


@dataclass(frozen=True)
class OrderLine:
    """Requested line: a product reference and a quantity."""

    product: EntityRef
    quantity: int


@dataclass(frozen=True)
class Adjustments:
    """Externally computed amounts applied on top of the subtotal."""

    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")


async def fetch_order(db: AsyncSession, ref: EntityRef) -> Order | None:
    """Get order by id or order number, with items loaded."""
    query = (
        select(Order)
        .options(selectinload(Order.items))
        .where(ref_clause(ref, Order.id, Order.order_number))
    )
    try:
        result = await db.execute(query)
    except SQLAlchemyError as e:
        raise Unavailable("Order read failed") from e
    return result.scalar_one_or_none()


async def swap_status(
    db: AsyncSession,
    order: Order,
    expected: OrderStatus,
    target: OrderStatus,
    **values: Any,
) -> bool:
    """
    Move ``order`` from ``expected`` to ``target`` only if nobody changed it.

    Returns:
        True if this call performed the change
    """
    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.status == expected)
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
        swapped = result.rowcount == 1
        # Column attributes only; the loaded items collection stays as is
        await db.refresh(order, attribute_names=["status", "updated_at", *values])
    except SQLAlchemyError as e:
        await db.rollback()
        raise Unavailable("Order update failed") from e
    return swapped


class OrderService:
    """
    Service for placing and managing orders.

    Placement reserves stock through the ledger before the order row exists,
    so this service commits its own session at the points where ledger side
    effects must line up with persisted state.

    Usage:
        orders = OrderService(db_session, cart=cart_service)
        order = await orders.place_order(actor, None, address, "card")
    """

    def __init__(
        self,
        db: AsyncSession,
        ledger: InventoryLedger | None = None,
        catalog: CatalogReader | None = None,
        cart: CartService | None = None,
    ) -> None:
        """Initialize order service with database session and collaborators."""
        self.db = db
        self.ledger = ledger or get_ledger()
        self.catalog = catalog or get_catalog()
        self.cart = cart

    # ==================== Placement ====================

    async def place_order(
        self,
        actor: Actor,
        items: Sequence[OrderLine] | None,
        shipping_address: Mapping[str, Any],
        payment_method: PaymentMethod | str,
        adjustments: Adjustments | None = None,
        notes: str | None = None,
    ) -> Order:
        """
        Create an order, reserving stock for every line.

        Args:
            actor: Acting owner
            items: Requested lines; None takes the owner's cart
            shipping_address: street, city, state, postal_code, country
                (name and phone optional)
            payment_method: One of PaymentMethod
            adjustments: Tax, shipping and discount amounts
            notes: Customer notes

        Returns:
            Created order in pending status with items populated
        """
        method = self._parse_payment_method(payment_method)
        address = self._validate_address(shipping_address)
        adjustments = self._validate_adjustments(adjustments or Adjustments())

        if items is None:
            items = await self._lines_from_cart(actor.owner_id)
        lines = self._validate_lines(items)

        products, quantities = await self._resolve(lines)

        subtotal = sum(
            (products[pid].price * qty for pid, qty in quantities.items()),
            Decimal("0"),
        )
        total = subtotal + adjustments.tax + adjustments.shipping - adjustments.discount
        if total < 0:
            raise ValidationError({"discount": ["Discount exceeds order amount"]})

        reserved = await self._reserve_all(quantities)

        order = Order(
            order_number=self._generate_order_number(),
            owner_id=actor.owner_id,
            status=OrderStatus.PENDING,
            subtotal=subtotal.quantize(CENT),
            tax_amount=adjustments.tax,
            shipping_cost=adjustments.shipping,
            discount_amount=adjustments.discount,
            total=total.quantize(CENT),
            currency=settings.shop_currency,
            payment_method=method,
            payment_status=PaymentStatus.PENDING,
            shipping_name=address.get("name"),
            shipping_street=address["street"],
            shipping_city=address["city"],
            shipping_state=address["state"],
            shipping_postal_code=address["postal_code"],
            shipping_country=address["country"],
            shipping_phone=address.get("phone"),
            customer_notes=notes,
            items=[
                OrderItem(
                    product_id=pid,
                    product_name=products[pid].name,
                    product_sku=products[pid].sku,
                    unit_price=products[pid].price,
                    quantity=qty,
                    total=(products[pid].price * qty).quantize(CENT),
                    reserved_quantity=qty,
                )
                for pid, qty in quantities.items()
            ],
        )

        self.db.add(order)
        try:
            await self.db.flush()
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Persisting order for owner {actor.owner_id} failed: {e}")
            await self.db.rollback()
            await self._release_all(reserved)
            raise Unavailable("Order could not be saved") from e

        logger.info(
            f"Order {order.order_number} placed by {actor.owner_id}: "
            f"{len(order.items)} lines, total {order.total}"
        )

        await self._clear_cart(actor.owner_id)
        return order

    async def _lines_from_cart(self, owner_id: str) -> list[OrderLine]:
        if self.cart is None:
            raise ValidationError({"items": ["Order must have at least one item"]})
        cart = await self.cart.get_or_create(owner_id)
        return [OrderLine(NumericId(item.product_id), item.quantity) for item in cart.items]

    async def _resolve(
        self, lines: Sequence[OrderLine]
    ) -> tuple[dict[int, ProductSnapshot], dict[int, int]]:
        """
        Resolve product references and check availability.

        Lines naming the same product (by id or SKU) are merged and checked
        as one quantity. Insertion order follows the request.
        """
        products: dict[int, ProductSnapshot] = {}
        quantities: dict[int, int] = {}

        for line in lines:
            product = await self.catalog.get(line.product)
            products[product.id] = product
            quantities[product.id] = quantities.get(product.id, 0) + line.quantity

        for pid, qty in quantities.items():
            self.catalog.check_available(products[pid], qty)

        return products, quantities

    async def _reserve_all(self, quantities: Mapping[int, int]) -> list[tuple[int, int]]:
        """
        Reserve every line in ascending product id, all or nothing.

        On the first failure the lines reserved by this call are released
        before the error propagates.
        """
        reserved: list[tuple[int, int]] = []
        for pid in sorted(quantities):
            try:
                await self.ledger.reserve(pid, quantities[pid])
            except ShopError:
                if reserved:
                    logger.warning(
                        f"Reservation of product {pid} failed, "
                        f"rolling back {len(reserved)} reserved lines"
                    )
                await self._release_all(reserved)
                raise
            reserved.append((pid, quantities[pid]))
        return reserved

    async def _release_all(self, reserved: Sequence[tuple[int, int]]) -> None:
        for pid, qty in reserved:
            try:
                await self.ledger.release(pid, qty)
            except ShopError as e:
                logger.error(f"Could not return {qty} units of product {pid}: {e.detail}")

    async def _clear_cart(self, owner_id: str) -> None:
        """Empty the owner's cart; failures never undo the order."""
        if self.cart is None:
            return
        try:
            await self.cart.clear(owner_id)
        except NotFound:
            logger.debug(f"No cart to clear for owner {owner_id}")
        except ShopError as e:
            logger.warning(f"Cart clear for owner {owner_id} failed: {e.detail}")

    def _generate_order_number(self) -> str:
        return f"{settings.order_number_prefix}-{uuid4().hex[:8].upper()}"

    # ==================== Validation ====================

    @staticmethod
    def _parse_payment_method(value: PaymentMethod | str | None) -> PaymentMethod:
        try:
            return PaymentMethod(value)
        except ValueError:
            known = ", ".join(m.value for m in PaymentMethod)
            raise ValidationError({"payment_method": [f"Unknown payment method, expected one of: {known}"]})

    @staticmethod
    def _validate_address(address: Mapping[str, Any] | None) -> dict[str, str]:
        address = address or {}
        missing = [
            field
            for field in REQUIRED_ADDRESS_FIELDS
            if not isinstance(address.get(field), str) or not address[field].strip()
        ]
        if missing:
            raise ValidationError(
                {f"shipping_address.{field}": ["This field is required"] for field in missing}
            )

        cleaned = {field: address[field].strip() for field in REQUIRED_ADDRESS_FIELDS}
        for field in OPTIONAL_ADDRESS_FIELDS:
            if address.get(field):
                cleaned[field] = str(address[field]).strip()
        return cleaned

    @staticmethod
    def _validate_adjustments(adjustments: Adjustments) -> Adjustments:
        errors: dict[str, list[str]] = {}
        values: dict[str, Decimal] = {}
        for field in ("tax", "shipping", "discount"):
            try:
                value = Decimal(getattr(adjustments, field) or 0)
            except (InvalidOperation, TypeError, ValueError):
                errors[field] = ["Must be a number"]
                continue
            if not value.is_finite() or value < 0:
                errors[field] = ["Must be a non-negative amount"]
                continue
            values[field] = value.quantize(CENT)
        if errors:
            raise ValidationError(errors)
        return Adjustments(**values)

    @staticmethod
    def _validate_lines(items: Sequence[OrderLine]) -> list[OrderLine]:
        lines = list(items)
        if not lines:
            raise ValidationError({"items": ["Order must have at least one item"]})
        bad = [i for i, line in enumerate(lines) if line.quantity < 1]
        if bad:
            raise ValidationError(
                {f"items[{i}].quantity": ["Quantity must be at least 1"] for i in bad}
            )
        return lines

    # ==================== Status ====================

    async def update_status(
        self,
        order_ref: EntityRef,
        new_status: OrderStatus | str,
        actor: Actor,
    ) -> Order:
        """
        Move an order along the status state machine.

        Privileged actors only. Delivery stamps delivered_at and settles
        payment. Cancelling here returns reserved stock exactly like the
        cancellation path.
        """
        if not actor.is_privileged:
            raise Forbidden("Only privileged actors can change order status")

        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationError({"status": [f"Unknown status: {new_status}"]})

        if target is OrderStatus.CANCELLED:
            # Imported here: cancellation builds on this module's helpers
            from storefront.modules.shop.cancellation import CancellationService

            result = await CancellationService(self.db, self.ledger).cancel(order_ref, actor)
            return result.order

        order = await self._require(order_ref)
        current = order.status
        if not current.can_transition_to(target):
            raise InvalidTransition(
                f"Cannot transition from {current.value} to {target.value}"
            )

        values: dict[str, Any] = {}
        if target is OrderStatus.DELIVERED:
            now = utcnow()
            values.update(delivered_at=now, payment_status=PaymentStatus.PAID, paid_at=now)

        if not await swap_status(self.db, order, current, target, **values):
            message = f"Order {order.order_number} changed concurrently, now {order.status.value}"
            await self.db.rollback()
            raise InvalidTransition(message)
        await self._commit()

        logger.info(f"Order {order.order_number}: {current.value} -> {target.value}")
        return order

    # ==================== Queries ====================

    async def get_order(self, order_ref: EntityRef, actor: Actor) -> Order:
        """Get an order visible to ``actor``."""
        order = await self._require(order_ref)
        if not actor.can_access(order.owner_id):
            raise Forbidden("Not authorized to access this order")
        return order

    async def list_orders(
        self,
        actor: Actor,
        status: OrderStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Order]:
        """Owner's orders, or all orders for a privileged actor, newest first."""
        query = select(Order).options(selectinload(Order.items))

        if not actor.is_privileged:
            query = query.where(Order.owner_id == actor.owner_id)
        if status:
            query = query.where(Order.status == status)

        query = query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset)

        try:
            result = await self.db.execute(query)
        except SQLAlchemyError as e:
            raise Unavailable("Order read failed") from e
        return list(result.scalars().all())

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
