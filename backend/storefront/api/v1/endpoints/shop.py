"""
Shop API Endpoints.

Cart and order fulfillment for authenticated owners.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.database import get_db
from storefront.core.security import Actor, get_current_actor
from storefront.models.shop import Order, OrderStatus
from storefront.modules.shop.cancellation import CancellationService
from storefront.modules.shop.cart import Cart, CartService, get_cart_service
from storefront.modules.shop.catalog import CatalogReader, get_catalog
from storefront.modules.shop.ledger import InventoryLedger, get_ledger
from storefront.modules.shop.refs import EntityRef, NumericId, OpaqueId
from storefront.modules.shop.service import Adjustments, OrderLine, OrderService

router = APIRouter()


# ==================== Schemas ====================


class ProductRefFields(BaseModel):
    """A product addressed by numeric id or by SKU, never both."""

    product_id: int | None = None
    sku: str | None = None

    @model_validator(mode="after")
    def exactly_one_reference(self) -> "ProductRefFields":
        if (self.product_id is None) == (self.sku is None):
            raise ValueError("Provide exactly one of product_id or sku")
        return self

    @property
    def ref(self) -> EntityRef:
        if self.product_id is not None:
            return NumericId(self.product_id)
        return OpaqueId(self.sku)


class AddToCartRequest(ProductRefFields):
    """Add item to cart."""

    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(BaseModel):
    """Update cart item quantity."""

    quantity: int = Field(..., ge=1)


class OrderItemRequest(ProductRefFields):
    """Explicit order line."""

    quantity: int = Field(1, ge=1)


class ShippingAddress(BaseModel):
    """Shipping address captured on the order."""

    name: str | None = None
    street: str
    city: str
    state: str
    postal_code: str
    country: str
    phone: str | None = None


class CreateOrderRequest(BaseModel):
    """Create new order. Without items, the owner's cart is used."""

    items: list[OrderItemRequest] | None = None
    shipping_address: ShippingAddress
    payment_method: str
    tax: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    notes: str | None = None


class UpdateStatusRequest(BaseModel):
    """Change order status."""

    status: str


# ==================== Dependencies ====================


async def get_order_service(
    db: AsyncSession = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
    catalog: CatalogReader = Depends(get_catalog),
    cart: CartService = Depends(get_cart_service),
) -> OrderService:
    return OrderService(db, ledger=ledger, catalog=catalog, cart=cart)


async def get_cancellation_service(
    db: AsyncSession = Depends(get_db),
    ledger: InventoryLedger = Depends(get_ledger),
) -> CancellationService:
    return CancellationService(db, ledger=ledger)


# ==================== Serializers ====================


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_cart(cart: Cart) -> dict[str, Any]:
    return {
        "owner_id": cart.owner_id,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "sku": item.sku,
                "name": item.name,
                "price": float(item.price),
                "quantity": item.quantity,
                "total": float(item.total),
            }
            for item in cart.items
        ],
        "totals": {
            "subtotal": float(cart.subtotal),
            "item_count": cart.item_count,
        },
        "updated_at": _iso(cart.updated_at),
    }


def _serialize_order(order: Order) -> dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "owner_id": order.owner_id,
        "status": order.status.value,
        "payment_method": order.payment_method.value,
        "payment_status": order.payment_status.value,
        "subtotal": float(order.subtotal),
        "tax_amount": float(order.tax_amount),
        "shipping_cost": float(order.shipping_cost),
        "discount_amount": float(order.discount_amount),
        "total": float(order.total),
        "currency": order.currency,
        "shipping_address": order.shipping_address,
        "notes": order.customer_notes,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "sku": item.product_sku,
                "name": item.product_name,
                "quantity": item.quantity,
                "unit_price": float(item.unit_price),
                "total": float(item.total),
                "reserved_quantity": item.reserved_quantity,
            }
            for item in order.items
        ],
        "created_at": _iso(order.created_at),
        "paid_at": _iso(order.paid_at),
        "delivered_at": _iso(order.delivered_at),
        "cancelled_at": _iso(order.cancelled_at),
    }


# ==================== Cart ====================


@router.get("/cart")
async def get_cart_contents(
    actor: Actor = Depends(get_current_actor),
    cart: CartService = Depends(get_cart_service),
) -> dict[str, Any]:
    """Get the owner's cart, creating an empty one if needed."""
    return _serialize_cart(await cart.get_or_create(actor.owner_id))


@router.post("/cart/items")
async def add_to_cart(
    request: AddToCartRequest,
    actor: Actor = Depends(get_current_actor),
    cart: CartService = Depends(get_cart_service),
) -> dict[str, Any]:
    """Add item to cart, merging with an existing line for the same product."""
    updated = await cart.add_item(actor.owner_id, request.ref, request.quantity)
    return _serialize_cart(updated)


@router.put("/cart/items/{item_id}")
async def update_cart_item(
    item_id: str,
    request: UpdateCartItemRequest,
    actor: Actor = Depends(get_current_actor),
    cart: CartService = Depends(get_cart_service),
) -> dict[str, Any]:
    """Update item quantity in cart."""
    updated = await cart.update_item(actor.owner_id, item_id, request.quantity)
    return _serialize_cart(updated)


@router.delete("/cart/items/{item_id}")
async def remove_from_cart(
    item_id: str,
    actor: Actor = Depends(get_current_actor),
    cart: CartService = Depends(get_cart_service),
) -> dict[str, Any]:
    """Remove item from cart."""
    return _serialize_cart(await cart.remove_item(actor.owner_id, item_id))


@router.delete("/cart")
async def clear_cart(
    actor: Actor = Depends(get_current_actor),
    cart: CartService = Depends(get_cart_service),
) -> dict[str, Any]:
    """Clear entire cart."""
    return _serialize_cart(await cart.clear(actor.owner_id))


# ==================== Orders ====================


@router.post("/orders", status_code=201)
async def create_order(
    request: CreateOrderRequest,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> dict[str, Any]:
    """
    Place an order.

    Reserves stock for every line and clears the owner's cart.
    """
    items = None
    if request.items is not None:
        items = [OrderLine(item.ref, item.quantity) for item in request.items]

    order = await orders.place_order(
        actor,
        items,
        shipping_address=request.shipping_address.model_dump(),
        payment_method=request.payment_method,
        adjustments=Adjustments(
            tax=request.tax,
            shipping=request.shipping,
            discount=request.discount,
        ),
        notes=request.notes,
    )
    return _serialize_order(order)


@router.get("/orders")
async def get_orders(
    status: OrderStatus | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> dict[str, Any]:
    """Get the owner's orders, or all orders for privileged actors."""
    found = await orders.list_orders(actor, status=status, limit=limit, offset=offset)

    return {
        "items": [_serialize_order(o) for o in found],
        "count": len(found),
        "limit": limit,
        "offset": offset,
    }


@router.get("/orders/{order_number}")
async def get_order(
    order_number: str,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> dict[str, Any]:
    """Get order details."""
    return _serialize_order(await orders.get_order(OpaqueId(order_number), actor))


@router.patch("/orders/{order_number}/status")
async def update_order_status(
    order_number: str,
    request: UpdateStatusRequest,
    actor: Actor = Depends(get_current_actor),
    orders: OrderService = Depends(get_order_service),
) -> dict[str, Any]:
    """Change order status (privileged only)."""
    order = await orders.update_status(OpaqueId(order_number), request.status, actor)
    return _serialize_order(order)


@router.post("/orders/{order_number}/cancel")
async def cancel_order(
    order_number: str,
    actor: Actor = Depends(get_current_actor),
    cancellations: CancellationService = Depends(get_cancellation_service),
) -> dict[str, Any]:
    """Cancel an order and return its stock."""
    result = await cancellations.cancel(OpaqueId(order_number), actor)
    return result.to_dict()


@router.delete("/orders/{order_number}")
async def delete_order(
    order_number: str,
    actor: Actor = Depends(get_current_actor),
    cancellations: CancellationService = Depends(get_cancellation_service),
) -> dict[str, Any]:
    """Cancel (owner) or delete (privileged) an order."""
    result = await cancellations.cancel_or_remove(OpaqueId(order_number), actor)
    return result.to_dict()
