"""
Cart Service - Shopping cart management with Redis.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from loguru import logger
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from redis.exceptions import RedisError

from storefront.core.config import settings
from storefront.core.errors import NotFound, Unavailable, ValidationError
from storefront.modules.shop.catalog import CatalogReader, get_catalog
from storefront.modules.shop.refs import EntityRef, NumericId


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CartItem(BaseModel):
    """One cart line; price is captured when the line is first added."""

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    product_id: int
    sku: str
    name: str
    price: Decimal
    quantity: int = Field(ge=1)
    added_at: datetime = Field(default_factory=_now)

    @property
    def total(self) -> Decimal:
        return self.price * self.quantity


class Cart(BaseModel):
    """Per-owner basket."""

    owner_id: str
    items: list[CartItem] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_now)

    def find_item(self, item_id: str) -> CartItem | None:
        return next((item for item in self.items if item.id == item_id), None)

    def find_product(self, product_id: int) -> CartItem | None:
        return next((item for item in self.items if item.product_id == product_id), None)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.total for item in self.items), Decimal("0"))

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


class CartService:
    """
    Shopping cart service using Redis for storage.

    Cart is stored per owner with TTL for automatic expiration. Stock checks
    go through the catalog and are advisory; order placement enforces them.

    Usage:
        cart = CartService()
        await cart.add_item(owner_id, NumericId(42), quantity=2)
        current = await cart.get_or_create(owner_id)
    """

    def __init__(
        self,
        catalog: CatalogReader | None = None,
        redis_client: redis.Redis | None = None,
        ttl: int | None = None,
    ) -> None:
        """Initialize cart service; Redis connects lazily unless a client is given."""
        self._catalog = catalog
        self._redis: redis.Redis | None = redis_client
        self.ttl = ttl or settings.cart_ttl_seconds

    @property
    def catalog(self) -> CatalogReader:
        if self._catalog is None:
            self._catalog = get_catalog()
        return self._catalog

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.from_url(
            str(settings.redis_url),
            encoding="utf-8",
            decode_responses=True,
        )

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _cart_key(self, owner_id: str) -> str:
        """Generate Redis key for owner's cart."""
        return f"cart:{owner_id}"

    # ==================== Storage ====================

    async def _load(self, owner_id: str) -> Cart | None:
        """Load cart, or None when the owner has no cart."""
        if not self._redis:
            await self.connect()

        try:
            cart_data = await self._redis.get(self._cart_key(owner_id))
        except RedisError as e:
            raise Unavailable("Cart storage unavailable") from e

        if cart_data is None:
            return None

        try:
            return Cart.model_validate_json(cart_data)
        except PydanticValidationError:
            logger.warning(f"Invalid cart data for owner {owner_id}, resetting")
            return Cart(owner_id=owner_id)

    async def _save(self, cart: Cart) -> Cart:
        """Save cart and refresh its TTL."""
        if not self._redis:
            await self.connect()

        cart.updated_at = _now()
        try:
            await self._redis.setex(
                self._cart_key(cart.owner_id),
                self.ttl,
                cart.model_dump_json(),
            )
        except RedisError as e:
            raise Unavailable("Cart storage unavailable") from e
        return cart

    async def _require(self, owner_id: str) -> Cart:
        cart = await self._load(owner_id)
        if cart is None:
            raise NotFound("Cart not found")
        return cart

    # ==================== Operations ====================

    async def get_or_create(self, owner_id: str) -> Cart:
        """Return owner's cart, creating an empty one if needed."""
        cart = await self._load(owner_id)
        if cart is None:
            cart = await self._save(Cart(owner_id=owner_id))
            logger.debug(f"Created cart for owner {owner_id}")
        return cart

    async def add_item(self, owner_id: str, product: EntityRef, quantity: int = 1) -> Cart:
        """
        Add item to cart or merge into the existing line for that product.

        A merge is validated as one stock check on the combined quantity and
        leaves the cart untouched when it fails.

        Args:
            owner_id: Cart owner
            product: Product id or SKU
            quantity: Units to add

        Returns:
            Updated cart
        """
        self._check_quantity(quantity)
        snapshot = await self.catalog.get(product)
        cart = await self.get_or_create(owner_id)

        existing = cart.find_product(snapshot.id)
        requested = quantity + (existing.quantity if existing else 0)
        self.catalog.check_available(snapshot, requested)

        if existing:
            existing.quantity = requested
        else:
            cart.items.append(
                CartItem(
                    product_id=snapshot.id,
                    sku=snapshot.sku,
                    name=snapshot.name,
                    price=snapshot.price,
                    quantity=quantity,
                )
            )

        return await self._save(cart)

    async def update_item(self, owner_id: str, item_id: str, quantity: int) -> Cart:
        """Replace a line's quantity after re-checking current stock."""
        self._check_quantity(quantity)
        cart = await self._require(owner_id)

        item = cart.find_item(item_id)
        if item is None:
            raise NotFound("Item not found in cart")

        snapshot = await self.catalog.get(NumericId(item.product_id))
        self.catalog.check_available(snapshot, quantity)

        item.quantity = quantity
        return await self._save(cart)

    async def remove_item(self, owner_id: str, item_id: str) -> Cart:
        """Remove a line. Removing an absent line is a no-op."""
        cart = await self._require(owner_id)
        remaining = [item for item in cart.items if item.id != item_id]
        if len(remaining) == len(cart.items):
            return cart
        cart.items = remaining
        return await self._save(cart)

    async def clear(self, owner_id: str) -> Cart:
        """Clear all items from cart."""
        cart = await self._require(owner_id)
        cart.items = []
        return await self._save(cart)

    async def get_totals(self, owner_id: str) -> dict[str, Any]:
        """
        Calculate cart totals from captured prices.

        Returns:
            Totals including subtotal and item count
        """
        cart = await self.get_or_create(owner_id)
        return {
            "subtotal": str(cart.subtotal),
            "item_count": cart.item_count,
            "line_count": len(cart.items),
        }

    @staticmethod
    def _check_quantity(quantity: int) -> None:
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})


# Singleton instance
_cart_service: CartService | None = None


async def get_cart_service() -> CartService:
    """Get or create cart service singleton."""
    global _cart_service
    if _cart_service is None:
        _cart_service = CartService()
        await _cart_service.connect()
    return _cart_service
