"""
Catalog read channel.

The catalog collaborator owns product records. This module reads them as
frozen snapshots and performs the advisory availability check shared by the
cart and order placement.
"""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.database import get_session_factory
from storefront.core.errors import (
    InsufficientStock,
    NotFound,
    ProductUnavailable,
    Unavailable,
)
from storefront.models.shop import Product
from storefront.modules.shop.refs import EntityRef, describe, ref_clause


@dataclass(frozen=True)
class ProductSnapshot:
    """Product fields as read at one point in time."""

    id: int
    sku: str
    name: str
    price: Decimal
    stock_quantity: int
    is_active: bool

    @classmethod
    def from_model(cls, product: Product) -> "ProductSnapshot":
        return cls(
            id=product.id,
            sku=product.sku,
            name=product.name,
            price=Decimal(product.price),
            stock_quantity=product.stock_quantity,
            is_active=product.is_active,
        )


class CatalogReader:
    """
    Reads products through short-lived sessions.

    Usage:
        catalog = CatalogReader(session_factory)
        product = await catalog.get(NumericId(1))
        catalog.check_available(product, quantity=2)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find(self, ref: EntityRef) -> ProductSnapshot | None:
        """Get product by numeric id or SKU."""
        query = select(Product).where(ref_clause(ref, Product.id, Product.sku))
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                product = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise Unavailable("Catalog read failed") from e

        return ProductSnapshot.from_model(product) if product else None

    async def get(self, ref: EntityRef) -> ProductSnapshot:
        product = await self.find(ref)
        if product is None:
            raise NotFound(f"Product {describe(ref)} not found")
        return product

    @staticmethod
    def check_available(product: ProductSnapshot, quantity: int) -> None:
        if not product.is_active:
            raise ProductUnavailable(f"Product {product.sku} is not available")
        if product.stock_quantity < quantity:
            raise InsufficientStock(product.id, quantity, product.stock_quantity)


_catalog: CatalogReader | None = None


def get_catalog() -> CatalogReader:
    """Get or create catalog reader singleton."""
    global _catalog
    if _catalog is None:
        _catalog = CatalogReader(get_session_factory())
    return _catalog
