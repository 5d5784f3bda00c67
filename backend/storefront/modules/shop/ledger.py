"""
Inventory Ledger - per-product available quantity.

Every mutation is a single conditional UPDATE in its own short transaction,
so each product row changes one writer at a time and a decrement that would go
below zero matches no row and changes nothing.
"""

import asyncio

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import settings
from storefront.core.database import get_session_factory
from storefront.core.errors import (
    Conflict,
    InsufficientStock,
    NotFound,
    Unavailable,
    ValidationError,
)
from storefront.models.shop import Product


class InventoryLedger:
    """
    Atomic reserve/release of product stock.

    Lock contention reported by the driver (OperationalError) is retried with
    a linear backoff; when attempts run out the call fails with Conflict.

    Usage:
        ledger = InventoryLedger(session_factory)
        remaining = await ledger.reserve(product_id=1, quantity=3)
        await ledger.release(product_id=1, quantity=3)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.retry_attempts = max(1, retry_attempts or settings.ledger_retry_attempts)
        self.retry_delay = settings.ledger_retry_delay if retry_delay is None else retry_delay

    # ==================== Public API ====================

    async def reserve(self, product_id: int, quantity: int) -> int:
        """
        Deduct ``quantity`` units from a product.

        Returns:
            Available quantity after the reservation

        Raises:
            NotFound: no such product
            InsufficientStock: fewer than ``quantity`` units available
        """
        self._check_quantity(quantity)
        remaining = await self._apply(product_id, -quantity)
        logger.debug(f"Reserved {quantity} of product {product_id}, {remaining} left")
        return remaining

    async def release(self, product_id: int, quantity: int) -> int:
        """
        Return ``quantity`` units to a product.

        No reservation record is consulted; callers own that bookkeeping.

        Returns:
            Available quantity after the release
        """
        self._check_quantity(quantity)
        remaining = await self._apply(product_id, quantity)
        logger.debug(f"Released {quantity} of product {product_id}, {remaining} left")
        return remaining

    async def adjust(self, product_id: int, delta: int) -> int:
        """
        Catalog write channel: add (positive) or remove (negative) stock.

        Removal uses the same guard as ``reserve``.
        """
        if delta == 0:
            return await self.available(product_id)
        remaining = await self._apply(product_id, delta)
        logger.info(f"Stock of product {product_id} adjusted by {delta:+d} to {remaining}")
        return remaining

    async def available(self, product_id: int) -> int:
        """Current available quantity."""
        try:
            async with self._session_factory() as session:
                quantity = await session.scalar(
                    select(Product.stock_quantity).where(Product.id == product_id)
                )
        except SQLAlchemyError as e:
            raise Unavailable("Inventory read failed") from e

        if quantity is None:
            raise NotFound(f"Product {product_id} not found")
        return quantity

    # ==================== Internals ====================

    @staticmethod
    def _check_quantity(quantity: int) -> None:
        if quantity < 1:
            raise ValidationError({"quantity": ["Quantity must be at least 1"]})

    async def _apply(self, product_id: int, delta: int) -> int:
        """Run the guarded update with bounded retries on lock contention."""
        last_error: OperationalError | None = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                matched, current = await self._execute(product_id, delta)
            except OperationalError as e:
                last_error = e
                logger.warning(
                    f"Stock update for product {product_id} contended "
                    f"(attempt {attempt}/{self.retry_attempts}): {e}"
                )
                if attempt < self.retry_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)
                continue
            except SQLAlchemyError as e:
                logger.error(f"Stock update for product {product_id} failed: {e}")
                raise Unavailable("Inventory update failed") from e

            if current is None:
                raise NotFound(f"Product {product_id} not found")
            if not matched:
                raise InsufficientStock(product_id, -delta, current)
            return current

        raise Conflict(
            f"Stock for product {product_id} is contended, try again",
            product_id=product_id,
        ) from last_error

    async def _execute(self, product_id: int, delta: int) -> tuple[bool, int | None]:
        """
        One transaction: conditional update, then read back the row.

        Returns:
            (whether the update matched, quantity after the statement or
            None when the product does not exist)
        """
        stmt = update(Product).where(Product.id == product_id)
        if delta < 0:
            stmt = stmt.where(Product.stock_quantity >= -delta)
        stmt = stmt.values(stock_quantity=Product.stock_quantity + delta).execution_options(
            synchronize_session=False
        )

        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
                matched = result.rowcount == 1
                current = await session.scalar(
                    select(Product.stock_quantity).where(Product.id == product_id)
                )
        return matched, current


_ledger: InventoryLedger | None = None


def get_ledger() -> InventoryLedger:
    """Get or create inventory ledger singleton."""
    global _ledger
    if _ledger is None:
        _ledger = InventoryLedger(get_session_factory())
    return _ledger
