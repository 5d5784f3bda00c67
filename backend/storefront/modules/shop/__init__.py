"""
Shop Module - Order fulfillment core.

Features:
- Inventory ledger with atomic reserve/release
- Shopping cart with advisory stock checks
- Order placement with compensating rollback
- Order status state machine
- Cancellation with stock return
"""

from storefront.modules.shop.cancellation import CancellationResult, CancellationService
from storefront.modules.shop.cart import Cart, CartItem, CartService
from storefront.modules.shop.catalog import CatalogReader, ProductSnapshot
from storefront.modules.shop.ledger import InventoryLedger
from storefront.modules.shop.refs import EntityRef, NumericId, OpaqueId
from storefront.modules.shop.service import Adjustments, OrderLine, OrderService

__all__ = [
    "Adjustments",
    "CancellationResult",
    "CancellationService",
    "Cart",
    "CartItem",
    "CartService",
    "CatalogReader",
    "EntityRef",
    "InventoryLedger",
    "NumericId",
    "OpaqueId",
    "OrderLine",
    "OrderService",
    "ProductSnapshot",
]
