"""
API Version 1 Router.

Combines all API endpoints under /api/v1 prefix.
"""

from fastapi import APIRouter

from storefront.api.v1.endpoints import shop

router = APIRouter()

# Include endpoint routers
router.include_router(shop.router, prefix="/shop", tags=["Shop"])
