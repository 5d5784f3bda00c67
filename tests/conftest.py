from decimal import Decimal
from pathlib import Path

import pytest
from fakeredis import FakeAsyncRedis

from storefront.core.database import build_engine, build_session_factory, init_db
from storefront.core.security import Actor, Role
from storefront.models.shop import Product
from storefront.modules.shop.cancellation import CancellationService
from storefront.modules.shop.cart import CartService
from storefront.modules.shop.catalog import CatalogReader
from storefront.modules.shop.ledger import InventoryLedger
from storefront.modules.shop.service import OrderService


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        test_path = str(Path(item.fspath))

        if "/domain/" in test_path:
            item.add_marker(pytest.mark.domain)
        elif "/application/" in test_path:
            item.add_marker(pytest.mark.application)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
            if not any(m.name == "fast" for m in item.iter_markers()):
                item.add_marker(pytest.mark.slow)


# ==================== Infrastructure ====================


@pytest.fixture()
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions share one database."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def redis_client():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


# ==================== Services ====================


@pytest.fixture()
def ledger(session_factory):
    return InventoryLedger(session_factory, retry_attempts=3, retry_delay=0.01)


@pytest.fixture()
def catalog(session_factory):
    return CatalogReader(session_factory)


@pytest.fixture()
def cart_service(catalog, redis_client):
    return CartService(catalog=catalog, redis_client=redis_client, ttl=3600)


@pytest.fixture()
def orders(db, ledger, catalog, cart_service):
    return OrderService(db, ledger=ledger, catalog=catalog, cart=cart_service)


@pytest.fixture()
def cancellations(db, ledger):
    return CancellationService(db, ledger=ledger)


# ==================== Data ====================


@pytest.fixture()
def make_product(session_factory):
    """Factory: insert a product and return it (detached, attributes loaded)."""

    async def _make(sku, price="10.00", stock=5, is_active=True, name=None):
        async with session_factory() as session:
            product = Product(
                sku=sku,
                name=name or f"Product {sku}",
                price=Decimal(price),
                stock_quantity=stock,
                is_active=is_active,
            )
            session.add(product)
            await session.commit()
            return product

    return _make


@pytest.fixture()
def owner():
    return Actor(owner_id="user-001")


@pytest.fixture()
def other_owner():
    return Actor(owner_id="user-002")


@pytest.fixture()
def admin():
    return Actor(owner_id="admin-001", role=Role.PRIVILEGED)


@pytest.fixture()
def address():
    return {
        "name": "Ada Lovelace",
        "street": "12 Analytical Row",
        "city": "London",
        "state": "Greater London",
        "postal_code": "N1 9GU",
        "country": "GB",
    }
