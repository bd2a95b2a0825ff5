"""Shared fixtures for the pricing sync tests.

Provides:
- A file-backed SQLite database (aiosqlite) with all tables created
- A seeded catalog: one linked family {A, B, C}, one family with an
  unmapped and an archived item, and one empty family
- FakeRemoteAdapter recording every update it receives
- A fully wired SyncServices bundle with zero backoff
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

import src.pricesync.sync.models  # noqa: F401
from src.pricesync.core.database import Base, make_session_factory
from src.pricesync.sync.models import CatalogItemModel, CatalogProductModel, EntityLinkModel
from src.pricesync.sync.service import SyncServices, build_sync_services
from tests.doubles import FakeRemoteAdapter, SeededCatalog, make_settings


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite engine with a single pooled connection (serializes writers)."""
    db_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pricesync.db'}",
        poolclass=AsyncAdaptedQueuePool,
        pool_size=1,
        max_overflow=0,
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def catalog(session_factory) -> SeededCatalog:
    """Seed the catalog.

    - Oak (1): price_cut 75.00, price_roll 60.00, cost_cut 40.00, cost_roll 30.00;
      items A (11, OAK-A), B (12, OAK-B), C (13, OAK-C) linked to 1011/1012/1013
    - Walnut (2): item X (21, WAL-X) with no link, archived item (22, WAL-OLD)
    - Empty (3): no items
    """
    ids = SeededCatalog()
    async for session in session_factory():
        session.add_all(
            [
                CatalogProductModel(
                    id=ids.oak,
                    name="Oak",
                    price_cut=Decimal("75.00"),
                    price_roll=Decimal("60.00"),
                    cost_cut=Decimal("40.00"),
                    cost_roll=Decimal("30.00"),
                ),
                CatalogProductModel(id=ids.walnut, name="Walnut", price_cut=Decimal("90.00")),
                CatalogProductModel(id=ids.empty, name="Empty"),
            ]
        )
        await session.flush()
        session.add_all(
            [
                CatalogItemModel(id=ids.a, product_id=ids.oak, code="OAK-A"),
                CatalogItemModel(id=ids.b, product_id=ids.oak, code="OAK-B"),
                CatalogItemModel(id=ids.c, product_id=ids.oak, code="OAK-C"),
                CatalogItemModel(id=ids.unmapped, product_id=ids.walnut, code="WAL-X"),
                CatalogItemModel(id=ids.archived, product_id=ids.walnut, code="WAL-OLD", archived=True),
            ]
        )
        await session.flush()
        session.add_all(
            [
                EntityLinkModel(entity_id=ids.a, remote_id="1011"),
                EntityLinkModel(entity_id=ids.b, remote_id="1012"),
                EntityLinkModel(entity_id=ids.c, remote_id="1013"),
            ]
        )
        await session.commit()
    return ids


@pytest_asyncio.fixture
async def remote() -> FakeRemoteAdapter:
    return FakeRemoteAdapter()


@pytest_asyncio.fixture
async def services(session_factory, catalog, remote) -> AsyncGenerator[SyncServices, None]:
    bundle = build_sync_services(make_settings(), session_factory, remote=remote)
    yield bundle
    await bundle.close()
