"""SQLAlchemy implementation of the Source catalog store."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.pricesync.core.database import as_utc, session_scope, utcnow
from src.pricesync.sync.adapters.source import SourceStore
from src.pricesync.sync.errors import EntityNotFoundError, FamilyNotFoundError, LinkConflictError
from src.pricesync.sync.fields import FieldMapper, FieldSet
from src.pricesync.sync.models import CatalogItemModel, CatalogProductModel, EntityLinkModel
from src.pricesync.sync.schemas import CatalogItem, EntityLink

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_item(model: CatalogItemModel) -> CatalogItem:
    return CatalogItem(
        id=model.id,
        product_id=model.product_id,
        code=model.code,
        archived=model.archived,
    )


def _model_to_link(model: EntityLinkModel) -> EntityLink:
    return EntityLink(
        entity_id=model.entity_id,
        remote_id=model.remote_id,
        created_at=as_utc(model.created_at),
    )


# ── Store ───────────────────────────────────────────────────────────────────


class SqlSourceStore(SourceStore):
    """Catalog access over the catalog_* and entity_links tables.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        mapper: FieldMapper translating between columns and FieldSets.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        mapper: FieldMapper | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._mapper = mapper or FieldMapper()

    # ── Lookups ─────────────────────────────────────────────────────────────

    async def resolve_entity(
        self, remote_id: str | None, item_code: str | None, session: AsyncSession | None = None
    ) -> CatalogItem | None:
        async with session_scope(self._session_factory, session) as s:
            if remote_id:
                stmt = (
                    select(CatalogItemModel)
                    .join(EntityLinkModel, EntityLinkModel.entity_id == CatalogItemModel.id)
                    .where(EntityLinkModel.remote_id == str(remote_id))
                )
                model = (await s.execute(stmt)).scalar_one_or_none()
                if model is not None:
                    return _model_to_item(model)
            if item_code:
                stmt = select(CatalogItemModel).where(CatalogItemModel.code == item_code)
                model = (await s.execute(stmt)).scalar_one_or_none()
                if model is not None:
                    return _model_to_item(model)
            return None

    async def get_item(self, entity_id: int) -> CatalogItem | None:
        async with session_scope(self._session_factory) as s:
            model = await s.get(CatalogItemModel, entity_id)
            return _model_to_item(model) if model is not None else None

    async def get_link(self, entity_id: int) -> EntityLink | None:
        async with session_scope(self._session_factory) as s:
            model = await s.get(EntityLinkModel, entity_id)
            return _model_to_link(model) if model is not None else None

    async def upsert_link(self, entity_id: int, remote_id: str) -> EntityLink:
        """Create or replace the Remote link for an item.

        A Remote record links to at most one item, so pointing a second item
        at an already linked record is refused.

        Raises:
            EntityNotFoundError: If the item does not exist.
            LinkConflictError: If the Remote record is linked to another item.
        """
        remote_id = str(remote_id)
        async with session_scope(self._session_factory) as s:
            if await s.get(CatalogItemModel, entity_id) is None:
                raise EntityNotFoundError(f"Item {entity_id} not found")
            owner = (
                await s.execute(
                    select(EntityLinkModel.entity_id).where(EntityLinkModel.remote_id == remote_id)
                )
            ).scalar_one_or_none()
            if owner is not None and owner != entity_id:
                raise LinkConflictError(remote_id, owner)

            model = await s.get(EntityLinkModel, entity_id)
            if model is None:
                model = EntityLinkModel(entity_id=entity_id, remote_id=remote_id)
                s.add(model)
            else:
                model.remote_id = remote_id
            try:
                await s.commit()
            except IntegrityError as exc:
                await s.rollback()
                raise LinkConflictError(remote_id) from exc
            await s.refresh(model)
            logger.info("source.link_saved", entity_id=entity_id, remote_id=str(remote_id))
            return _model_to_link(model)

    async def family_exists(self, family_id: int, session: AsyncSession | None = None) -> bool:
        async with session_scope(self._session_factory, session) as s:
            return await s.get(CatalogProductModel, family_id) is not None

    async def list_family_members(
        self, family_id: int, session: AsyncSession | None = None
    ) -> list[int]:
        async with session_scope(self._session_factory, session) as s:
            stmt = (
                select(CatalogItemModel.id)
                .join(CatalogProductModel, CatalogProductModel.id == CatalogItemModel.product_id)
                .where(
                    CatalogItemModel.product_id == family_id,
                    CatalogItemModel.archived.is_(False),
                    CatalogProductModel.archived.is_(False),
                )
                .order_by(CatalogItemModel.id)
            )
            return list((await s.execute(stmt)).scalars().all())

    async def list_unmapped_items(self, limit: int = 100) -> list[CatalogItem]:
        async with session_scope(self._session_factory) as s:
            stmt = (
                select(CatalogItemModel)
                .outerjoin(EntityLinkModel, EntityLinkModel.entity_id == CatalogItemModel.id)
                .where(EntityLinkModel.entity_id.is_(None), CatalogItemModel.archived.is_(False))
                .order_by(CatalogItemModel.id)
                .limit(limit)
            )
            return [_model_to_item(m) for m in (await s.execute(stmt)).scalars().all()]

    # ── Pricing ─────────────────────────────────────────────────────────────

    async def read_entity_fields(self, entity_id: int) -> FieldSet:
        """Read an item's current family pricing.

        Raises:
            EntityNotFoundError: If the item does not exist.
        """
        async with session_scope(self._session_factory) as s:
            stmt = (
                select(CatalogProductModel)
                .join(CatalogItemModel, CatalogItemModel.product_id == CatalogProductModel.id)
                .where(CatalogItemModel.id == entity_id)
            )
            product = (await s.execute(stmt)).scalar_one_or_none()
            if product is None:
                raise EntityNotFoundError(f"Item {entity_id} not found")
            return self._mapper.from_source(product)

    async def apply_fields(
        self, family_id: int, fields: FieldSet, session: AsyncSession | None = None
    ) -> FieldSet:
        """Write the given fields onto the family row.

        Only columns for keys present in ``fields`` are touched. When a
        caller session is supplied the write joins its transaction and the
        caller commits; otherwise this method commits.

        Raises:
            FamilyNotFoundError: If the product does not exist.
        """
        async with session_scope(self._session_factory, session) as s:
            product = await s.get(CatalogProductModel, family_id)
            if product is None:
                raise FamilyNotFoundError(f"Product {family_id} not found")
            before = self._mapper.from_source(product)
            if not fields:
                return before
            for column, value in self._mapper.to_source(fields).items():
                setattr(product, column, value)
            product.pricing_updated_at = utcnow()
            await s.flush()
            if session is None:
                await s.commit()
            logger.info(
                "source.fields_applied",
                family_id=family_id,
                fields=fields.to_json(),
            )
            return before
