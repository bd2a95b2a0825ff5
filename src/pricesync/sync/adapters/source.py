"""Source store abstract base class -- read/write access to the product catalog.

Pricing lives on the product family, so every read of an item's fields
returns its family's current values and every write updates all siblings
at once. Methods that take an optional ``session`` join the caller's
transaction instead of committing on their own.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from src.pricesync.sync.fields import FieldSet
from src.pricesync.sync.schemas import CatalogItem, EntityLink

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


class SourceStore(ABC):
    """Abstract interface for Source catalog access.

    Methods:
        resolve_entity: Find the Source item for a Remote id or item code.
        get_item: Fetch one item by id.
        get_link / upsert_link: Read or write the Source <-> Remote id link.
        family_exists: Whether a product family exists.
        list_family_members: Ids of all live items in a family.
        read_entity_fields: Current pricing of an item (via its family).
        apply_fields: Write recognized fields to a family.
        list_unmapped_items: Live items without a Remote link.
    """

    @abstractmethod
    async def resolve_entity(
        self, remote_id: str | None, item_code: str | None, session: AsyncSession | None = None
    ) -> CatalogItem | None:
        """Resolve by EntityLink remote id first, then by item code."""
        ...

    @abstractmethod
    async def get_item(self, entity_id: int) -> CatalogItem | None:
        ...

    @abstractmethod
    async def get_link(self, entity_id: int) -> EntityLink | None:
        ...

    @abstractmethod
    async def upsert_link(self, entity_id: int, remote_id: str) -> EntityLink:
        ...

    @abstractmethod
    async def family_exists(self, family_id: int, session: AsyncSession | None = None) -> bool:
        ...

    @abstractmethod
    async def list_family_members(
        self, family_id: int, session: AsyncSession | None = None
    ) -> list[int]:
        """Return ids of non-archived items in the family (0..N, unbounded)."""
        ...

    @abstractmethod
    async def read_entity_fields(self, entity_id: int) -> FieldSet:
        """Return the current pricing fields for an item's family."""
        ...

    @abstractmethod
    async def apply_fields(
        self, family_id: int, fields: FieldSet, session: AsyncSession | None = None
    ) -> FieldSet:
        """Write exactly the given fields to the family, return the previous values."""
        ...

    @abstractmethod
    async def list_unmapped_items(self, limit: int = 100) -> list[CatalogItem]:
        ...
