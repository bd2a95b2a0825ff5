"""Persistence models for the Source catalog and the sync queue.

- CatalogProductModel: Product family; owns the shared pricing columns
- CatalogItemModel: Family member, identified on the Remote by its code
- EntityLinkModel: Source item id <-> Remote internal id
- SyncJobModel: Durable queue row
- EntityLockModel: Per-entity mutual-exclusion token held while PROCESSING
- SyncControlModel: Persisted switches such as "processing paused"

Timestamps are written from Python in UTC so the same models work on
PostgreSQL (asyncpg) and SQLite (aiosqlite, tests).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.pricesync.core.database import Base, utcnow

MONEY = Numeric(10, 2)


class CatalogProductModel(Base):
    """Product family. Every member item shares these prices and costs."""

    __tablename__ = "catalog_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    price_cut: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    price_roll: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    cost_cut: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    cost_roll: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    pricing_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CatalogItemModel(Base):
    """Sellable item belonging to exactly one product family."""

    __tablename__ = "catalog_items"
    __table_args__ = (Index("ix_catalog_items_product_id", "product_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("catalog_products.id"), nullable=False
    )
    code: Mapped[str | None] = mapped_column(String(100), nullable=True, unique=True)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class EntityLinkModel(Base):
    """Identifier link between a Source item and its Remote record."""

    __tablename__ = "entity_links"

    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("catalog_items.id"), primary_key=True
    )
    remote_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class SyncJobModel(Base):
    """Queue row. Status transitions are enforced by SyncQueue."""

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_claim", "status", "available_at"),
        Index("ix_sync_jobs_entity_status", "entity_id", "status"),
        Index("ix_sync_jobs_family", "family_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="NORMAL")
    trigger_source: Mapped[str] = mapped_column(String(30), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    failure_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    processing_result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class EntityLockModel(Base):
    """At most one row per entity: the job currently pushing it."""

    __tablename__ = "sync_entity_locks"

    entity_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class SyncControlModel(Base):
    """Process-wide switches shared by every API and worker process."""

    __tablename__ = "sync_control"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
