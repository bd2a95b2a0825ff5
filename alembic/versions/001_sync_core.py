"""Create catalog, entity link and sync queue tables.

Revision ID: 001_sync_core
Revises:
Create Date: 2026-10-19

Creates:
- catalog_products: product families with shared pricing columns
- catalog_items: family members, matched to Remote records by code
- entity_links: Source item id <-> Remote internal id
- sync_jobs: durable sync queue
- sync_entity_locks: per-entity exclusion while a job is PROCESSING

In existing catalog databases the two catalog tables are usually present
already; pass -x skip_catalog=true to create only the sync tables.
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_sync_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(10, 2)


def _skip_catalog() -> bool:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    return cmd_kwargs.get("skip_catalog", "false").lower() == "true"


def upgrade() -> None:
    # ── catalog tables ──────────────────────────────────────────────────

    if not _skip_catalog():
        op.create_table(
            "catalog_products",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(300), nullable=False),
            sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("price_cut", MONEY, nullable=True),
            sa.Column("price_roll", MONEY, nullable=True),
            sa.Column("cost_cut", MONEY, nullable=True),
            sa.Column("cost_roll", MONEY, nullable=True),
            sa.Column("pricing_updated_at", sa.DateTime(timezone=True), nullable=True),
        )

        op.create_table(
            "catalog_items",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("product_id", sa.Integer(), sa.ForeignKey("catalog_products.id"), nullable=False),
            sa.Column("code", sa.String(100), nullable=True, unique=True),
            sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        )
        op.create_index("ix_catalog_items_product_id", "catalog_items", ["product_id"])

    # ── entity_links table ──────────────────────────────────────────────

    op.create_table(
        "entity_links",
        sa.Column("entity_id", sa.Integer(), sa.ForeignKey("catalog_items.id"), primary_key=True),
        sa.Column("remote_id", sa.String(100), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # ── sync_jobs table ─────────────────────────────────────────────────

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("family_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("priority", sa.String(10), nullable=False, server_default="NORMAL"),
        sa.Column("trigger_source", sa.String(30), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("failure_kind", sa.String(20), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("processing_result", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_jobs_claim", "sync_jobs", ["status", "available_at"])
    op.create_index("ix_sync_jobs_entity_status", "sync_jobs", ["entity_id", "status"])
    op.create_index("ix_sync_jobs_family", "sync_jobs", ["family_id"])

    # ── sync_entity_locks table ─────────────────────────────────────────

    op.create_table(
        "sync_entity_locks",
        sa.Column("entity_id", sa.Integer(), primary_key=True),
        sa.Column("job_id", sa.Integer(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_sync_entity_locks_job_id", "sync_entity_locks", ["job_id"])


def downgrade() -> None:
    op.drop_table("sync_entity_locks")
    op.drop_table("sync_jobs")
    op.drop_table("entity_links")
    if not _skip_catalog():
        op.drop_table("catalog_items")
        op.drop_table("catalog_products")
