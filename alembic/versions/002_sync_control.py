"""Add the sync_control table.

Revision ID: 002_sync_control
Revises: 001_sync_core
Create Date: 2026-10-19

Holds switches shared across processes, starting with the
"processing paused" flag that every queue worker checks before claiming.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "002_sync_control"
down_revision: Union[str, None] = "001_sync_core"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sync_control",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("value", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("sync_control")
