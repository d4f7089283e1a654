"""add sweep index on (sync_status, created_at)

Revision ID: 0002
Revises: 0001
Create Date: 2026-09-16 15:40:00
"""
from alembic import op

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index("ix_captured_forms_sweep", "captured_forms", ["sync_status", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_captured_forms_sweep", table_name="captured_forms")
