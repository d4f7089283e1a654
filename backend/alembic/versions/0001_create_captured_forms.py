"""create captured_forms

Revision ID: 0001
Revises:
Create Date: 2026-09-02 09:14:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "captured_forms",
        sa.Column("local_id", sa.String(200), primary_key=True),
        sa.Column("server_id", sa.String(100), nullable=True),
        sa.Column("form_type", sa.String(50), nullable=False),
        sa.Column("project_id", sa.String(100), nullable=False),
        sa.Column("organization_id", sa.String(100), nullable=True),
        sa.Column("inspector_name", sa.String(200), nullable=False),
        sa.Column("inspection_date", sa.Date(), nullable=False),
        sa.Column("inspection_status", sa.String(20), nullable=False),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("form_fields", sa.JSON(), nullable=False),
        sa.Column("evidence_files", sa.JSON(), nullable=False),
        sa.Column("sync_status", sa.String(20), nullable=False),
        sa.Column("sync_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failure_kind", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_captured_forms_form_type", "captured_forms", ["form_type"])
    op.create_index("ix_captured_forms_project_id", "captured_forms", ["project_id"])
    op.create_index("ix_captured_forms_sync_status", "captured_forms", ["sync_status"])
    op.create_index("ix_captured_forms_created_at", "captured_forms", ["created_at"])


def downgrade() -> None:
    op.drop_table("captured_forms")
