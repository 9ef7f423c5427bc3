"""init: capture records

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "capture_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("image_ref", sa.String(length=800), nullable=False),
        sa.Column("source", sa.String(length=30), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.String(length=30), nullable=True),
        sa.Column("used_fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_capture_records_status", "capture_records", ["status"])
    op.create_index("ix_capture_records_captured_at", "capture_records", ["captured_at"])


def downgrade() -> None:
    op.drop_index("ix_capture_records_captured_at", table_name="capture_records")
    op.drop_index("ix_capture_records_status", table_name="capture_records")
    op.drop_table("capture_records")
