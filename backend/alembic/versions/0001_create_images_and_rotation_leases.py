"""Create images and rotation lease tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


variant_status = postgresql.ENUM(
    "pending",
    "processing",
    "completed",
    "failed",
    name="variantstatus",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    variant_status.create(bind, checkfirst=True)

    op.create_table(
        "images",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=512), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=True),
        sa.Column("mime_type", sa.String(length=120), nullable=False, server_default="image/jpeg"),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("variant_status", variant_status, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("key", name=op.f("uq_images_key")),
    )
    op.create_index(op.f("ix_images_variant_status"), "images", ["variant_status"], unique=False)

    op.create_table(
        "rotation_leases",
        sa.Column("asset_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("holder", sa.String(length=64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(op.f("ix_rotation_leases_expires_at"), "rotation_leases", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_rotation_leases_expires_at"), table_name="rotation_leases")
    op.drop_table("rotation_leases")
    op.drop_index(op.f("ix_images_variant_status"), table_name="images")
    op.drop_table("images")
    variant_status.drop(op.get_bind(), checkfirst=True)
