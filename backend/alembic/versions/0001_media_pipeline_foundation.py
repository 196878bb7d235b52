"""media pipeline foundation

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None

MEDIA_TYPES = ("image", "video", "document")
MEDIA_STATUSES = ("pending", "uploaded", "processing", "ready", "failed")
JOB_STATUSES = ("queued", "processing", "completed", "failed")


def _enum(values: tuple[str, ...], name: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=20)


def upgrade() -> None:
    op.create_table(
        "media_descriptors",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
        sa.Column("media_id", sa.String(length=24), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("media_type", _enum(MEDIA_TYPES, "media_type"), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("original_blob_name", sa.String(length=255), nullable=False),
        sa.Column("upload_id", sa.String(length=64), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("status", _enum(MEDIA_STATUSES, "media_status"), nullable=False, server_default="pending"),
        sa.Column("processing_error", sa.String(length=120), nullable=True),
        sa.Column("variants_json", sa.Text(), nullable=True),
        sa.Column("aspect_ratio", sa.Float(), nullable=True),
        sa.Column("dominant_color", sa.String(length=6), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("post_id", sa.String(length=64), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("original_blob_name", name="uq_media_descriptors_original_blob_name"),
        sa.CheckConstraint(
            "aspect_ratio IS NULL OR aspect_ratio > 0", name="ck_media_descriptors_aspect_ratio_positive"
        ),
    )
    op.create_index("ix_media_descriptors_media_id", "media_descriptors", ["media_id"])
    op.create_index("ix_media_descriptors_owner_id", "media_descriptors", ["owner_id"])
    op.create_index("ix_media_descriptors_status", "media_descriptors", ["status"])
    op.create_index("ix_media_descriptors_post_id", "media_descriptors", ["post_id"])
    op.create_index("ix_media_descriptors_post_order", "media_descriptors", ["post_id", "display_order"])

    op.create_table(
        "media_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("queue", sa.String(length=40), nullable=False),
        sa.Column("name", sa.String(length=80), nullable=False),
        sa.Column(
            "descriptor_id",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            sa.ForeignKey("media_descriptors.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("media_id", sa.String(length=24), nullable=False),
        sa.Column("blob_name", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("status", _enum(JOB_STATUSES, "media_job_status"), nullable=False, server_default="queued"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("available_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(length=120), nullable=True),
        sa.Column("error_code", sa.String(length=120), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_media_jobs_claim", "media_jobs", ["queue", "status", "available_at"])
    op.create_index("ix_media_jobs_descriptor_id", "media_jobs", ["descriptor_id"])
    op.create_index("ix_media_jobs_lease_expires_at", "media_jobs", ["lease_expires_at"])
    op.create_index("ix_media_jobs_completed_at", "media_jobs", ["completed_at"])


def downgrade() -> None:
    op.drop_index("ix_media_jobs_completed_at", table_name="media_jobs")
    op.drop_index("ix_media_jobs_lease_expires_at", table_name="media_jobs")
    op.drop_index("ix_media_jobs_descriptor_id", table_name="media_jobs")
    op.drop_index("ix_media_jobs_claim", table_name="media_jobs")
    op.drop_table("media_jobs")
    op.drop_index("ix_media_descriptors_post_order", table_name="media_descriptors")
    op.drop_index("ix_media_descriptors_post_id", table_name="media_descriptors")
    op.drop_index("ix_media_descriptors_status", table_name="media_descriptors")
    op.drop_index("ix_media_descriptors_owner_id", table_name="media_descriptors")
    op.drop_index("ix_media_descriptors_media_id", table_name="media_descriptors")
    op.drop_table("media_descriptors")
