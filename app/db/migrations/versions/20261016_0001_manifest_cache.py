"""Manifest cache schema

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "manifestcache",
        sa.Column("cache_key", sa.String(), primary_key=True, nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("media_key", sa.String(), nullable=False),
        sa.Column("media_type", sa.String(), nullable=False),
        sa.Column("catalog_id", sa.String(), nullable=False),
        sa.Column("season", sa.Integer(), nullable=True),
        sa.Column("episode", sa.Integer(), nullable=True),
        sa.Column("manifest_url", sa.String(), nullable=False),
        sa.Column("source_page_url", sa.String(), nullable=True),
        sa.Column("subtitles", sa.JSON(), nullable=True),
        sa.Column("captured_at", sa.Float(), nullable=False),
        sa.Column("expires_at", sa.Float(), nullable=False),
    )
    op.create_index(
        "ix_manifestcache_provider", "manifestcache", ["provider"], unique=False
    )
    op.create_index(
        "ix_manifestcache_media_key", "manifestcache", ["media_key"], unique=False
    )
    op.create_index(
        "ix_manifestcache_expires_at", "manifestcache", ["expires_at"], unique=False
    )

    op.create_table(
        "providermiss",
        sa.Column("cache_key", sa.String(), primary_key=True, nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("media_key", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("attempted_at", sa.Float(), nullable=False),
        sa.Column("retry_after", sa.Float(), nullable=False),
    )
    op.create_index(
        "ix_providermiss_provider", "providermiss", ["provider"], unique=False
    )
    op.create_index(
        "ix_providermiss_media_key", "providermiss", ["media_key"], unique=False
    )
    op.create_index(
        "ix_providermiss_retry_after", "providermiss", ["retry_after"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_providermiss_retry_after", table_name="providermiss")
    op.drop_index("ix_providermiss_media_key", table_name="providermiss")
    op.drop_index("ix_providermiss_provider", table_name="providermiss")
    op.drop_table("providermiss")
    op.drop_index("ix_manifestcache_expires_at", table_name="manifestcache")
    op.drop_index("ix_manifestcache_media_key", table_name="manifestcache")
    op.drop_index("ix_manifestcache_provider", table_name="manifestcache")
    op.drop_table("manifestcache")
