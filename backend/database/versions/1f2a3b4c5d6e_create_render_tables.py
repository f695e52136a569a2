"""create_render_tables

Revision ID: 1f2a3b4c5d6e
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "1f2a3b4c5d6e"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "render_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        # Job status
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        # Manifest document
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        # Outcome
        sa.Column("result_url", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("error_kind", sa.String(), nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index(
        op.f("ix_render_jobs_job_id"), "render_jobs", ["job_id"], unique=True
    )
    op.create_index(
        "ix_render_jobs_status_created_at",
        "render_jobs",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "music_tracks",
        sa.Column("track_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("file_path", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("track_id"),
    )
    op.create_index(
        op.f("ix_music_tracks_track_id"), "music_tracks", ["track_id"], unique=True
    )

    op.create_table(
        "logo_videos",
        sa.Column("logo_id", sa.String(), nullable=False),
        sa.Column("video_url", sa.String(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("logo_id"),
    )
    op.create_index(
        op.f("ix_logo_videos_logo_id"), "logo_videos", ["logo_id"], unique=True
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_logo_videos_logo_id"), table_name="logo_videos")
    op.drop_table("logo_videos")

    op.drop_index(op.f("ix_music_tracks_track_id"), table_name="music_tracks")
    op.drop_table("music_tracks")

    op.drop_index("ix_render_jobs_status_created_at", table_name="render_jobs")
    op.drop_index(op.f("ix_render_jobs_job_id"), table_name="render_jobs")
    op.drop_table("render_jobs")
