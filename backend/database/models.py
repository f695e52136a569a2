from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from database.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


class RenderJob(Base):
    """
    Render job tracking.

    Rows are created upstream in ``pending`` once a story script has been
    generated. The payload is filled in (possibly over several writes) by the
    generation pipeline; this service claims the row, renders the scenes it
    references and writes the result or the failure back.
    """

    __tablename__ = "render_jobs"

    job_id = Column(String, primary_key=True, index=True, nullable=False, default=_new_id)

    status = Column(
        String, nullable=False, default="pending"
    )  # pending, claimed, resolving, rendering, publishing, completed, failed
    progress = Column(Integer, nullable=False, default=0)  # 0-100

    # Manifest document: structured JSON or JSON-encoded text
    payload = Column(JSONType, nullable=True)

    # Outcome
    result_url = Column(String, nullable=True)
    error_message = Column(String(500), nullable=True)
    error_kind = Column(String, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_render_jobs_status_created_at", status, created_at),)

    def __repr__(self):
        return f"<RenderJob job_id={self.job_id} status={self.status} progress={self.progress}>"


class MusicTrack(Base):
    """Library of background tracks, looked up by title or file path."""

    __tablename__ = "music_tracks"

    track_id = Column(String, primary_key=True, index=True, nullable=False, default=_new_id)
    title = Column(String, nullable=False)
    url = Column(String, nullable=True)
    file_path = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<MusicTrack track_id={self.track_id} title={self.title}>"


class LogoVideo(Base):
    """Intro clips; the most recent one is used when a job names none."""

    __tablename__ = "logo_videos"

    logo_id = Column(String, primary_key=True, index=True, nullable=False, default=_new_id)
    video_url = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<LogoVideo logo_id={self.logo_id} video_url={self.video_url}>"
