import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RENDER_POLLING_ENABLED", "false")
os.environ.setdefault("RENDER_JOBS_LOG_FILE", "")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database.base import Base
from database.models import LogoVideo, MusicTrack, RenderJob


BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_job(session_factory):
    """Insert a render job row and return its id."""
    counter = {"n": 0}

    def _make(
        job_id: str | None = None,
        status: str = "pending",
        payload=None,
        progress: int = 0,
    ) -> str:
        counter["n"] += 1
        job_id = job_id or f"job-{counter['n']}"
        session = session_factory()
        try:
            session.add(
                RenderJob(
                    job_id=job_id,
                    status=status,
                    payload=payload,
                    progress=progress,
                    created_at=BASE_TIME + timedelta(seconds=counter["n"]),
                )
            )
            session.commit()
        finally:
            session.close()
        return job_id

    return _make


@pytest.fixture
def load_job(session_factory):
    """Read a job back in a fresh session."""

    def _load(job_id: str) -> RenderJob | None:
        session = session_factory()
        try:
            job = session.query(RenderJob).filter(RenderJob.job_id == job_id).first()
            if job is not None:
                session.expunge(job)
            return job
        finally:
            session.close()

    return _load


@pytest.fixture
def add_music_track(session_factory):
    def _add(title: str, url: str | None = None, file_path: str | None = None) -> None:
        session = session_factory()
        try:
            session.add(MusicTrack(title=title, url=url, file_path=file_path, created_at=BASE_TIME))
            session.commit()
        finally:
            session.close()

    return _add


@pytest.fixture
def add_logo_video(session_factory):
    def _add(video_url: str, offset_seconds: int = 0) -> None:
        session = session_factory()
        try:
            session.add(
                LogoVideo(
                    video_url=video_url,
                    created_at=BASE_TIME + timedelta(seconds=offset_seconds),
                )
            )
            session.commit()
        finally:
            session.close()

    return _add


