from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session as DBSession

from database.models import (
    LogoVideo,
    MusicTrack,
    RenderJob as RenderJobModel,
)
from models.render_errors import (
    ERROR_SUMMARY_MAX_LENGTH,
    ErrorKind,
    error_kind_of,
    summarize_error,
)
from models.render_models import (
    RenderJobResponse,
    RenderJobStatus,
    is_known_status,
    is_terminal_status,
)
from utils.location_resolver import is_absent_reference

logger = logging.getLogger(__name__)


class RenderError(Exception):
    pass


class RenderJobNotFoundError(RenderError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Render job not found: {job_id}")


class InvalidTransitionError(RenderError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_render_job(db: DBSession, job_id: str) -> RenderJobModel | None:
    return db.query(RenderJobModel).filter(RenderJobModel.job_id == job_id).first()


def claim_job(db: DBSession, job_id: str) -> RenderJobModel | None:
    """Move a pending job to ``claimed``.

    The status check and the write happen in one UPDATE so that only one
    claimer can win. Returns None when the job is missing or not pending.
    """
    now = _now()
    claimed = (
        db.query(RenderJobModel)
        .filter(
            RenderJobModel.job_id == job_id,
            RenderJobModel.status == RenderJobStatus.PENDING.value,
        )
        .update(
            {
                RenderJobModel.status: RenderJobStatus.CLAIMED.value,
                RenderJobModel.progress: 10,
                RenderJobModel.claimed_at: now,
                RenderJobModel.updated_at: now,
                RenderJobModel.error_message: None,
                RenderJobModel.error_kind: None,
            },
            synchronize_session=False,
        )
    )
    db.commit()

    if not claimed:
        return None

    job = get_render_job(db, job_id)
    if job is not None:
        db.refresh(job)
    logger.info("render_job_claimed job_id=%s", job_id)
    return job


def claim_next_pending_job(db: DBSession) -> RenderJobModel | None:
    candidate = (
        db.query(RenderJobModel.job_id)
        .filter(RenderJobModel.status == RenderJobStatus.PENDING.value)
        .order_by(RenderJobModel.created_at.asc())
        .limit(1)
        .first()
    )
    if not candidate:
        return None
    return claim_job(db, candidate.job_id)


def update_job_status(
    db: DBSession,
    job_id: str,
    status: RenderJobStatus,
    progress: int | None = None,
    error_message: str | None = None,
    error_kind: ErrorKind | None = None,
    result_url: str | None = None,
) -> RenderJobModel:
    job = get_render_job(db, job_id)
    if not job:
        raise RenderJobNotFoundError(job_id)

    if is_terminal_status(job.status) or not is_known_status(job.status):
        raise InvalidTransitionError(
            f"Job {job_id} is {job.status!r}; refusing to move it to {status.value}"
        )

    job.status = status.value

    if progress is not None:
        job.progress = max(job.progress or 0, min(100, progress))

    if error_message:
        job.error_message = error_message[:ERROR_SUMMARY_MAX_LENGTH]

    if error_kind:
        job.error_kind = error_kind.value

    if result_url:
        job.result_url = result_url

    now = _now()
    job.updated_at = now
    if status.is_terminal:
        job.completed_at = now

    db.commit()
    db.refresh(job)

    return job


def update_job_progress(db: DBSession, job_id: str, progress: int) -> None:
    """Raise progress on an in-flight job; lower values are ignored."""
    job = get_render_job(db, job_id)
    if not job or is_terminal_status(job.status) or not is_known_status(job.status):
        return
    if progress <= (job.progress or 0):
        return
    job.progress = min(100, progress)
    job.updated_at = _now()
    db.commit()


def mark_job_completed(db: DBSession, job_id: str, result_url: str) -> RenderJobModel:
    job = update_job_status(
        db,
        job_id,
        RenderJobStatus.COMPLETED,
        progress=100,
        result_url=result_url,
    )
    logger.info("render_job_completed job_id=%s result_url=%s", job_id, result_url)
    return job


def mark_job_failed(
    db: DBSession, job_id: str, error: BaseException
) -> RenderJobModel | None:
    summary = summarize_error(error)
    kind = error_kind_of(error)
    try:
        job = update_job_status(
            db,
            job_id,
            RenderJobStatus.FAILED,
            error_message=summary,
            error_kind=kind,
        )
    except InvalidTransitionError:
        logger.warning("render_job_fail_skipped job_id=%s reason=not_in_flight", job_id)
        return None
    logger.error("render_job_failed job_id=%s kind=%s error=%s", job_id, kind.value, summary)
    return job


def find_music_track(db: DBSession, reference: str | None) -> str | None:
    """Look a background track up by name.

    Matches the last path segment of the reference against the track title
    or file path. Returns the track's URL (or file path), or None.
    """
    if is_absent_reference(reference):
        return None

    name = reference.rstrip("/").split("/")[-1].strip()
    if not name:
        return None

    pattern = f"%{name.lower()}%"
    track = (
        db.query(MusicTrack)
        .filter(
            (func.lower(MusicTrack.title).like(pattern))
            | (func.lower(MusicTrack.file_path).like(pattern))
        )
        .order_by(MusicTrack.created_at.desc())
        .first()
    )
    if not track:
        return None
    return track.url or track.file_path


def latest_logo_video(db: DBSession) -> str | None:
    logo = db.query(LogoVideo).order_by(LogoVideo.created_at.desc()).first()
    return logo.video_url if logo else None


def _response_status(value: str) -> RenderJobStatus | str:
    if is_known_status(value):
        return RenderJobStatus(value)
    return value


def render_job_to_response(job: RenderJobModel) -> RenderJobResponse:
    return RenderJobResponse(
        job_id=job.job_id,
        status=_response_status(job.status),
        progress=job.progress or 0,
        result_url=job.result_url,
        error_message=job.error_message,
        error_kind=job.error_kind,
        created_at=job.created_at,
        claimed_at=job.claimed_at,
        completed_at=job.completed_at,
    )
