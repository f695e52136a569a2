from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from sqlalchemy.orm import Session as DBSession

from models.render_errors import (
    ManifestInvalidError,
    ReadinessTimeoutError,
    RenderCancelledError,
)
from models.render_models import DEFAULT_TARGET_DURATION_SECONDS, Manifest
from operators.render_operator import get_render_job

logger = logging.getLogger(__name__)


def read_manifest(
    db: DBSession,
    job_id: str,
    default_duration: float = DEFAULT_TARGET_DURATION_SECONDS,
) -> Manifest | None:
    job = get_render_job(db, job_id)
    if job is None:
        raise ManifestInvalidError(f"Render job {job_id} no longer exists")
    return Manifest.from_payload(job.payload, default_duration=default_duration)


def await_readiness(
    job_id: str,
    session_factory: Callable[[], DBSession],
    poll_interval_seconds: float,
    max_attempts: int,
    stop_event: threading.Event | None = None,
    deadline: float | None = None,
    default_duration: float = DEFAULT_TARGET_DURATION_SECONDS,
) -> Manifest:
    """Wait until upstream generation has filled in every scene.

    ``deadline`` is a ``time.monotonic()`` value. Each attempt re-reads the
    job in a fresh session. Raises ReadinessTimeoutError after
    ``max_attempts`` polls that never saw a ready manifest.
    """
    stop_event = stop_event or threading.Event()
    attempts = max(1, max_attempts)

    for attempt in range(1, attempts + 1):
        if stop_event.is_set():
            raise RenderCancelledError(f"Stopped while waiting for job {job_id} inputs")
        if deadline is not None and time.monotonic() >= deadline:
            raise RenderCancelledError(f"Job {job_id} ran past its deadline waiting for inputs")

        db = session_factory()
        try:
            manifest = read_manifest(db, job_id, default_duration=default_duration)
        finally:
            db.close()

        if manifest is not None and manifest.is_render_ready:
            logger.info(
                "render_inputs_ready job_id=%s attempt=%s scenes=%s",
                job_id,
                attempt,
                len(manifest.scenes),
            )
            return manifest

        pending_scenes = 0
        if manifest is not None:
            pending_scenes = sum(1 for scene in manifest.scenes if not scene.is_resolved)
        logger.info(
            "render_inputs_not_ready job_id=%s attempt=%s/%s has_payload=%s pending_scenes=%s",
            job_id,
            attempt,
            attempts,
            manifest is not None,
            pending_scenes,
        )

        if attempt == attempts:
            break

        wait_seconds = poll_interval_seconds
        if deadline is not None:
            wait_seconds = min(wait_seconds, max(0.0, deadline - time.monotonic()))
        if stop_event.wait(wait_seconds):
            raise RenderCancelledError(f"Stopped while waiting for job {job_id} inputs")

    raise ReadinessTimeoutError(job_id, attempts)
