from __future__ import annotations

import dataclasses
import logging
import shutil
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from sqlalchemy.orm import Session as DBSession

from database.base import SessionLocal
from models.render_errors import (
    AssetUnavailableError,
    EncodingFailureError,
    PublishFailureError,
    RenderCancelledError,
    RenderJobError,
)
from models.render_models import STATUS_PROGRESS, Manifest, RenderJobStatus
from operators.readiness_gate import await_readiness
from operators.render_operator import (
    claim_job,
    claim_next_pending_job,
    find_music_track,
    latest_logo_video,
    mark_job_completed,
    mark_job_failed,
    update_job_progress,
    update_job_status,
)
from utils.asset_fetcher import (
    AUDIO,
    ROLE_INTRO,
    ROLE_MUSIC,
    ROLE_SCENE,
    VIDEO,
    AssetFetcher,
    MaterializedInput,
)
from utils.ffmpeg_builder import compile_filter_graph
from utils.ffmpeg_runner import run_ffmpeg
from utils.gcs_utils import get_public_url, upload_file
from utils.render_config import OutputGeometry, RenderConfig

logger = logging.getLogger(__name__)


RENDER_CONTENT_TYPE = "video/mp4"


def publish_render(output_path: Path, bucket_name: str, blob_name: str) -> str:
    """Upload a finished render and return its public URL."""
    contents = Path(output_path).read_bytes()
    receipt = upload_file(bucket_name, contents, blob_name, content_type=RENDER_CONTENT_TYPE)
    if not receipt:
        raise PublishFailureError(f"Upload to {bucket_name}/{blob_name} failed")
    return get_public_url(bucket_name, receipt.get("path") or blob_name)


class RenderOrchestrator:
    """Claims pending render jobs and drives each one to a terminal status.

    Jobs run on a bounded thread pool. The job store claim is atomic, so
    several orchestrator processes can poll the same table; within one
    process a job id is never run twice at the same time.
    """

    def __init__(
        self,
        session_factory: Callable[[], DBSession] = SessionLocal,
        config: RenderConfig | None = None,
        fetcher_factory: Callable[[Path, str], AssetFetcher] | None = None,
        runner: Callable[..., object] = run_ffmpeg,
        publisher: Callable[[Path, str, str], str] = publish_render,
    ):
        self.config = config or RenderConfig.from_env()
        self._session_factory = session_factory
        self._fetcher_factory = fetcher_factory or self._default_fetcher
        self._runner = runner
        self._publisher = publisher

        self._active_jobs: set[str] = set()
        self._active_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._slots = threading.BoundedSemaphore(self.config.max_concurrent_jobs)
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrent_jobs,
            thread_name_prefix="render-job",
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def active_job_ids(self) -> set[str]:
        with self._active_lock:
            return set(self._active_jobs)

    def poll_once(self) -> Future | None:
        """Claim at most one pending job and start it in the background."""
        if self._stop_event.is_set():
            return None
        if not self._slots.acquire(blocking=False):
            logger.debug("render_poll_skipped reason=no_free_slot")
            return None

        try:
            with self._session() as db:
                job = claim_next_pending_job(db)
                job_id = job.job_id if job else None
        except Exception:
            self._slots.release()
            raise

        if job_id is None:
            self._slots.release()
            return None

        logger.info("render_poll_claimed job_id=%s", job_id)
        try:
            return self._executor.submit(self._run_in_slot, job_id)
        except RuntimeError:
            # Executor already shut down; run inline so the claimed job still terminates.
            self._run_in_slot(job_id)
            return None

    def run_forever(self) -> None:
        logger.info(
            "render_poller_start interval=%s max_concurrent_jobs=%s",
            self.config.poll_interval_seconds,
            self.config.max_concurrent_jobs,
        )
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("render_poll_error")
            self._stop_event.wait(self.config.poll_interval_seconds)
        logger.info("render_poller_stop")

    def start_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.run_forever, name="render-poller", daemon=True)
        thread.start()
        return thread

    def shutdown(self, wait: bool = True) -> None:
        self._stop_event.set()
        self._executor.shutdown(wait=wait)

    def run_job(self, job_id: str) -> bool:
        """Claim ``job_id`` and process it in the calling thread.

        Returns False when the job is unknown, not pending, or already
        running in this process.
        """
        if not self._reserve(job_id):
            logger.info("render_job_skipped job_id=%s reason=already_active", job_id)
            return False
        try:
            with self._session() as db:
                claimed = claim_job(db, job_id) is not None
            if not claimed:
                logger.info("render_job_skipped job_id=%s reason=not_pending", job_id)
                return False
            self._process(job_id)
            return True
        finally:
            self._release(job_id)

    def _run_in_slot(self, job_id: str) -> None:
        try:
            if not self._reserve(job_id):
                logger.warning("render_job_skipped job_id=%s reason=already_active", job_id)
                return
            try:
                self._process(job_id)
            finally:
                self._release(job_id)
        finally:
            self._slots.release()

    def _reserve(self, job_id: str) -> bool:
        with self._active_lock:
            if job_id in self._active_jobs:
                return False
            self._active_jobs.add(job_id)
            return True

    def _release(self, job_id: str) -> None:
        with self._active_lock:
            self._active_jobs.discard(job_id)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def _process(self, job_id: str) -> None:
        deadline = time.monotonic() + self.config.job_timeout_seconds
        Path(self.config.temp_dir).mkdir(parents=True, exist_ok=True)
        workspace = Path(tempfile.mkdtemp(prefix=f"render_{job_id}_", dir=self.config.temp_dir))
        logger.info("render_job_start job_id=%s workspace=%s", job_id, workspace)

        try:
            self._set_status(job_id, RenderJobStatus.RESOLVING)
            manifest = await_readiness(
                job_id,
                self._session_factory,
                poll_interval_seconds=self.config.readiness_interval_seconds,
                max_attempts=self.config.readiness_max_attempts,
                stop_event=self._stop_event,
                deadline=deadline,
                default_duration=self.config.default_duration_seconds,
            )
            inputs = self._materialize_inputs(job_id, manifest, workspace, deadline)

            self._set_status(job_id, RenderJobStatus.RENDERING)
            output_path = self._render(job_id, manifest, inputs, workspace, deadline)

            self._set_status(job_id, RenderJobStatus.PUBLISHING)
            blob_name = f"{self.config.output_prefix.strip('/')}/final_{job_id}.mp4"
            result_url = self._publisher(output_path, self.config.render_bucket, blob_name)

            with self._session() as db:
                mark_job_completed(db, job_id, result_url)
        except RenderJobError as exc:
            logger.error("render_job_error job_id=%s kind=%s error=%s", job_id, exc.kind.value, exc)
            self._record_failure(job_id, exc)
        except Exception as exc:
            logger.exception("render_job_unexpected_error job_id=%s", job_id)
            self._record_failure(job_id, exc)
        finally:
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info("render_job_cleanup job_id=%s workspace=%s", job_id, workspace)

    def _materialize_inputs(
        self,
        job_id: str,
        manifest: Manifest,
        workspace: Path,
        deadline: float,
    ) -> list[MaterializedInput]:
        fetcher = self._fetcher_factory(workspace, job_id)
        base_url = self.config.storage_base_url

        with self._session() as db:
            intro_reference = manifest.intro_clip or latest_logo_video(db)
            music_reference = None
            if manifest.music_track:
                music_reference = find_music_track(db, manifest.music_track) or manifest.music_track

        inputs: list[MaterializedInput] = []

        if intro_reference:
            intro = fetcher.fetch_first(
                intro_reference,
                self.config.intro_buckets,
                VIDEO,
                ROLE_INTRO,
                base_url=base_url,
                timeout=self._fetch_timeout(job_id, deadline),
            )
            if intro:
                inputs.append(intro)
            else:
                logger.warning(
                    "render_optional_asset_missing job_id=%s role=%s reference=%s",
                    job_id,
                    ROLE_INTRO,
                    intro_reference,
                )

        for index, scene in enumerate(manifest.scenes):
            materialized = fetcher.fetch_first(
                scene.media_reference,
                self.config.scene_buckets,
                VIDEO,
                ROLE_SCENE,
                base_url=base_url,
                timeout=self._fetch_timeout(job_id, deadline),
            )
            if materialized is None:
                raise AssetUnavailableError(f"scene {index}", scene.media_reference)
            if materialized.duration_seconds is None:
                materialized.duration_seconds = scene.duration_seconds
            inputs.append(materialized)

        if music_reference:
            music = fetcher.fetch_first(
                music_reference,
                self.config.music_buckets,
                AUDIO,
                ROLE_MUSIC,
                base_url=base_url,
                timeout=self._fetch_timeout(job_id, deadline),
            )
            if music:
                inputs.append(music)
            else:
                logger.warning(
                    "render_optional_asset_missing job_id=%s role=%s reference=%s",
                    job_id,
                    ROLE_MUSIC,
                    music_reference,
                )

        return inputs

    def _render(
        self,
        job_id: str,
        manifest: Manifest,
        inputs: list[MaterializedInput],
        workspace: Path,
        deadline: float,
    ) -> Path:
        geometry = self._geometry_for(manifest)
        program = compile_filter_graph(inputs, manifest.target_duration_seconds, geometry)

        output_path = workspace / f"final_{job_id}.mp4"
        cmd = program.to_command(self.config.ffmpeg_bin, str(output_path))
        logger.info("render_ffmpeg_command job_id=%s cmd=%s", job_id, " ".join(cmd))

        remaining = self._remaining(job_id, deadline)
        self._runner(
            cmd,
            timeout_seconds=remaining,
            progress_callback=lambda pct: self._report_progress(job_id, pct),
            expected_duration_seconds=self._expected_duration(manifest, inputs),
            stop_event=self._stop_event,
        )

        if not output_path.exists() or output_path.stat().st_size == 0:
            raise EncodingFailureError(0, f"FFmpeg produced no output at {output_path}")
        return output_path

    def _geometry_for(self, manifest: Manifest) -> OutputGeometry:
        geometry = self.config.geometry
        if manifest.width and manifest.height:
            geometry = dataclasses.replace(geometry, width=manifest.width, height=manifest.height)
        return geometry

    def _expected_duration(self, manifest: Manifest, inputs: list[MaterializedInput]) -> float:
        clip_total = sum(
            item.duration_seconds or 0.0 for item in inputs if item.role != ROLE_MUSIC
        )
        return clip_total or manifest.target_duration_seconds

    def _remaining(self, job_id: str, deadline: float) -> float:
        if self._stop_event.is_set():
            raise RenderCancelledError(f"Stopped while processing job {job_id}")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RenderCancelledError(
                f"Job {job_id} exceeded {self.config.job_timeout_seconds:.0f}s"
            )
        return remaining

    def _fetch_timeout(self, job_id: str, deadline: float) -> float:
        return min(self.config.fetch_timeout_seconds, self._remaining(job_id, deadline))

    # ------------------------------------------------------------------
    # Job store writes
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[DBSession]:
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    def _set_status(self, job_id: str, status: RenderJobStatus) -> None:
        with self._session() as db:
            update_job_status(db, job_id, status, progress=STATUS_PROGRESS[status])
        logger.info("render_job_status job_id=%s status=%s", job_id, status.value)

    def _report_progress(self, job_id: str, progress: int) -> None:
        with self._session() as db:
            update_job_progress(db, job_id, progress)

    def _record_failure(self, job_id: str, exc: BaseException) -> None:
        try:
            with self._session() as db:
                mark_job_failed(db, job_id, exc)
        except Exception:
            logger.exception("render_job_fail_write_error job_id=%s", job_id)

    def _default_fetcher(self, workspace: Path, job_id: str) -> AssetFetcher:
        return AssetFetcher(
            workspace,
            job_id,
            timeout_seconds=self.config.fetch_timeout_seconds,
            ffmpeg_bin=self.config.ffmpeg_bin,
            ffprobe_bin=self.config.ffprobe_bin,
        )


_orchestrator: RenderOrchestrator | None = None
_orchestrator_lock = threading.Lock()


def get_orchestrator() -> RenderOrchestrator:
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None:
            _orchestrator = RenderOrchestrator()
        return _orchestrator


def process_render_job(job_id: str) -> bool:
    """rq entry point for a triggered render."""
    logger.info("render_job_dequeued job_id=%s", job_id)
    return get_orchestrator().run_job(job_id)
