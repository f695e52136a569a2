from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _env_list(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class OutputGeometry:
    width: int = 1280
    height: int = 720
    framerate: float = 30.0
    pixel_format: str = "yuv420p"


@dataclass
class RenderConfig:
    storage_base_url: str = "https://storage.googleapis.com"
    scene_buckets: list[str] = field(default_factory=lambda: ["generated-content"])
    intro_buckets: list[str] = field(
        default_factory=lambda: ["generated-content", "music-tracks", "public"]
    )
    music_buckets: list[str] = field(
        default_factory=lambda: ["music-tracks", "generated-content"]
    )
    render_bucket: str = "generated-content"
    output_prefix: str = "public/renders"
    temp_dir: str = field(default_factory=tempfile.gettempdir)

    poll_interval_seconds: float = 5.0
    readiness_interval_seconds: float = 5.0
    readiness_max_attempts: int = 24
    job_timeout_seconds: float = 3600.0
    max_concurrent_jobs: int = 2
    fetch_timeout_seconds: float = 60.0

    geometry: OutputGeometry = field(default_factory=OutputGeometry)
    default_duration_seconds: float = 20.0

    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"

    @classmethod
    def from_env(cls) -> RenderConfig:
        return cls(
            storage_base_url=os.getenv(
                "STORAGE_PUBLIC_BASE_URL", "https://storage.googleapis.com"
            ),
            scene_buckets=_env_list("GCS_SCENE_BUCKETS", "generated-content"),
            intro_buckets=_env_list(
                "GCS_INTRO_BUCKETS", "generated-content,music-tracks,public"
            ),
            music_buckets=_env_list("GCS_MUSIC_BUCKETS", "music-tracks,generated-content"),
            render_bucket=os.getenv("GCS_RENDER_BUCKET", "generated-content"),
            output_prefix=os.getenv("RENDER_OUTPUT_PREFIX", "public/renders"),
            temp_dir=os.getenv("RENDER_TEMP_DIR") or tempfile.gettempdir(),
            poll_interval_seconds=_env_float("RENDER_POLL_INTERVAL_SECONDS", 5.0, 0.1),
            readiness_interval_seconds=_env_float(
                "RENDER_READINESS_INTERVAL_SECONDS", 5.0
            ),
            readiness_max_attempts=_env_int("RENDER_READINESS_MAX_ATTEMPTS", 24, 1),
            job_timeout_seconds=_env_float("RENDER_JOB_TIMEOUT_SECONDS", 3600.0, 1.0),
            max_concurrent_jobs=_env_int("RENDER_MAX_CONCURRENT_JOBS", 2, 1),
            fetch_timeout_seconds=_env_float("RENDER_FETCH_TIMEOUT_SECONDS", 60.0, 1.0),
            geometry=OutputGeometry(
                width=_env_int("RENDER_WIDTH", 1280, 2),
                height=_env_int("RENDER_HEIGHT", 720, 2),
                framerate=_env_float("RENDER_FPS", 30.0, 1.0),
                pixel_format=os.getenv("RENDER_PIXEL_FORMAT", "yuv420p"),
            ),
            default_duration_seconds=_env_float(
                "RENDER_DEFAULT_DURATION_SECONDS", 20.0, 1.0
            ),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=os.getenv("FFPROBE_BIN", "ffprobe"),
        )


def polling_enabled() -> bool:
    return _env_bool("RENDER_POLLING_ENABLED", True)
