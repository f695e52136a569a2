from __future__ import annotations

import itertools
import json
import logging
import re
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable
from urllib.parse import unquote, urlparse

import requests

from utils.location_resolver import candidate_locations

logger = logging.getLogger(__name__)


VIDEO = "video"
AUDIO = "audio"

ROLE_INTRO = "intro"
ROLE_SCENE = "scene"
ROLE_MUSIC = "music"

_DEFAULT_EXTENSIONS = {VIDEO: ".mp4", AUDIO: ".mp3"}
_KNOWN_EXTENSIONS = {
    ".mp4", ".mov", ".webm", ".mkv", ".m4v",
    ".mp3", ".wav", ".m4a", ".aac", ".ogg", ".flac",
}
_CHUNK_SIZE = 1024 * 1024
_PROBE_TIMEOUT_SECONDS = 60

# Distinguishes repeated downloads of the same role within one process.
_SEQUENCE = itertools.count()


@dataclass
class MaterializedInput:
    local_path: str
    kind: str
    role: str
    has_audio: bool = False
    duration_seconds: float | None = None
    source_url: str | None = None


def _normalize_stream_type(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.lower()
    if value in ("video", "v"):
        return "v"
    if value in ("audio", "a"):
        return "a"
    return None


def _positive_seconds(value: object) -> float | None:
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


class AssetFetcher:
    """Downloads assets for one job into that job's workspace directory."""

    def __init__(
        self,
        workspace: Path | str,
        job_id: str,
        timeout_seconds: float = 60.0,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        http: requests.Session | None = None,
    ):
        self.workspace = Path(workspace)
        self.job_id = job_id
        self.timeout_seconds = timeout_seconds
        self._ffmpeg_bin = ffmpeg_bin
        self._ffprobe_bin = ffprobe_bin
        self._http = http or requests.Session()

    def local_path_for(self, url: str, kind: str, role: str) -> Path:
        suffix = Path(unquote(urlparse(url).path)).suffix.lower()
        if suffix not in _KNOWN_EXTENSIONS:
            suffix = _DEFAULT_EXTENSIONS.get(kind, ".bin")
        token = f"{time.time_ns()}_{next(_SEQUENCE)}"
        return self.workspace / f"{role}_{self.job_id}_{token}{suffix}"

    def fetch(
        self,
        url: str,
        kind: str,
        role: str,
        timeout: float | None = None,
    ) -> MaterializedInput | None:
        """Single download attempt. Returns None when the asset is absent."""
        local_path = self.local_path_for(url, kind, role)
        local_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("asset_fetch_start job_id=%s role=%s url=%s", self.job_id, role, url)
        try:
            with self._http.get(
                url, stream=True, timeout=timeout or self.timeout_seconds
            ) as response:
                if response.status_code != 200:
                    logger.info(
                        "asset_fetch_absent job_id=%s role=%s status=%s url=%s",
                        self.job_id,
                        role,
                        response.status_code,
                        url,
                    )
                    return None
                with open(local_path, "wb") as out_file:
                    for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                        if chunk:
                            out_file.write(chunk)
        except (requests.RequestException, OSError) as exc:
            logger.warning(
                "asset_fetch_error job_id=%s role=%s url=%s error=%s",
                self.job_id,
                role,
                url,
                exc,
            )
            local_path.unlink(missing_ok=True)
            return None

        if local_path.stat().st_size == 0:
            logger.warning("asset_fetch_empty job_id=%s role=%s url=%s", self.job_id, role, url)
            local_path.unlink(missing_ok=True)
            return None

        materialized = MaterializedInput(
            local_path=str(local_path),
            kind=kind,
            role=role,
            source_url=url,
        )
        if kind == VIDEO:
            stream_types, duration = self.probe(str(local_path))
            materialized.has_audio = "a" in stream_types
            materialized.duration_seconds = duration
        else:
            materialized.has_audio = True

        logger.info(
            "asset_fetch_done job_id=%s role=%s path=%s has_audio=%s duration=%s",
            self.job_id,
            role,
            local_path,
            materialized.has_audio,
            materialized.duration_seconds,
        )
        return materialized

    def fetch_first(
        self,
        reference: str | None,
        buckets: Iterable[str],
        kind: str,
        role: str,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> MaterializedInput | None:
        """Try each bucket of the fallback chain until one download succeeds."""
        for url in candidate_locations(reference, buckets, base_url=base_url):
            materialized = self.fetch(url, kind, role, timeout=timeout)
            if materialized:
                return materialized
        return None

    def probe(self, path: str) -> tuple[set[str], float | None]:
        """Return the stream types ("v"/"a") and the duration of a media file."""
        cmd = [
            self._ffprobe_bin,
            "-v",
            "error",
            "-show_entries",
            "stream=codec_type:format=duration",
            "-of",
            "json",
            path,
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=_PROBE_TIMEOUT_SECONDS,
            )
            data = json.loads(result.stdout)
            stream_types = {
                _normalize_stream_type(stream.get("codec_type"))
                for stream in data.get("streams", [])
            }
            duration = _positive_seconds(data.get("format", {}).get("duration"))
            return {s for s in stream_types if s}, duration
        except (
            FileNotFoundError,
            subprocess.CalledProcessError,
            subprocess.TimeoutExpired,
            json.JSONDecodeError,
        ):
            return self._probe_with_ffmpeg(path)

    def _probe_with_ffmpeg(self, path: str) -> tuple[set[str], float | None]:
        cmd = [self._ffmpeg_bin, "-hide_banner", "-i", path]
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=_PROBE_TIMEOUT_SECONDS
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            logger.warning("Could not probe %s: %s", path, exc)
            return set(), None

        output = result.stderr or ""
        stream_types: set[str] = set()
        if "Video:" in output:
            stream_types.add("v")
        if "Audio:" in output:
            stream_types.add("a")

        duration = None
        match = re.search(r"Duration: (\d+):(\d+):(\d+(?:\.\d+)?)", output)
        if match:
            h, m, s = match.groups()
            duration = _positive_seconds(int(h) * 3600 + int(m) * 60 + float(s))
        return stream_types, duration
