"""
Pydantic models for render job orchestration.

This module defines:
- Job status values written back to the job store
- The render manifest parsed from a job's payload
- Request/response schemas for the render trigger API
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from models.render_errors import ManifestInvalidError
from utils.location_resolver import is_absent_reference


DEFAULT_TARGET_DURATION_SECONDS = 20.0


# =============================================================================
# ENUMS
# =============================================================================


class RenderJobStatus(str, Enum):
    """Status of a render job in the job store."""

    PENDING = "pending"  # Created upstream, waiting to be claimed
    CLAIMED = "claimed"  # Owned by one orchestrator instance
    RESOLVING = "resolving"  # Waiting for inputs and downloading them
    RENDERING = "rendering"  # FFmpeg running
    PUBLISHING = "publishing"  # Uploading the output
    COMPLETED = "completed"  # Terminal success
    FAILED = "failed"  # Terminal failure

    @property
    def is_terminal(self) -> bool:
        return self in (RenderJobStatus.COMPLETED, RenderJobStatus.FAILED)


_KNOWN_STATUSES = frozenset(status.value for status in RenderJobStatus)


def is_known_status(value: str | None) -> bool:
    return value in _KNOWN_STATUSES


def is_terminal_status(value: str | None) -> bool:
    return value in (RenderJobStatus.COMPLETED.value, RenderJobStatus.FAILED.value)


STATUS_PROGRESS = {
    RenderJobStatus.PENDING: 0,
    RenderJobStatus.CLAIMED: 10,
    RenderJobStatus.RESOLVING: 20,
    RenderJobStatus.RENDERING: 50,
    RenderJobStatus.PUBLISHING: 90,
    RenderJobStatus.COMPLETED: 100,
}


# =============================================================================
# MANIFEST
# =============================================================================


_SCENE_REFERENCE_KEYS = ("video_url", "media_url", "media_reference", "url", "video")
_SCENE_DURATION_KEYS = ("duration_seconds", "duration")
_INTRO_KEYS = ("intro_clip", "logo_video", "logo_video_url", "logo")
_MUSIC_KEYS = ("music_track", "background_music", "music")
_DURATION_KEYS = ("target_duration_seconds", "total_duration", "duration")


def _first_present(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _reference_from(value: Any) -> str | None:
    """Accept a bare reference or an object carrying one under url/file_path."""
    if isinstance(value, dict):
        value = _first_present(value, ("url", "video_url", "file_path", "name", "title"))
    if not isinstance(value, str):
        return None
    reference = value.strip()
    if is_absent_reference(reference):
        return None
    return reference


def _positive_float(value: Any) -> float | None:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric != numeric or numeric <= 0:
        return None
    return numeric


def _positive_int(value: Any) -> int | None:
    numeric = _positive_float(value)
    return int(numeric) if numeric else None


class SceneClip(BaseModel):
    """One generated scene fragment."""

    media_reference: str | None = Field(
        default=None, description="Resolved media location (None until generated)"
    )
    duration_seconds: float | None = Field(
        default=None, description="Declared scene length, used when probing fails"
    )

    @property
    def is_resolved(self) -> bool:
        return bool(self.media_reference)

    @classmethod
    def from_payload(cls, value: Any) -> SceneClip:
        if isinstance(value, str):
            return cls(media_reference=_reference_from(value))
        if not isinstance(value, dict):
            raise ManifestInvalidError(f"Scene entry must be an object, got {type(value).__name__}")
        return cls(
            media_reference=_reference_from(_first_present(value, _SCENE_REFERENCE_KEYS)),
            duration_seconds=_positive_float(_first_present(value, _SCENE_DURATION_KEYS)),
        )


class Manifest(BaseModel):
    """Media fragments and parameters for one render job."""

    intro_clip: str | None = None
    scenes: list[SceneClip] = Field(default_factory=list)
    music_track: str | None = None
    target_duration_seconds: float = Field(
        default=DEFAULT_TARGET_DURATION_SECONDS, gt=0
    )
    width: int | None = None
    height: int | None = None

    @property
    def is_render_ready(self) -> bool:
        return bool(self.scenes) and all(scene.is_resolved for scene in self.scenes)

    @classmethod
    def decode_payload(cls, payload: Any) -> dict[str, Any] | None:
        """Decode a job payload stored either as JSON text or as structured data.

        Returns None when no payload has been written yet.
        """
        decoded = payload
        # Upstream producers sometimes store the JSON document as a JSON string.
        for _ in range(2):
            if isinstance(decoded, (bytes, bytearray)):
                try:
                    decoded = decoded.decode("utf-8")
                except UnicodeDecodeError as exc:
                    raise ManifestInvalidError(f"Job payload is not valid UTF-8: {exc}") from exc
            if not isinstance(decoded, str):
                break
            if not decoded.strip():
                return None
            try:
                decoded = json.loads(decoded)
            except json.JSONDecodeError as exc:
                raise ManifestInvalidError(f"Job payload is not valid JSON: {exc}") from exc

        if decoded is None:
            return None
        if not isinstance(decoded, dict):
            raise ManifestInvalidError(
                f"Job payload must be an object, got {type(decoded).__name__}"
            )
        return decoded

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        default_duration: float = DEFAULT_TARGET_DURATION_SECONDS,
    ) -> Manifest | None:
        data = cls.decode_payload(payload)
        if data is None:
            return None

        raw_scenes = data.get("scenes")
        if raw_scenes is None:
            raw_scenes = []
        if not isinstance(raw_scenes, list):
            raise ManifestInvalidError("Job payload 'scenes' must be a list")

        try:
            return cls(
                intro_clip=_reference_from(_first_present(data, _INTRO_KEYS)),
                scenes=[SceneClip.from_payload(scene) for scene in raw_scenes],
                music_track=_reference_from(_first_present(data, _MUSIC_KEYS)),
                target_duration_seconds=_positive_float(
                    _first_present(data, _DURATION_KEYS)
                )
                or default_duration,
                width=_positive_int(data.get("width")),
                height=_positive_int(data.get("height")),
            )
        except ValidationError as exc:
            raise ManifestInvalidError(f"Job payload is invalid: {exc}") from exc


# =============================================================================
# REQUEST MODELS
# =============================================================================


class RenderTriggerRequest(BaseModel):
    """Request to start processing a job that is already in the job store."""

    job_id: str = Field(min_length=1, description="Job store identifier")


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class RenderJobResponse(BaseModel):
    """Response containing render job details."""

    job_id: str
    status: RenderJobStatus | str = Field(
        description="Lifecycle status; values written by other systems are passed through"
    )
    progress: int = Field(ge=0, le=100, description="Progress percentage")
    result_url: str | None = None
    error_message: str | None = None
    error_kind: str | None = None
    created_at: datetime | None = None
    claimed_at: datetime | None = None
    completed_at: datetime | None = None


class RenderTriggerResponse(BaseModel):
    """Response after accepting a render trigger."""

    ok: bool = True
    job_id: str
    queued: bool = Field(description="Whether the job was handed to the worker queue")


class RenderJobStatusResponse(BaseModel):
    """Response for render job status check."""

    ok: bool = True
    job: RenderJobResponse
