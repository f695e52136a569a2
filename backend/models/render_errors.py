"""
Error taxonomy for render job processing.

Every fatal error raised while a claimed job is being processed is a
RenderJobError subclass. The orchestrator turns any of them into a single
terminal ``failed`` write whose summary is prefixed with the error kind.
"""

from __future__ import annotations

from enum import Enum


ERROR_SUMMARY_MAX_LENGTH = 500
DIAGNOSTIC_SUMMARY_CHARS = 400


class ErrorKind(str, Enum):
    """Reportable failure categories stored alongside a failed job."""

    MANIFEST_INVALID = "manifest_invalid"
    READINESS_TIMEOUT = "readiness_timeout"
    ASSET_UNAVAILABLE = "asset_unavailable"
    COMPILATION_PRECONDITION = "compilation_precondition"
    ENCODING_FAILURE = "encoding_failure"
    PUBLISH_FAILURE = "publish_failure"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class RenderJobError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR


class ManifestInvalidError(RenderJobError):
    kind = ErrorKind.MANIFEST_INVALID


class ReadinessTimeoutError(RenderJobError):
    kind = ErrorKind.READINESS_TIMEOUT

    def __init__(self, job_id: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(
            f"Upstream generation did not complete for job {job_id} "
            f"after {attempts} readiness checks"
        )


class AssetUnavailableError(RenderJobError):
    kind = ErrorKind.ASSET_UNAVAILABLE

    def __init__(self, role: str, reference: str | None):
        self.role = role
        self.reference = reference
        super().__init__(f"Required {role} asset could not be fetched: {reference}")


class CompilationPreconditionError(RenderJobError):
    kind = ErrorKind.COMPILATION_PRECONDITION


class EncodingFailureError(RenderJobError):
    kind = ErrorKind.ENCODING_FAILURE

    def __init__(
        self,
        exit_code: int | None,
        diagnostics: str,
        reason: str | None = None,
    ):
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        message = reason or f"FFmpeg exited with code {exit_code}"
        if diagnostics:
            # FFmpeg prints its final error last.
            if len(diagnostics) > DIAGNOSTIC_SUMMARY_CHARS:
                diagnostics = "…" + diagnostics[-DIAGNOSTIC_SUMMARY_CHARS:]
            message = f"{message}: {diagnostics}"
        super().__init__(message)


class PublishFailureError(RenderJobError):
    kind = ErrorKind.PUBLISH_FAILURE


class RenderCancelledError(RenderJobError):
    kind = ErrorKind.CANCELLED


def error_kind_of(exc: BaseException) -> ErrorKind:
    if isinstance(exc, RenderJobError):
        return exc.kind
    return ErrorKind.INTERNAL_ERROR


def summarize_error(
    exc: BaseException, max_length: int = ERROR_SUMMARY_MAX_LENGTH
) -> str:
    """Build the bounded, non-empty summary persisted on a failed job."""
    message = str(exc).strip() or type(exc).__name__
    summary = f"[{error_kind_of(exc).value}] {message}"
    if len(summary) > max_length:
        summary = summary[: max_length - 1] + "…"
    return summary
