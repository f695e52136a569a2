from __future__ import annotations

import logging
import re
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Callable

from models.render_errors import EncodingFailureError, RenderCancelledError

logger = logging.getLogger(__name__)


OUTPUT_TAIL_LINES = 200
DIAGNOSTIC_LINES = 40
_STOP_CHECK_INTERVAL_SECONDS = 0.5

# Lines written by `-progress pipe:1`, e.g. "out_time_ms=2000000" or "progress=continue".
_PROGRESS_LINE_RE = re.compile(r"^[a-z][a-z0-9_]*=\S*$")


@dataclass
class FFmpegResult:
    output_path: str
    exit_code: int
    output_tail: list[str] = field(default_factory=list)


def _progress_percent(
    seconds_done: float,
    expected_duration: float | None,
    progress_start: int,
    progress_end: int,
) -> int | None:
    if not expected_duration or expected_duration <= 0:
        return None
    span = max(1, progress_end - progress_start)
    fraction = min(1.0, max(0.0, seconds_done / expected_duration))
    return min(progress_end, progress_start + int(fraction * span))


def run_ffmpeg(
    cmd: list[str],
    timeout_seconds: float,
    progress_callback: Callable[[int], None] | None = None,
    expected_duration_seconds: float | None = None,
    progress_start: int = 50,
    progress_end: int = 89,
    stop_event: threading.Event | None = None,
) -> FFmpegResult:
    """Run one FFmpeg command to completion.

    The last argument of ``cmd`` is the output path. Raises
    EncodingFailureError on a non-zero exit or a timeout, and
    RenderCancelledError when ``stop_event`` is set mid-run.
    """
    output_path = cmd[-1]
    cmd_with_progress = cmd[:-1] + ["-progress", "pipe:1", cmd[-1]]

    logger.info("ffmpeg_start output=%s timeout=%s", output_path, timeout_seconds)
    logger.debug("ffmpeg_command %s", " ".join(cmd_with_progress))

    try:
        process = subprocess.Popen(
            cmd_with_progress,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise EncodingFailureError(None, f"Failed to start FFmpeg: {exc}") from exc

    output_tail: list[str] = []
    timed_out = False
    cancelled = False
    last_progress = progress_start

    def _kill_process_on_timeout() -> None:
        nonlocal timed_out
        timed_out = True
        process.kill()

    def _kill_process_on_stop() -> None:
        nonlocal cancelled
        while process.poll() is None:
            if stop_event.wait(_STOP_CHECK_INTERVAL_SECONDS):
                cancelled = True
                process.kill()
                return

    timer = threading.Timer(max(1.0, timeout_seconds), _kill_process_on_timeout)
    timer.daemon = True
    timer.start()

    if stop_event is not None:
        threading.Thread(target=_kill_process_on_stop, daemon=True).start()

    try:
        if process.stdout is not None:
            for line in process.stdout:
                line = line.strip()
                if not line:
                    continue
                if not _PROGRESS_LINE_RE.match(line):
                    output_tail.append(line)
                    if len(output_tail) > OUTPUT_TAIL_LINES:
                        output_tail = output_tail[-OUTPUT_TAIL_LINES:]
                    continue

                if not line.startswith("out_time_ms=") or not progress_callback:
                    continue
                try:
                    seconds_done = int(line.split("=", 1)[1]) / 1_000_000
                except (ValueError, IndexError):
                    continue
                pct = _progress_percent(
                    seconds_done, expected_duration_seconds, progress_start, progress_end
                )
                if pct is not None and pct > last_progress:
                    progress_callback(pct)
                    last_progress = pct
        process.wait()
    finally:
        timer.cancel()
        if process.poll() is None:
            process.kill()
            process.wait()

    tail_text = "\n".join(output_tail[-DIAGNOSTIC_LINES:])

    if cancelled:
        raise RenderCancelledError("FFmpeg stopped because the orchestrator is shutting down")

    if timed_out:
        raise EncodingFailureError(
            process.returncode,
            tail_text,
            reason=f"FFmpeg timed out after {timeout_seconds:.0f}s",
        )

    if process.returncode != 0:
        raise EncodingFailureError(process.returncode, tail_text)

    logger.info("ffmpeg_done output=%s", output_path)
    if output_tail:
        logger.debug("ffmpeg_output_tail %s", "\n".join(output_tail[-20:]))

    return FFmpegResult(
        output_path=output_path,
        exit_code=process.returncode,
        output_tail=output_tail,
    )
