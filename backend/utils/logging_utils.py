import logging
import os
from pathlib import Path
from typing import Iterable

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DEFAULT_RENDER_JOBS_LOG_FILE = "backend/log/render_jobs.log"


def _level_value(level_name: str | None) -> int:
    name = (level_name or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    return getattr(logging, name, logging.INFO)


def attach_file_handler(
    logger_name: str,
    log_file_path: Path,
    level_name: str | None = None,
) -> None:
    """Send ``logger_name`` records to ``log_file_path``.

    Calling this again for the same logger and file only updates the level.
    """
    level_value = _level_value(level_name)
    target_logger = logging.getLogger(logger_name)
    target_logger.setLevel(level_value)

    file_name = os.path.abspath(log_file_path)
    for handler in target_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == file_name:
            handler.setLevel(level_value)
            return

    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(level_value)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    target_logger.addHandler(file_handler)


def attach_render_job_log(logger_names: Iterable[str], root_dir: Path) -> Path | None:
    """Mirror render job loggers into RENDER_JOBS_LOG_FILE.

    Relative paths resolve against ``root_dir``. An empty setting disables
    the file and returns None.
    """
    raw_path = os.getenv("RENDER_JOBS_LOG_FILE", DEFAULT_RENDER_JOBS_LOG_FILE).strip()
    if not raw_path:
        return None
    level_name = os.getenv("RENDER_JOBS_LOG_LEVEL", "INFO").strip()

    log_path = Path(raw_path)
    if not log_path.is_absolute():
        log_path = root_dir / log_path
    for name in logger_names:
        attach_file_handler(name, log_path, level_name=level_name)
    return log_path
