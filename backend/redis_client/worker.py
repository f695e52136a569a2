import os
import logging
import sys
from pathlib import Path

from rq import Queue, Worker
from rq.job import Job
from rq.worker import SimpleWorker, SpawnWorker

from redis_client import RENDER_QUEUE_NAME, init_redis, redis_rq
from utils.logging_utils import LOG_FORMAT, attach_render_job_log


logger = logging.getLogger(__name__)


ROOT_DIR = Path(__file__).resolve().parents[2]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

RENDER_JOB_LOGGERS = (
    "redis_client.worker",
    "operators.render_operator",
    "operators.render_orchestrator",
    "operators.readiness_gate",
    "utils.asset_fetcher",
    "utils.ffmpeg_runner",
    "rq.worker",
)


def _configure_worker_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format=LOG_FORMAT,
    )
    attach_render_job_log(RENDER_JOB_LOGGERS, ROOT_DIR)


class LoggingWorker(Worker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


class LoggingSimpleWorker(SimpleWorker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


class LoggingSpawnWorker(SpawnWorker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


def _build_worker() -> Worker:
    queues = [Queue(RENDER_QUEUE_NAME, connection=redis_rq)]
    override = os.getenv("RQ_WORKER_CLASS", "").strip().lower()
    supports_wait4 = hasattr(os, "wait4")
    supports_fork = supports_wait4 and hasattr(os, "fork")
    supports_spawn = supports_wait4 and hasattr(os, "spawnv")
    if override == "simple":
        return LoggingSimpleWorker(queues, connection=redis_rq)
    if override == "spawn" and supports_spawn:
        return LoggingSpawnWorker(queues, connection=redis_rq)
    if override == "fork" and supports_fork:
        return LoggingWorker(queues, connection=redis_rq)
    if supports_fork:
        return LoggingWorker(queues, connection=redis_rq)
    if supports_spawn:
        return LoggingSpawnWorker(queues, connection=redis_rq)
    return LoggingSimpleWorker(queues, connection=redis_rq)


def main():
    _configure_worker_logging()
    logger.info(
        "rq_worker_start python_executable=%s queue=%s",
        sys.executable,
        RENDER_QUEUE_NAME,
    )

    init_redis()
    worker = _build_worker()
    worker.work()


if __name__ == "__main__":
    main()
