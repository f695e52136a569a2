#!/usr/bin/env python3


import argparse
import dataclasses
import logging
import os
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

from operators.render_orchestrator import RenderOrchestrator
from utils.logging_utils import LOG_FORMAT
from utils.render_config import RenderConfig


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format=LOG_FORMAT,
)
logger = logging.getLogger("render-poller")


def parse_args(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Render job poller")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Claim and process at most one pending job, then exit",
    )
    parser.add_argument(
        "--job-id",
        help="Process this pending job only, then exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between polling cycles (overrides RENDER_POLL_INTERVAL_SECONDS)",
    )
    parser.add_argument(
        "--max-concurrent",
        type=int,
        help="Jobs processed at the same time (overrides RENDER_MAX_CONCURRENT_JOBS)",
    )
    return parser.parse_args(argv)


def build_config(args) -> RenderConfig:
    config = RenderConfig.from_env()
    overrides = {}
    if args.interval is not None:
        overrides["poll_interval_seconds"] = max(0.1, args.interval)
    if args.max_concurrent is not None:
        overrides["max_concurrent_jobs"] = max(1, args.max_concurrent)
    return dataclasses.replace(config, **overrides) if overrides else config


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    orchestrator = RenderOrchestrator(config=build_config(args))

    if args.job_id:
        processed = orchestrator.run_job(args.job_id)
        orchestrator.shutdown()
        return 0 if processed else 1

    if args.once:
        future = orchestrator.poll_once()
        if future is not None:
            future.result()
        else:
            logger.info("No pending render job")
        orchestrator.shutdown()
        return 0

    def _handle_signal(signum, frame):
        logger.info("Received signal %s, stopping", signum)
        orchestrator.shutdown(wait=False)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    orchestrator.run_forever()
    orchestrator.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
