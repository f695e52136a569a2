import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

import uvicorn
from fastapi import FastAPI

from handlers.health_handler import router as health_router
from handlers.render_handler import router as render_router
from operators.render_orchestrator import get_orchestrator
from utils.logging_utils import LOG_FORMAT, attach_render_job_log
from utils.render_config import polling_enabled

ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
)

logger = logging.getLogger(__name__)

RENDER_JOB_LOGGERS = (
    "handlers.render_handler",
    "operators.render_operator",
    "operators.render_orchestrator",
    "operators.readiness_gate",
    "utils.asset_fetcher",
    "utils.ffmpeg_runner",
)


attach_render_job_log(RENDER_JOB_LOGGERS, ROOT_DIR)


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = None
    if polling_enabled():
        orchestrator = get_orchestrator()
        orchestrator.start_background()
        logger.info("render_poller_attached")
    try:
        yield
    finally:
        if orchestrator is not None:
            orchestrator.shutdown(wait=False)


app = FastAPI(title="Render Job Orchestrator", lifespan=lifespan)


app.include_router(health_router)
app.include_router(render_router)

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
