import logging

from fastapi import APIRouter, Depends, HTTPException
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from database.base import get_db
from models.render_models import (
    RenderJobStatus,
    RenderJobStatusResponse,
    RenderTriggerRequest,
    RenderTriggerResponse,
)
from operators.render_operator import get_render_job, render_job_to_response
from operators.render_orchestrator import process_render_job
from redis_client import rq_queue
from utils.render_config import RenderConfig


router = APIRouter(tags=["render"])
logger = logging.getLogger(__name__)

# Leaves room for the orchestrator to write the failure itself at its deadline.
RQ_JOB_TIMEOUT_MARGIN_SECONDS = 120


def _enqueue_render(job_id: str) -> bool:
    timeout = int(RenderConfig.from_env().job_timeout_seconds) + RQ_JOB_TIMEOUT_MARGIN_SECONDS
    try:
        rq_queue.enqueue(
            process_render_job,
            job_id,
            job_timeout=timeout,
        )
    except RedisError as exc:
        logger.warning("render_enqueue_failed job_id=%s error=%s", job_id, exc)
        return False
    logger.info("render_enqueued job_id=%s queue=%s", job_id, rq_queue.name)
    return True


def _trigger(request: RenderTriggerRequest, db: Session) -> RenderTriggerResponse:
    job = get_render_job(db, request.job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Render job not found")
    if job.status != RenderJobStatus.PENDING.value:
        raise HTTPException(
            status_code=409,
            detail=f"Render job is {job.status}; only pending jobs can be triggered",
        )

    queued = _enqueue_render(request.job_id)
    return RenderTriggerResponse(ok=True, job_id=request.job_id, queued=queued)


@router.post("/render", response_model=RenderTriggerResponse, status_code=202)
async def trigger_render(
    request: RenderTriggerRequest,
    db: Session = Depends(get_db),
):
    return _trigger(request, db)


@router.post("/process", response_model=RenderTriggerResponse, status_code=202)
async def trigger_process(
    request: RenderTriggerRequest,
    db: Session = Depends(get_db),
):
    return _trigger(request, db)


@router.get("/renders/{job_id}", response_model=RenderJobStatusResponse)
async def get_render_status(
    job_id: str,
    db: Session = Depends(get_db),
):
    job = get_render_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Render job not found")

    return RenderJobStatusResponse(ok=True, job=render_job_to_response(job))
