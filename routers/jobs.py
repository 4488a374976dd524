"""routers/jobs.py - Worker webhook, called only by the queue."""

import logging
from typing import Optional, Tuple

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from config import worker_stale_seconds
from providers.qstash import SIGNATURE_HEADERS, SignatureError, verify_signature
from schemas.search import WorkerRequest, WorkerResponse
from services.worker_service import JobInProgress, JobNotFound, process_job

logger = logging.getLogger(__name__)

router = APIRouter()


def _first_header(request: Request, names: Tuple[str, ...]) -> Optional[str]:
    # Starlette headers are case-insensitive
    for name in names:
        value = request.headers.get(name)
        if value:
            return value
    return None


@router.post("/jobs/process", response_model=WorkerResponse)
async def process_job_webhook(request: Request):
    """
    QStash delivery target.

    200 for every handled outcome, including jobs that ended failed and
    redeliveries of finished jobs.
    401 bad signature, 404 unknown job.
    503 job claimed by a delivery that has not finished yet, 500 store
    failure. Both make the queue redeliver.
    """
    body = await request.body()

    try:
        verify_signature(body, _first_header(request, SIGNATURE_HEADERS))
    except SignatureError as e:
        logger.warning(f"[worker_webhook] rejected delivery: {e}")
        return JSONResponse(status_code=401, content={"error": str(e)})

    try:
        payload = WorkerRequest.model_validate_json(body)
    except ValidationError:
        return JSONResponse(status_code=400, content={"error": "Missing job_id"})

    try:
        result = await run_in_threadpool(process_job, payload.job_id)
    except JobNotFound:
        return JSONResponse(status_code=404, content={"error": "Job not found", "job_id": payload.job_id})
    except JobInProgress:
        return JSONResponse(
            status_code=503,
            content={"error": "Job is being processed", "job_id": payload.job_id},
            headers={"Retry-After": str(worker_stale_seconds())},
        )
    except SQLAlchemyError as e:
        logger.exception(f"[worker_webhook] job store failure job_id={payload.job_id}: {e}")
        return JSONResponse(status_code=500, content={"error": "Job store unavailable", "job_id": payload.job_id})

    return WorkerResponse(
        success=True,
        job_id=result.job_id,
        status=result.status,
        duplicate=result.duplicate,
    )
