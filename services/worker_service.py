"""
services/worker_service.py

Job worker, one call per webhook delivery. No state survives between calls.

  1. Load the row (missing -> JobNotFound, nothing written)
  2. Claim it, pending -> processing
     (finished -> duplicate no-op; still processing elsewhere -> JobInProgress)
  3. Two-step Duffel search with the stored params
  4. processing -> completed with {offers, meta}
     or processing -> failed with the serialized vendor diagnostic

Vendor errors end the job; they are business outcomes, not retried.
Store errors propagate so the route can answer 500 and the queue redelivers.
"""

import logging
from typing import Optional, Tuple

from pydantic import BaseModel, ValidationError

from config import worker_stale_seconds
from db import SessionLocal
from providers.duffel import DuffelError, search_offers
from schemas.search import TERMINAL_STATUSES, JobStatus, SearchParams
from services import job_store

logger = logging.getLogger(__name__)


class JobNotFound(Exception):
    pass


class JobInProgress(Exception):
    """Another delivery holds a fresh claim; the queue should retry later."""


class WorkerResult(BaseModel):
    job_id: str
    status: JobStatus
    duplicate: bool = False
    offers: int = 0


def process_job(job_id: str) -> WorkerResult:
    db = SessionLocal()
    try:
        row = job_store.get_job(db, job_id)
        if row is None:
            logger.warning(f"[worker] job_id={job_id} not found")
            raise JobNotFound(job_id)

        if not job_store.claim_job(db, job_id, stale_after_seconds=worker_stale_seconds()):
            db.refresh(row)
            status = JobStatus(row.status)
            if status not in TERMINAL_STATUSES:
                logger.info(f"[worker] job_id={job_id} claimed by another delivery, asking for retry")
                raise JobInProgress(job_id)
            logger.info(f"[worker] job_id={job_id} duplicate delivery, status={status.value}")
            return WorkerResult(job_id=job_id, status=status, duplicate=True)

        params, error = _load_params(row.search_params)
        if error:
            job_store.fail_job(db, job_id, error)
            return WorkerResult(job_id=job_id, status=JobStatus.FAILED)

        try:
            page = search_offers(params)
        except DuffelError as e:
            logger.warning(f"[worker] job_id={job_id} vendor error status={e.status_code} message={e.message}")
            job_store.fail_job(db, job_id, e.diagnostic())
            return WorkerResult(job_id=job_id, status=JobStatus.FAILED)

        job_store.complete_job(db, job_id, page.offers, page.meta)
        logger.info(f"[worker] job_id={job_id} completed offers={len(page.offers)}")
        return WorkerResult(job_id=job_id, status=JobStatus.COMPLETED, offers=len(page.offers))
    finally:
        db.close()


def _load_params(raw: dict) -> Tuple[Optional[SearchParams], Optional[str]]:
    try:
        return SearchParams.model_validate(raw), None
    except ValidationError as e:
        return None, f"invalid stored search params: {e.errors(include_url=False)}"
