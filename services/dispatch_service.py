"""
services/dispatch_service.py

Queue dispatch.

Flow:
  1. Caller (POST /initiate-search or the coordinator) hands over SearchParams
  2. A pending search_jobs row is written
  3. {"job_id": ...} is published to QStash, targeting POST /jobs/process
  4. The job id is returned before any worker has run

A failed publish raises DispatchError carrying the job id. The row stays
pending; there is no retry here.
"""

import logging
from typing import Optional

from db import SessionLocal
from providers.qstash import DispatchError, publish_job
from schemas.search import SearchParams
from services import job_store

logger = logging.getLogger(__name__)


def dispatch(job_id: str) -> None:
    """Fire-and-forget publish for an existing pending job."""
    publish_job(job_id)


def initiate_search(params: SearchParams, owner: Optional[str] = None) -> str:
    db = SessionLocal()
    try:
        row = job_store.create_job(db, params, owner=owner)
        job_id = row.id
    finally:
        db.close()

    try:
        dispatch(job_id)
    except DispatchError as e:
        e.job_id = job_id
        logger.error(f"[dispatch] job_id={job_id} left pending, publish failed: {e}")
        raise

    logger.info(f"[dispatch] job_id={job_id} dispatched")
    return job_id
