"""
services/job_store.py

search_jobs persistence.

Status only moves forward: pending -> processing -> completed | failed.
Every transition is a guarded UPDATE (WHERE status = <expected>), so a
duplicate webhook delivery or a late writer finds zero rows and becomes a
no-op instead of clobbering a terminal row. Successful transitions publish
the new row image on the change feed after commit.

Store errors (SQLAlchemyError) are not caught here; the worker route turns
them into a 500 so the queue redelivers.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

from db import SessionLocal
from models import SearchJobRow
from schemas.search import JobStatus, JobUpdate, SearchParams
from services.change_feed import get_change_feed

logger = logging.getLogger(__name__)


# =====================================================================
# SECTION: READS
# =====================================================================

def get_job(db: Session, job_id: str) -> Optional[SearchJobRow]:
    return db.get(SearchJobRow, job_id)


def to_update(row: SearchJobRow) -> JobUpdate:
    return JobUpdate(
        id=row.id,
        status=JobStatus(row.status),
        results=row.results,
        error=row.error,
        updated_at=row.updated_at,
    )


def load_update(job_id: str) -> Optional[JobUpdate]:
    """Fresh row image in its own session. Used by feed listeners and the coordinator."""
    db = SessionLocal()
    try:
        row = get_job(db, job_id)
        return to_update(row) if row else None
    finally:
        db.close()


# =====================================================================
# SECTION: WRITES
# =====================================================================

def create_job(db: Session, params: SearchParams, owner: Optional[str] = None) -> SearchJobRow:
    now = datetime.utcnow()
    row = SearchJobRow(
        id=str(uuid4()),
        owner=owner,
        search_params=params.model_dump(mode="json", exclude_none=True),
        status=JobStatus.PENDING.value,
        results=None,
        error=None,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info(f"[job_store] created job_id={row.id} owner={owner} route={params.origin}->{params.destination}")
    return row


def _transition(
    db: Session,
    job_id: str,
    expected: JobStatus,
    values: Dict[str, Any],
    extra_filters: Optional[List[Any]] = None,
) -> bool:
    stmt = (
        update(SearchJobRow)
        .where(SearchJobRow.id == job_id, SearchJobRow.status == expected.value, *(extra_filters or []))
        .values(updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()

    if result.rowcount != 1:
        logger.info(f"[job_store] transition skipped job_id={job_id} expected={expected.value}")
        return False

    row = get_job(db, job_id)
    db.refresh(row)
    logger.info(f"[job_store] job_id={job_id} {expected.value}->{row.status}")
    _publish(row)
    return True


def _publish(row: SearchJobRow) -> None:
    try:
        get_change_feed().publish(to_update(row))
    except Exception:
        # Row is already committed; subscribers fall back to their snapshot read
        logger.exception(f"[job_store] change feed publish failed job_id={row.id}")


def claim_job(db: Session, job_id: str, stale_after_seconds: int) -> bool:
    """
    pending -> processing. Returns False when another delivery already owns it.

    A processing row untouched for stale_after_seconds is re-claimed by
    re-stamping updated_at: its owner died before writing an outcome.
    """
    if _transition(db, job_id, JobStatus.PENDING, {"status": JobStatus.PROCESSING.value}):
        return True

    cutoff = datetime.utcnow() - timedelta(seconds=stale_after_seconds)
    reclaimed = _transition(
        db,
        job_id,
        JobStatus.PROCESSING,
        {},
        extra_filters=[SearchJobRow.updated_at < cutoff],
    )
    if reclaimed:
        logger.warning(f"[job_store] reclaimed stale processing job_id={job_id}")
    return reclaimed


def complete_job(db: Session, job_id: str, offers: List[dict], meta: Dict[str, Any]) -> bool:
    return _transition(
        db,
        job_id,
        JobStatus.PROCESSING,
        {
            "status": JobStatus.COMPLETED.value,
            "results": {"offers": offers, "meta": meta},
            "error": None,
        },
    )


def fail_job(db: Session, job_id: str, message: str) -> bool:
    return _transition(
        db,
        job_id,
        JobStatus.PROCESSING,
        {
            "status": JobStatus.FAILED.value,
            "results": None,
            "error": message,
        },
    )
