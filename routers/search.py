"""routers/search.py - Search routes: initiate a job, read a job, run a multi-airport search."""

import logging
from typing import Optional

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse

from city_airports import expand_airport_pairs
from config import max_airports_per_city, max_offer_limit, require_search_owner
from db import SessionLocal
from providers.duffel import summarize_offer
from providers.qstash import DispatchError
from schemas.search import (
    InitiateSearchRequest,
    InitiateSearchResponse,
    JobStatus,
    JobStatusResponse,
    SearchParams,
    SearchResponse,
    SearchTimedOut,
)
from services import job_store
from services.coordinator import LocalSearchGateway, SearchCoordinator, run_search
from services.dispatch_service import initiate_search

logger = logging.getLogger(__name__)

router = APIRouter()


def _owner_from_header(x_user_id: Optional[str]) -> Optional[str]:
    owner = (x_user_id or "").strip()
    return owner or None


def _missing_owner() -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Missing user identity, please sign in and retry"})


def _limit_too_high(params: SearchParams) -> Optional[JSONResponse]:
    cap = max_offer_limit()
    if params.limit is not None and params.limit > cap:
        return JSONResponse(status_code=400, content={"error": f"limit must be between 1 and {cap}"})
    return None


@router.post("/initiate-search", status_code=202, response_model=InitiateSearchResponse)
def initiate_search_endpoint(
    payload: InitiateSearchRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    owner = _owner_from_header(x_user_id)
    if not owner and require_search_owner():
        return _missing_owner()

    params = payload.searchParams
    rejected = _limit_too_high(params)
    if rejected:
        return rejected

    logger.info(
        f"[initiate_search] owner={owner} {params.origin}->{params.destination} "
        f"dep={params.departureDate} ret={params.returnDate} cabin={params.cabinClass.value}"
    )

    try:
        job_id = initiate_search(params, owner=owner)
    except DispatchError as e:
        return JSONResponse(
            status_code=502,
            content={"error": "Failed to queue search", "job_id": e.job_id},
        )

    return InitiateSearchResponse(job_id=job_id, status=JobStatus.PENDING)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job_status(job_id: str):
    db = SessionLocal()
    try:
        row = job_store.get_job(db, job_id)
        if row is None:
            return JSONResponse(status_code=404, content={"error": "Job not found"})

        update = job_store.to_update(row)
        return JobStatusResponse(
            job_id=row.id,
            owner=row.owner,
            status=update.status,
            search_params=row.search_params,
            outcome=update.outcome(),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
    finally:
        db.close()


@router.post("/search", response_model=SearchResponse)
def search_all_airports(
    payload: InitiateSearchRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
):
    """
    Blocking multi-airport search.

    City codes expand to airport pairs (LON->NYC becomes up to 4 jobs),
    the coordinator fans out and merges, and the terminal event is returned.
    """
    owner = _owner_from_header(x_user_id)
    if not owner and require_search_owner():
        return _missing_owner()

    rejected = _limit_too_high(payload.searchParams)
    if rejected:
        return rejected

    params_list = expand_airport_pairs(payload.searchParams, max_per_city=max_airports_per_city())
    logger.info(
        f"[search] owner={owner} {payload.searchParams.origin}->{payload.searchParams.destination} "
        f"pairs={[(p.origin, p.destination) for p in params_list]}"
    )

    coordinator = SearchCoordinator(gateway=LocalSearchGateway(owner=owner))
    final = run_search(coordinator, params_list)

    if isinstance(final, SearchTimedOut):
        return JSONResponse(
            status_code=504,
            content={"error": final.message, "failures": [f.model_dump() for f in final.failures]},
        )

    offers = sorted((summarize_offer(o) for o in final.offers), key=lambda o: o.price)
    return SearchResponse(
        status="partial" if (final.timed_out or final.failures) else "complete",
        offers=offers,
        failures=final.failures,
        completed_jobs=final.completed_jobs,
        total_jobs=final.total_jobs,
        timed_out=final.timed_out,
    )
