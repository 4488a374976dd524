"""schemas/search.py - Pydantic models for search params, jobs, outcomes and coordinator events."""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from config import MAX_OFFER_LIMIT_HARD


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class CabinClass(str, Enum):
    ECONOMY = "economy"
    PREMIUM_ECONOMY = "premium_economy"
    BUSINESS = "business"
    FIRST = "first"


OfferSort = Literal["total_amount", "-total_amount", "total_duration", "-total_duration"]


# =====================================================================
# SECTION: SEARCH PARAMS
# =====================================================================

class Passengers(BaseModel):
    adults: int = Field(1, ge=1, le=9)
    children: int = Field(0, ge=0, le=9)
    infants: int = Field(0, ge=0, le=9)

    @model_validator(mode="after")
    def _infants_need_adults(self):
        # Each infant travels on an adult's lap
        if self.infants > self.adults:
            raise ValueError("infants cannot outnumber adults")
        return self


class SearchParams(BaseModel):
    origin: str
    destination: str
    departureDate: date
    returnDate: Optional[date] = None
    passengers: Passengers
    cabinClass: CabinClass = CabinClass.ECONOMY

    # Passed through to the offers listing
    sort: Optional[OfferSort] = None
    limit: Optional[int] = Field(None, ge=1, le=MAX_OFFER_LIMIT_HARD)
    after: Optional[str] = None

    @field_validator("origin", "destination", mode="before")
    @classmethod
    def _normalize_iata(cls, v):
        code = str(v or "").strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("must be a 3 letter IATA code")
        return code

    @field_validator("cabinClass", mode="before")
    @classmethod
    def _normalize_cabin(cls, v):
        if v is None:
            return CabinClass.ECONOMY
        return str(v).strip().lower().replace(" ", "_")

    @model_validator(mode="after")
    def _check_route_and_dates(self):
        if self.origin == self.destination:
            raise ValueError("origin and destination must differ")
        if self.returnDate and self.returnDate < self.departureDate:
            raise ValueError("returnDate cannot be before departureDate")
        return self


# =====================================================================
# SECTION: JOB ROW IMAGE AND OUTCOMES
# =====================================================================

class PendingOutcome(BaseModel):
    kind: Literal["pending"] = "pending"
    status: JobStatus = JobStatus.PENDING


class CompletedOutcome(BaseModel):
    kind: Literal["completed"] = "completed"
    offers: List[Dict[str, Any]] = []
    meta: Dict[str, Any] = {}


class FailedOutcome(BaseModel):
    kind: Literal["failed"] = "failed"
    message: str


JobOutcome = Union[PendingOutcome, CompletedOutcome, FailedOutcome]


class JobUpdate(BaseModel):
    """Row image carried by the change feed, one per row update."""

    id: str
    status: JobStatus
    results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    updated_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def outcome(self) -> JobOutcome:
        if self.status == JobStatus.COMPLETED:
            results = self.results or {}
            return CompletedOutcome(
                offers=list(results.get("offers") or []),
                meta=dict(results.get("meta") or {}),
            )
        if self.status == JobStatus.FAILED:
            return FailedOutcome(message=self.error or "unknown error")
        return PendingOutcome(status=self.status)


# =====================================================================
# SECTION: HTTP PAYLOADS
# =====================================================================

class InitiateSearchRequest(BaseModel):
    searchParams: SearchParams


class InitiateSearchResponse(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING


class WorkerRequest(BaseModel):
    job_id: str


class WorkerResponse(BaseModel):
    success: bool = True
    job_id: str
    status: JobStatus
    duplicate: bool = False


class JobStatusResponse(BaseModel):
    job_id: str
    owner: Optional[str] = None
    status: JobStatus
    search_params: Dict[str, Any]
    outcome: JobOutcome = Field(discriminator="kind")
    created_at: datetime
    updated_at: datetime


class FlightSegment(BaseModel):
    origin: Optional[str] = None
    destination: Optional[str] = None
    departingAt: Optional[str] = None
    arrivingAt: Optional[str] = None
    duration: Optional[str] = None
    airline: Optional[str] = None
    flightNumber: Optional[str] = None
    aircraft: Optional[str] = None
    cabinClass: Optional[str] = None


class FlightSummary(BaseModel):
    id: str
    airline: str
    airlineCode: Optional[str] = None
    price: float
    currency: str
    stops: int
    cabinClass: Optional[str] = None
    outboundSegments: List[FlightSegment] = []
    returnSegments: List[FlightSegment] = []


# =====================================================================
# SECTION: COORDINATOR EVENTS
# =====================================================================

class JobFailure(BaseModel):
    job_id: Optional[str] = None
    origin: str
    destination: str
    message: str


class SearchUpdate(BaseModel):
    kind: Literal["update"] = "update"
    offers: List[Dict[str, Any]]
    completed_jobs: int
    total_jobs: int


class SearchDone(BaseModel):
    kind: Literal["done"] = "done"
    offers: List[Dict[str, Any]]
    failures: List[JobFailure] = []
    completed_jobs: int
    total_jobs: int
    timed_out: bool = False


class SearchTimedOut(BaseModel):
    kind: Literal["timed_out"] = "timed_out"
    message: str = "Search timed out"
    failures: List[JobFailure] = []
    total_jobs: int


SearchEvent = Union[SearchUpdate, SearchDone, SearchTimedOut]


class SearchResponse(BaseModel):
    status: Literal["complete", "partial"]
    offers: List[FlightSummary]
    failures: List[JobFailure] = []
    completed_jobs: int
    total_jobs: int
    timed_out: bool = False
