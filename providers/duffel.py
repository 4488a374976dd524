"""
providers/duffel.py

Duffel API helpers:
- Low-level HTTP wrappers (duffel_post, duffel_get)
- Request shaping (slices, passengers, cabin)
- Two-step search: create offer request, then list offers against it
- Response validation at the boundary (OfferPage)
- Offer-to-FlightSummary mapping for API responses
- Single offer and seat map passthrough

All failures, HTTP or malformed payloads, surface as DuffelError. Callers decide
whether that is a terminal job outcome or a 502 to the client.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import BaseModel

from config import (
    DUFFEL_API_BASE,
    DUFFEL_API_TOKEN,
    DUFFEL_TIMEOUT_SECONDS,
    DUFFEL_VERSION,
    default_offer_limit,
    default_offer_sort,
    max_offer_limit,
)
from schemas.search import FlightSegment, FlightSummary, Passengers, SearchParams

logger = logging.getLogger(__name__)


class DuffelError(Exception):
    """Vendor rejected the call, was unreachable, or returned something unusable."""

    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        detail = self.detail
        if isinstance(detail, dict):
            errors = detail.get("errors")
            if isinstance(errors, list) and errors:
                first = errors[0] or {}
                return str(first.get("message") or first.get("title") or first)
            if detail.get("message"):
                return str(detail["message"])
        return str(detail)

    def diagnostic(self) -> str:
        """Serialized form stored in search_jobs.error."""
        return json.dumps(
            {"status": self.status_code, "message": self.message, "detail": self.detail},
            default=str,
        )


class OfferPage(BaseModel):
    offers: List[Dict[str, Any]]
    meta: Dict[str, Any] = {}


# =====================================================================
# SECTION: LOW LEVEL HTTP HELPERS
# =====================================================================

def _duffel_token() -> str:
    token = (DUFFEL_API_TOKEN or "").strip()
    if not token:
        raise DuffelError(500, "Duffel token is not configured")
    return token


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {_duffel_token()}",
        "Duffel-Version": DUFFEL_VERSION,
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def _handle_response(method: str, path: str, resp: requests.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        data = {"raw": resp.text}

    request_id = resp.headers.get("X-Request-Id") or resp.headers.get("Request-Id")
    if resp.status_code >= 400:
        safe_body = (resp.text or "").replace("\n", "\\n").replace("\r", "\\r")
        logger.warning(
            f"[duffel] {method} {path} status={resp.status_code} request_id={request_id} body={safe_body[:2000]}"
        )
        raise DuffelError(resp.status_code, data)

    logger.info(f"[duffel] {method} {path} status={resp.status_code} request_id={request_id}")
    if not isinstance(data, dict):
        raise DuffelError(502, {"message": "Duffel returned a non-object body", "raw": str(data)[:500]})
    return data


def duffel_post(path: str, payload: dict, params: Optional[dict] = None) -> dict:
    """POST and return the full response envelope ({"data": ..., "meta": ...})."""
    headers = _headers()
    try:
        resp = requests.post(
            DUFFEL_API_BASE + path,
            headers=headers,
            params=params or {},
            json=payload,
            timeout=DUFFEL_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        raise DuffelError(502, f"Duffel request failed: {e}")
    return _handle_response("POST", path, resp)


def duffel_get(path: str, params: Optional[dict] = None) -> dict:
    """GET and return the full response envelope ({"data": ..., "meta": ...})."""
    headers = _headers()
    try:
        resp = requests.get(
            DUFFEL_API_BASE + path,
            headers=headers,
            params=params or {},
            timeout=DUFFEL_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        raise DuffelError(502, f"Duffel request failed: {e}")
    return _handle_response("GET", path, resp)


# =====================================================================
# SECTION: REQUEST SHAPING
# =====================================================================

def build_slices(params: SearchParams) -> List[dict]:
    """One slice per directional leg: outbound, plus return when a returnDate is set."""
    slices = [
        {
            "origin": params.origin,
            "destination": params.destination,
            "departure_date": params.departureDate.isoformat(),
        }
    ]
    if params.returnDate:
        slices.append({
            "origin": params.destination,
            "destination": params.origin,
            "departure_date": params.returnDate.isoformat(),
        })
    return slices


def build_passengers(passengers: Passengers) -> List[dict]:
    """Expand counts into one entry per passenger, adults first."""
    return (
        [{"type": "adult"} for _ in range(passengers.adults)]
        + [{"type": "child"} for _ in range(passengers.children)]
        + [{"type": "infant_without_seat"} for _ in range(passengers.infants)]
    )


def build_offer_request_payload(params: SearchParams) -> dict:
    return {
        "data": {
            "slices": build_slices(params),
            "passengers": build_passengers(params.passengers),
            "cabin_class": params.cabinClass.value,
        }
    }


# =====================================================================
# SECTION: TWO-STEP SEARCH
# =====================================================================

def create_offer_request(params: SearchParams) -> str:
    """Step 1: create the offer request without inlining offers, return its id."""
    payload = build_offer_request_payload(params)
    res = duffel_post("/air/offer_requests", payload, params={"return_offers": "false"})

    data = res.get("data") or {}
    offer_request_id = data.get("id") if isinstance(data, dict) else None
    if not offer_request_id:
        raise DuffelError(502, {"message": "Duffel offer request has no id", "body": res})
    return str(offer_request_id)


def list_offers(
    offer_request_id: str,
    sort: Optional[str] = None,
    limit: Optional[int] = None,
    after: Optional[str] = None,
) -> OfferPage:
    """Step 2: list offers for an offer request, sorted and capped."""
    query: Dict[str, Any] = {
        "offer_request_id": offer_request_id,
        "sort": sort or default_offer_sort(),
        # Routes reject limits above the cap; stored jobs may predate a lower admin cap
        "limit": max(1, min(int(limit or default_offer_limit()), max_offer_limit())),
    }
    if after:
        query["after"] = after

    res = duffel_get("/air/offers", params=query)
    return parse_offer_page(res)


def parse_offer_page(res: dict) -> OfferPage:
    offers = res.get("data")
    if not isinstance(offers, list):
        raise DuffelError(502, {"message": "Duffel offers response has no data list"})

    for offer in offers:
        if not isinstance(offer, dict) or not offer.get("id"):
            raise DuffelError(502, {"message": "Duffel offer is missing an id"})

    meta = res.get("meta")
    return OfferPage(offers=offers, meta=meta if isinstance(meta, dict) else {})


def search_offers(params: SearchParams) -> OfferPage:
    offer_request_id = create_offer_request(params)
    page = list_offers(
        offer_request_id,
        sort=params.sort,
        limit=params.limit,
        after=params.after,
    )
    logger.info(
        f"[duffel] search {params.origin}->{params.destination} dep={params.departureDate} "
        f"ret={params.returnDate} offer_request_id={offer_request_id} offers={len(page.offers)}"
    )
    return page


# =====================================================================
# SECTION: OFFER DETAILS
# =====================================================================

def get_offer(offer_id: str) -> dict:
    res = duffel_get(f"/air/offers/{offer_id}", params={"return_available_services": "true"})
    data = res.get("data")
    if not isinstance(data, dict):
        raise DuffelError(502, {"message": "Duffel offer response has no data object"})
    return data


def get_seat_maps(offer_id: str) -> List[dict]:
    res = duffel_get("/air/seat_maps", params={"offer_id": offer_id})
    data = res.get("data")
    return data if isinstance(data, list) else []


# =====================================================================
# SECTION: OFFER MAPPING
# =====================================================================

def _map_segment(seg: dict, fallback_cabin: Optional[str]) -> FlightSegment:
    operating = seg.get("operating_carrier") or {}
    marketing = seg.get("marketing_carrier") or {}
    aircraft = seg.get("aircraft") or {}

    passengers = seg.get("passengers") or []
    cabin = None
    if passengers and isinstance(passengers[0], dict):
        cabin = passengers[0].get("cabin_class")

    return FlightSegment(
        origin=(seg.get("origin") or {}).get("iata_code"),
        destination=(seg.get("destination") or {}).get("iata_code"),
        departingAt=seg.get("departing_at"),
        arrivingAt=seg.get("arriving_at"),
        duration=seg.get("duration"),
        airline=operating.get("name") or marketing.get("name"),
        flightNumber=seg.get("operating_carrier_flight_number") or seg.get("marketing_carrier_flight_number"),
        aircraft=aircraft.get("name") if isinstance(aircraft, dict) else None,
        cabinClass=cabin or fallback_cabin,
    )


def summarize_offer(offer: dict) -> FlightSummary:
    """
    PRICE CONTRACT:
    - Duffel offer.total_amount is TOTAL for all passengers
    - FlightSummary.price is the same total, not per passenger
    """
    owner = offer.get("owner") or {}
    slices = offer.get("slices") or []
    cabin = offer.get("cabin_class")

    outbound = (slices[0].get("segments") or []) if len(slices) >= 1 else []
    inbound = (slices[1].get("segments") or []) if len(slices) >= 2 else []

    return FlightSummary(
        id=offer["id"],
        airline=owner.get("name") or owner.get("iata_code") or "Unknown",
        airlineCode=owner.get("iata_code"),
        price=float(offer.get("total_amount") or 0),
        currency=offer.get("total_currency") or "USD",
        stops=max(0, len(outbound) - 1),
        cabinClass=cabin,
        outboundSegments=[_map_segment(s, cabin) for s in outbound],
        returnSegments=[_map_segment(s, cabin) for s in inbound],
    )
