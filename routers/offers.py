"""routers/offers.py - Offer detail and seat map passthrough to Duffel."""

import re

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from providers.duffel import DuffelError, get_offer, get_seat_maps, summarize_offer

router = APIRouter()

OFFER_ID_RE = re.compile(r"^off_[A-Za-z0-9]+$")


def _vendor_error(e: DuffelError) -> JSONResponse:
    if e.status_code == 404:
        return JSONResponse(status_code=404, content={"success": False, "error": "Offer not found"})
    return JSONResponse(status_code=502, content={"success": False, "error": "Flight provider error"})


@router.get("/offers/{offer_id}")
def get_offer_details(offer_id: str):
    if not OFFER_ID_RE.match(offer_id):
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid offer ID format"})

    try:
        offer = get_offer(offer_id)
    except DuffelError as e:
        return _vendor_error(e)

    return {"success": True, "data": offer, "summary": summarize_offer(offer).model_dump()}


@router.get("/offers/{offer_id}/seat-maps")
def get_offer_seat_maps(offer_id: str):
    if not OFFER_ID_RE.match(offer_id):
        return JSONResponse(status_code=400, content={"success": False, "error": "Invalid offer ID format"})

    try:
        seat_maps = get_seat_maps(offer_id)
    except DuffelError as e:
        return _vendor_error(e)

    return {"success": True, "data": seat_maps}
