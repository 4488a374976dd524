"""
Shared fixtures.

Env vars are set before any project module is imported: config.py and db.py
read them at import time.
"""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_search_jobs.db")
os.environ.setdefault("DUFFEL_API_TOKEN", "duffel_test_token")
os.environ.setdefault("QSTASH_TOKEN", "qstash_test_token")
os.environ.setdefault("QSTASH_CURRENT_SIGNING_KEY", "sig_current_test_key_0123456789abcdef")
os.environ.setdefault("QSTASH_NEXT_SIGNING_KEY", "sig_next_test_key_0123456789abcdef0123")
os.environ.setdefault("WORKER_URL", "https://worker.example.com/jobs/process")
os.environ.setdefault("CHANGE_FEED", "memory")

import pytest
from fastapi.testclient import TestClient

from db import Base, engine
import models  # noqa: F401
from providers import duffel
from providers.qstash import sign_body
from services import dispatch_service
from services.change_feed import ChangeFeed, set_change_feed

CURRENT_KEY = os.environ["QSTASH_CURRENT_SIGNING_KEY"]
NEXT_KEY = os.environ["QSTASH_NEXT_SIGNING_KEY"]


# =====================================================================
# SECTION: DATABASE AND FEED
# =====================================================================

@pytest.fixture(autouse=True)
def clean_db():
    """Fresh tables for every test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def feed():
    feed = ChangeFeed()
    set_change_feed(feed)
    yield feed
    set_change_feed(None)


@pytest.fixture
def client():
    from main import app
    with TestClient(app) as c:
        yield c


# =====================================================================
# SECTION: FAKE QUEUE
# =====================================================================

class FakeQueue:
    def __init__(self):
        self.published = []
        self.fail = False
        self.on_publish = None

    def publish(self, job_id):
        from providers.qstash import DispatchError
        if self.fail:
            raise DispatchError("Queue rejected publish: 500", job_id=job_id)
        self.published.append(job_id)
        if self.on_publish:
            self.on_publish(job_id)
        return "msg_" + job_id


@pytest.fixture
def fake_queue(monkeypatch):
    q = FakeQueue()
    monkeypatch.setattr(dispatch_service, "publish_job", q.publish)
    return q


# =====================================================================
# SECTION: FAKE DUFFEL
# =====================================================================

class FakeResponse:
    def __init__(self, status_code, payload, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload)
        self.headers = headers or {"X-Request-Id": "req_test"}

    def json(self):
        return self._payload


def make_offer(offer_id, amount="100.00", origin="LHR", destination="JFK", round_trip=False):
    def segment(o, d):
        return {
            "origin": {"iata_code": o, "name": o + " Airport"},
            "destination": {"iata_code": d, "name": d + " Airport"},
            "departing_at": "2025-07-15T09:00:00",
            "arriving_at": "2025-07-15T12:00:00",
            "duration": "PT8H",
            "marketing_carrier": {"iata_code": "BA", "name": "British Airways"},
            "operating_carrier": {"iata_code": "BA", "name": "British Airways"},
            "marketing_carrier_flight_number": "117",
            "aircraft": {"iata_code": "777", "name": "Boeing 777"},
            "passengers": [{"cabin_class": "economy"}],
        }

    slices = [{"segments": [segment(origin, destination)]}]
    if round_trip:
        slices.append({"segments": [segment(destination, origin)]})
    return {
        "id": offer_id,
        "total_amount": amount,
        "total_currency": "GBP",
        "cabin_class": "economy",
        "owner": {"iata_code": "BA", "name": "British Airways"},
        "slices": slices,
    }


class FakeDuffel:
    """
    Stands in for requests.post/requests.get inside providers.duffel.
    offers_by_route maps "ORIGIN-DEST" to the offers list returned for it.
    """

    def __init__(self):
        self.offers_by_route = {}
        self.error = None  # (status_code, body) returned for offer requests
        self.offer_requests = []
        self.offer_lists = []
        self._routes = {}

    def post(self, url, headers=None, params=None, json=None, timeout=None):
        self.offer_requests.append({"url": url, "params": params, "json": json})
        if self.error:
            return FakeResponse(self.error[0], self.error[1])
        first = json["data"]["slices"][0]
        orq_id = f"orq_{len(self.offer_requests)}"
        self._routes[orq_id] = f"{first['origin']}-{first['destination']}"
        return FakeResponse(201, {"data": {"id": orq_id}})

    def get(self, url, headers=None, params=None, timeout=None):
        self.offer_lists.append({"url": url, "params": params})
        route = self._routes.get((params or {}).get("offer_request_id"))
        offers = self.offers_by_route.get(route, [])
        return FakeResponse(200, {"data": offers, "meta": {"limit": params.get("limit"), "after": None}})


@pytest.fixture
def fake_duffel(monkeypatch):
    fake = FakeDuffel()
    monkeypatch.setattr(duffel.requests, "post", fake.post)
    monkeypatch.setattr(duffel.requests, "get", fake.get)
    return fake


# =====================================================================
# SECTION: SIGNED WEBHOOK HELPERS
# =====================================================================

def signed_headers(body: bytes, key: str = CURRENT_KEY, url=None, issued_at=None):
    return {
        "Upstash-Signature": sign_body(body, key, url=url, issued_at=issued_at),
        "Content-Type": "application/json",
    }


def webhook_body(job_id: str) -> bytes:
    return json.dumps({"job_id": job_id}).encode("utf-8")


ONE_WAY = {
    "origin": "LHR",
    "destination": "JFK",
    "departureDate": "2025-07-15",
    "passengers": {"adults": 1},
    "cabinClass": "economy",
}

ROUND_TRIP = {
    "origin": "LHR",
    "destination": "JFK",
    "departureDate": "2025-07-15",
    "returnDate": "2025-07-22",
    "passengers": {"adults": 2, "children": 1, "infants": 1},
    "cabinClass": "business",
}
