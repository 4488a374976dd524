"""
HTTP surface: initiate, worker webhook, job status.

Covers the end-to-end scenarios: one-way success, round-trip vendor failure,
bad signature followed by a good delivery, duplicate delivery.
"""

import json
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError

from conftest import NEXT_KEY, ONE_WAY, ROUND_TRIP, make_offer, signed_headers, webhook_body
from db import SessionLocal
from models import SearchJobRow
from services import job_store


def _row(job_id):
    db = SessionLocal()
    try:
        return db.get(SearchJobRow, job_id)
    finally:
        db.close()


def _deliver(client, job_id, **kwargs):
    body = webhook_body(job_id)
    return client.post("/jobs/process", content=body, headers=signed_headers(body, **kwargs))


class TestInitiateSearch:
    def test_creates_pending_job_and_dispatches(self, client, fake_queue):
        res = client.post("/initiate-search", json={"searchParams": ONE_WAY})

        assert res.status_code == 202
        data = res.json()
        assert data["status"] == "pending"
        assert fake_queue.published == [data["job_id"]]

        row = _row(data["job_id"])
        assert row.status == "pending"
        assert row.owner is None

    def test_owner_taken_from_header(self, client, fake_queue):
        res = client.post("/initiate-search", json={"searchParams": ONE_WAY}, headers={"X-User-Id": "user_42"})
        assert _row(res.json()["job_id"]).owner == "user_42"

    def test_missing_params_rejected_without_job(self, client, fake_queue):
        res = client.post("/initiate-search", json={"searchParams": {"origin": "LHR"}})

        assert res.status_code == 400
        assert "error" in res.json()
        assert fake_queue.published == []
        db = SessionLocal()
        try:
            assert db.query(SearchJobRow).count() == 0
        finally:
            db.close()

    def test_invalid_iata_rejected(self, client, fake_queue):
        res = client.post("/initiate-search", json={"searchParams": {**ONE_WAY, "origin": "LONDON"}})
        assert res.status_code == 400

    def test_return_before_departure_rejected(self, client, fake_queue):
        params = {**ONE_WAY, "returnDate": "2025-07-01"}
        res = client.post("/initiate-search", json={"searchParams": params})
        assert res.status_code == 400
        assert res.json()["error"] == "Missing or invalid search parameters"

    def test_limit_above_cap_rejected(self, client, fake_queue):
        res = client.post("/initiate-search", json={"searchParams": {**ONE_WAY, "limit": 51}})

        assert res.status_code == 400
        assert res.json()["error"] == "limit must be between 1 and 50"
        assert fake_queue.published == []

    def test_limit_at_cap_accepted(self, client, fake_queue):
        res = client.post("/initiate-search", json={"searchParams": {**ONE_WAY, "limit": 50}})
        assert res.status_code == 202

    def test_limit_above_hard_ceiling_fails_validation(self, client, fake_queue):
        res = client.post("/initiate-search", json={"searchParams": {**ONE_WAY, "limit": 500}})
        assert res.status_code == 400

    def test_owner_required_when_configured(self, client, fake_queue, monkeypatch):
        import routers.search
        monkeypatch.setattr(routers.search, "require_search_owner", lambda: True)

        res = client.post("/initiate-search", json={"searchParams": ONE_WAY})
        assert res.status_code == 401
        assert res.json()["error"]

    def test_publish_failure_leaves_job_pending(self, client, fake_queue):
        fake_queue.fail = True

        res = client.post("/initiate-search", json={"searchParams": ONE_WAY})

        assert res.status_code == 502
        job_id = res.json()["job_id"]
        assert _row(job_id).status == "pending"


class TestWorkerWebhook:
    def test_scenario_one_way_completes(self, client, fake_queue, fake_duffel):
        fake_duffel.offers_by_route["LHR-JFK"] = [make_offer("off_1"), make_offer("off_2"), make_offer("off_3")]
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]

        res = _deliver(client, job_id)

        assert res.status_code == 200
        assert res.json() == {"success": True, "job_id": job_id, "status": "completed", "duplicate": False}
        row = _row(job_id)
        assert row.status == "completed"
        assert len(row.results["offers"]) == 3
        assert row.error is None

    def test_scenario_round_trip_vendor_error(self, client, fake_queue, fake_duffel):
        fake_duffel.error = (422, {"errors": [{"message": "route not served"}]})
        job_id = client.post("/initiate-search", json={"searchParams": ROUND_TRIP}).json()["job_id"]

        res = _deliver(client, job_id)

        assert res.status_code == 200
        assert res.json()["status"] == "failed"
        assert len(fake_duffel.offer_requests[0]["json"]["data"]["slices"]) == 2
        row = _row(job_id)
        assert row.status == "failed"
        assert "route not served" in row.error
        assert row.results is None

    def test_scenario_bad_signature_then_good(self, client, fake_queue, fake_duffel):
        fake_duffel.offers_by_route["LHR-JFK"] = [make_offer("off_1")]
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]

        body = webhook_body(job_id)
        wrong_key = "wrong_signing_key_0123456789abcdef0123"
        bad = client.post("/jobs/process", content=body, headers=signed_headers(body, key=wrong_key))

        assert bad.status_code == 401
        assert _row(job_id).status == "pending"
        assert fake_duffel.offer_requests == []

        good = _deliver(client, job_id)
        assert good.status_code == 200
        assert _row(job_id).status == "completed"

    def test_missing_signature_rejected(self, client, fake_queue):
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]
        res = client.post("/jobs/process", content=webhook_body(job_id), headers={"Content-Type": "application/json"})
        assert res.status_code == 401
        assert _row(job_id).status == "pending"

    def test_next_key_and_legacy_header_name(self, client, fake_queue, fake_duffel):
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]
        body = webhook_body(job_id)
        headers = signed_headers(body, key=NEXT_KEY)
        headers = {"x-qstash-signature": headers["Upstash-Signature"], "Content-Type": "application/json"}

        res = client.post("/jobs/process", content=body, headers=headers)
        assert res.status_code == 200

    def test_duplicate_delivery_is_noop(self, client, fake_queue, fake_duffel):
        fake_duffel.offers_by_route["LHR-JFK"] = [make_offer("off_1")]
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]

        first = _deliver(client, job_id)
        completed_at = _row(job_id).updated_at
        second = _deliver(client, job_id)

        assert first.json()["duplicate"] is False
        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["status"] == "completed"
        assert len(fake_duffel.offer_requests) == 1
        assert _row(job_id).updated_at == completed_at

    def test_unknown_job_fails_without_side_effects(self, client, fake_duffel):
        res = _deliver(client, "does-not-exist")
        assert res.status_code == 404
        assert fake_duffel.offer_requests == []

    def test_store_failure_asks_for_redelivery(self, client, fake_queue, fake_duffel, monkeypatch):
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]

        def broken(*args, **kwargs):
            raise OperationalError("UPDATE search_jobs", {}, Exception("database is locked"))

        monkeypatch.setattr(job_store, "complete_job", broken)
        res = _deliver(client, job_id)

        assert res.status_code == 500
        assert _row(job_id).status == "processing"

    def test_redelivery_after_store_failure_completes(self, client, fake_queue, fake_duffel, monkeypatch):
        fake_duffel.offers_by_route["LHR-JFK"] = [make_offer("off_1")]
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]
        complete_job = job_store.complete_job

        def broken(*args, **kwargs):
            raise OperationalError("UPDATE search_jobs", {}, Exception("database is locked"))

        monkeypatch.setattr(job_store, "complete_job", broken)
        assert _deliver(client, job_id).status_code == 500
        monkeypatch.setattr(job_store, "complete_job", complete_job)

        # Fresh claim: the queue is told to come back, not that the job is done
        retry = _deliver(client, job_id)
        assert retry.status_code == 503
        assert retry.headers["Retry-After"] == "120"
        assert _row(job_id).status == "processing"

        db = SessionLocal()
        try:
            db.query(SearchJobRow).filter(SearchJobRow.id == job_id).update(
                {"updated_at": datetime.utcnow() - timedelta(minutes=5)}
            )
            db.commit()
        finally:
            db.close()

        final = _deliver(client, job_id)
        assert final.status_code == 200
        assert final.json()["duplicate"] is False
        row = _row(job_id)
        assert row.status == "completed"
        assert row.results["offers"][0]["id"] == "off_1"

    def test_redelivery_after_failed_outcome_is_duplicate(self, client, fake_queue, fake_duffel):
        fake_duffel.error = (422, {"errors": [{"message": "route not served"}]})
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]

        assert _deliver(client, job_id).json()["status"] == "failed"
        again = _deliver(client, job_id)

        assert again.status_code == 200
        assert again.json() == {"success": True, "job_id": job_id, "status": "failed", "duplicate": True}

    def test_missing_job_id_in_body(self, client):
        body = json.dumps({}).encode("utf-8")
        res = client.post("/jobs/process", content=body, headers=signed_headers(body))
        assert res.status_code == 400


class TestJobStatus:
    def test_reports_outcome(self, client, fake_queue, fake_duffel):
        fake_duffel.offers_by_route["LHR-JFK"] = [make_offer("off_1")]
        job_id = client.post("/initiate-search", json={"searchParams": ONE_WAY}).json()["job_id"]

        pending = client.get(f"/jobs/{job_id}").json()
        assert pending["status"] == "pending"
        assert pending["outcome"]["kind"] == "pending"

        _deliver(client, job_id)
        done = client.get(f"/jobs/{job_id}").json()
        assert done["status"] == "completed"
        assert done["outcome"]["kind"] == "completed"
        assert done["outcome"]["offers"][0]["id"] == "off_1"

    def test_unknown_job_404(self, client):
        assert client.get("/jobs/nope").status_code == 404
