"""Job store transitions: forward only, guarded, published on the feed."""

import queue
from datetime import datetime, timedelta

import pytest

from conftest import ONE_WAY
from db import SessionLocal
from models import SearchJobRow
from schemas.search import CompletedOutcome, FailedOutcome, JobStatus, PendingOutcome, SearchParams
from services import job_store


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def job(db):
    return job_store.create_job(db, SearchParams(**ONE_WAY), owner="user_1")


class TestCreate:
    def test_new_job_is_pending_without_payload(self, db, job):
        row = job_store.get_job(db, job.id)
        assert row.status == "pending"
        assert row.results is None
        assert row.error is None
        assert row.owner == "user_1"
        assert row.search_params["origin"] == "LHR"
        assert row.search_params["passengers"]["adults"] == 1

    def test_outcome_is_pending(self, job):
        assert isinstance(job_store.load_update(job.id).outcome(), PendingOutcome)


class TestTransitions:
    def test_claim_only_once(self, db, job):
        assert job_store.claim_job(db, job.id, stale_after_seconds=120) is True
        assert job_store.claim_job(db, job.id, stale_after_seconds=120) is False
        assert job_store.get_job(db, job.id).status == "processing"

    def test_complete_requires_processing(self, db, job):
        assert job_store.complete_job(db, job.id, [{"id": "off_1"}], {}) is False
        assert job_store.get_job(db, job.id).status == "pending"

    def test_completed_is_terminal(self, db, job):
        job_store.claim_job(db, job.id, stale_after_seconds=120)
        assert job_store.complete_job(db, job.id, [{"id": "off_1"}], {"limit": 15}) is True

        assert job_store.fail_job(db, job.id, "late failure") is False
        assert job_store.complete_job(db, job.id, [{"id": "off_2"}], {}) is False
        assert job_store.claim_job(db, job.id, stale_after_seconds=0) is False

        update = job_store.load_update(job.id)
        assert update.status == JobStatus.COMPLETED
        assert update.error is None
        outcome = update.outcome()
        assert isinstance(outcome, CompletedOutcome)
        assert [o["id"] for o in outcome.offers] == ["off_1"]
        assert outcome.meta == {"limit": 15}

    def test_failed_is_terminal(self, db, job):
        job_store.claim_job(db, job.id, stale_after_seconds=120)
        assert job_store.fail_job(db, job.id, "route not served") is True
        assert job_store.complete_job(db, job.id, [{"id": "off_1"}], {}) is False

        update = job_store.load_update(job.id)
        assert update.results is None
        outcome = update.outcome()
        assert isinstance(outcome, FailedOutcome)
        assert outcome.message == "route not served"

    def test_updated_at_moves_on_transition(self, db, job):
        before = job_store.get_job(db, job.id).updated_at
        job_store.claim_job(db, job.id, stale_after_seconds=120)
        assert job_store.get_job(db, job.id).updated_at >= before

    def test_stale_processing_can_be_reclaimed(self, db, job):
        job_store.claim_job(db, job.id, stale_after_seconds=120)
        db.query(SearchJobRow).filter(SearchJobRow.id == job.id).update(
            {"updated_at": datetime.utcnow() - timedelta(minutes=10)}
        )
        db.commit()

        assert job_store.claim_job(db, job.id, stale_after_seconds=120) is True
        assert job_store.get_job(db, job.id).status == "processing"


class TestFeedPublishing:
    def test_each_transition_publishes_row_image(self, db, job, feed):
        sink = queue.Queue()
        feed.subscribe(job.id, sink)

        job_store.claim_job(db, job.id, stale_after_seconds=120)
        job_store.complete_job(db, job.id, [{"id": "off_1"}], {})

        first = sink.get_nowait()
        second = sink.get_nowait()
        assert first.status == JobStatus.PROCESSING
        assert second.status == JobStatus.COMPLETED
        assert second.results["offers"] == [{"id": "off_1"}]
        assert sink.empty()

    def test_skipped_transition_publishes_nothing(self, db, job, feed):
        sink = queue.Queue()
        feed.subscribe(job.id, sink)

        job_store.complete_job(db, job.id, [], {})
        assert sink.empty()

    def test_closed_subscription_stops_delivery(self, db, job, feed):
        sink = queue.Queue()
        sub = feed.subscribe(job.id, sink)
        sub.close()

        job_store.claim_job(db, job.id, stale_after_seconds=120)
        assert sink.empty()
        assert feed.subscriber_count(job.id) == 0
