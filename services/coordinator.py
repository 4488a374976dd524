"""
services/coordinator.py

Fan-out coordinator for multi-airport searches.

search(params_list) starts one job per params set in parallel (the only
blocking step, waiting on dispatch acknowledgements), subscribes to each job's
row updates, and returns a SearchStream. Results arrive purely through the
change feed; nothing is polled after the initial snapshot read.

Stream events (pull with next() or iterate):
  SearchUpdate    a job completed with offers; merged list keyed by offer id
  SearchDone      every job reached a terminal status, or the deadline hit
                  with partial results (timed_out=True)
  SearchTimedOut  deadline hit with nothing merged

After SearchDone/SearchTimedOut the subscriptions are closed and any later
updates are dropped. Jobs whose publish failed stay in the total, so they can
only end the search through the deadline.
"""

import logging
import queue
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from config import DISPATCH_WORKERS, search_timeout_seconds
from providers.qstash import DispatchError
from schemas.search import (
    JobFailure,
    JobStatus,
    JobUpdate,
    SearchDone,
    SearchEvent,
    SearchParams,
    SearchTimedOut,
    SearchUpdate,
)
from services.change_feed import ChangeFeed, Subscription, get_change_feed

logger = logging.getLogger(__name__)

SEARCH_FAILED_MESSAGE = "Search failed"
SEARCH_NOT_STARTED_MESSAGE = "Search could not be started"
SEARCH_TIMED_OUT_MESSAGE = "Search timed out"


class LocalSearchGateway:
    """Initiates jobs and reads row images through this process's database session."""

    def __init__(self, owner: Optional[str] = None):
        self.owner = owner

    def initiate(self, params: SearchParams) -> str:
        from services.dispatch_service import initiate_search
        return initiate_search(params, owner=self.owner)

    def snapshot(self, job_id: str) -> Optional[JobUpdate]:
        from services.job_store import load_update
        return load_update(job_id)


class _JobSlot:
    def __init__(self, params: SearchParams):
        self.params = params
        self.job_id: Optional[str] = None
        self.started = False
        self.terminal = False
        self.subscription: Optional[Subscription] = None

    def failure(self, message: str) -> JobFailure:
        return JobFailure(
            job_id=self.job_id,
            origin=self.params.origin,
            destination=self.params.destination,
            message=message,
        )


class SearchStream:
    def __init__(self, slots: List[_JobSlot], sink: "queue.Queue[JobUpdate]", deadline: float):
        self._slots = slots
        self._by_job_id = {s.job_id: s for s in slots if s.started}
        self._sink = sink
        self._deadline = deadline
        self._merged: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._failures: List[JobFailure] = []
        self._finished = False

    @property
    def total_jobs(self) -> int:
        return len(self._slots)

    @property
    def completed_jobs(self) -> int:
        return sum(1 for s in self._slots if s.terminal)

    @property
    def offers(self) -> List[Dict[str, Any]]:
        return list(self._merged.values())

    def __iter__(self):
        return self

    def __next__(self) -> SearchEvent:
        if self._finished:
            raise StopIteration

        while True:
            if self.completed_jobs == self.total_jobs:
                return self._finish_done()

            remaining = self._deadline - time.monotonic()
            if remaining <= 0:
                return self._finish_timeout()

            try:
                update = self._sink.get(timeout=remaining)
            except queue.Empty:
                continue

            event = self._apply(update)
            if event is not None:
                return event

    def close(self) -> None:
        self._finished = True
        for slot in self._slots:
            if slot.subscription:
                slot.subscription.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _apply(self, update: JobUpdate) -> Optional[SearchUpdate]:
        slot = self._by_job_id.get(update.id)
        if slot is None or slot.terminal:
            return None

        if update.status == JobStatus.FAILED:
            slot.terminal = True
            self._failures.append(slot.failure(SEARCH_FAILED_MESSAGE))
            logger.info(f"[coordinator] job_id={update.id} failed error={(update.error or '')[:300]}")
            return None

        if update.status != JobStatus.COMPLETED:
            return None

        slot.terminal = True
        outcome = update.outcome()
        added = 0
        for offer in outcome.offers:
            offer_id = offer.get("id")
            if offer_id and offer_id not in self._merged:
                self._merged[offer_id] = offer
                added += 1
        logger.info(
            f"[coordinator] job_id={update.id} completed offers={len(outcome.offers)} "
            f"new={added} merged={len(self._merged)} done={self.completed_jobs}/{self.total_jobs}"
        )

        if not outcome.offers:
            return None
        return SearchUpdate(
            offers=self.offers,
            completed_jobs=self.completed_jobs,
            total_jobs=self.total_jobs,
        )

    def _finish_done(self) -> SearchDone:
        self.close()
        return SearchDone(
            offers=self.offers,
            failures=list(self._failures),
            completed_jobs=self.completed_jobs,
            total_jobs=self.total_jobs,
        )

    def _finish_timeout(self) -> SearchEvent:
        self.close()
        failures = list(self._failures)
        for slot in self._slots:
            if not slot.started:
                failures.append(slot.failure(SEARCH_NOT_STARTED_MESSAGE))
            elif not slot.terminal:
                failures.append(slot.failure(SEARCH_TIMED_OUT_MESSAGE))

        if not self._merged:
            logger.warning(f"[coordinator] timed out with no results jobs={self.total_jobs}")
            return SearchTimedOut(failures=failures, total_jobs=self.total_jobs)

        logger.warning(
            f"[coordinator] timed out with partial results merged={len(self._merged)} "
            f"done={self.completed_jobs}/{self.total_jobs}"
        )
        return SearchDone(
            offers=self.offers,
            failures=failures,
            completed_jobs=self.completed_jobs,
            total_jobs=self.total_jobs,
            timed_out=True,
        )


class SearchCoordinator:
    def __init__(
        self,
        gateway: Optional[Any] = None,
        feed: Optional[ChangeFeed] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.gateway = gateway or LocalSearchGateway()
        self.feed = feed
        self.timeout_seconds = timeout_seconds

    def search(self, params_list: List[SearchParams]) -> SearchStream:
        if not params_list:
            raise ValueError("search needs at least one params set")

        feed = self.feed or get_change_feed()
        timeout = self.timeout_seconds if self.timeout_seconds is not None else search_timeout_seconds()
        deadline = time.monotonic() + timeout
        sink: "queue.Queue[JobUpdate]" = queue.Queue()

        slots = [_JobSlot(p) for p in params_list]
        workers = max(1, min(DISPATCH_WORKERS, len(slots)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._start, slot, feed, sink) for slot in slots]
            for future in futures:
                future.result()

        started = sum(1 for s in slots if s.started)
        logger.info(f"[coordinator] dispatched {started}/{len(slots)} jobs timeout={timeout}s")
        return SearchStream(slots, sink, deadline)

    def _start(self, slot: _JobSlot, feed: ChangeFeed, sink: "queue.Queue[JobUpdate]") -> None:
        try:
            slot.job_id = self.gateway.initiate(slot.params)
        except DispatchError as e:
            slot.job_id = e.job_id
            logger.error(
                f"[coordinator] dispatch failed {slot.params.origin}->{slot.params.destination} job_id={e.job_id}: {e}"
            )
            return
        except Exception as e:
            logger.exception(
                f"[coordinator] could not start {slot.params.origin}->{slot.params.destination}: {e}"
            )
            return

        slot.started = True
        slot.subscription = feed.subscribe(slot.job_id, sink)

        # Catch updates that landed between dispatch and subscribe
        snapshot = self.gateway.snapshot(slot.job_id)
        if snapshot is not None:
            sink.put(snapshot)


def run_search(coordinator: SearchCoordinator, params_list: List[SearchParams]) -> SearchEvent:
    """Drain a search to its terminal event."""
    last: Optional[SearchEvent] = None
    with coordinator.search(params_list) as stream:
        for event in stream:
            last = event
    return last
