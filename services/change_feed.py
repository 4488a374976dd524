"""
services/change_feed.py

Job row change feed.

Every write to a search_jobs row publishes one JobUpdate. Subscribers register
a sink (any object with put(), usually a queue.Queue) for one job id and get
each update for that row pushed into it.

Two feeds:
  ChangeFeed          in-process fan-out, used when worker and coordinator
                      share a process (local runs, tests)
  PostgresChangeFeed  NOTIFY on publish, LISTEN thread on receive, so the
                      webhook worker and the coordinator can live in
                      different processes. Notifications carry only the job id
                      (pg_notify payloads cap at 8000 bytes); the listener
                      reloads the row image before delivering.

Select with CHANGE_FEED=memory|postgres.
"""

import json
import logging
import select
import threading
import time
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text

from config import CHANGE_FEED, CHANGE_FEED_CHANNEL
from schemas.search import JobUpdate

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, feed: "ChangeFeed", job_id: str, sink: Any):
        self.feed = feed
        self.job_id = job_id
        self.sink = sink
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.feed._unsubscribe(self)


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._subs: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, job_id: str, sink: Any) -> Subscription:
        sub = Subscription(self, job_id, sink)
        with self._lock:
            self._subs[job_id].append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(sub.job_id)
            if not subs:
                return
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subs.pop(sub.job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subs.get(job_id, []))

    def publish(self, update: JobUpdate) -> None:
        self._deliver(update)

    def _deliver(self, update: JobUpdate) -> None:
        with self._lock:
            subs = list(self._subs.get(update.id, []))
        for sub in subs:
            sub.sink.put(update)

    def close(self) -> None:
        with self._lock:
            self._subs.clear()


class PostgresChangeFeed(ChangeFeed):
    def __init__(
        self,
        engine,
        loader: Callable[[str], Optional[JobUpdate]],
        channel: str = CHANGE_FEED_CHANNEL,
    ):
        super().__init__()
        self._engine = engine
        self._loader = loader
        self._channel = channel
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._listen_forever, daemon=True, name="change-feed-listener")
        self._thread.start()

    def publish(self, update: JobUpdate) -> None:
        payload = json.dumps({"id": update.id, "status": update.status.value})
        with self._engine.begin() as conn:
            conn.execute(text("SELECT pg_notify(:channel, :payload)"), {"channel": self._channel, "payload": payload})

    def close(self) -> None:
        self._stop.set()
        super().close()

    def _listen_forever(self) -> None:
        while not self._stop.is_set():
            try:
                self._listen()
            except Exception as e:
                logger.exception(f"[change_feed] listener crashed, reconnecting: {e}")
                time.sleep(2)

    def _listen(self) -> None:
        import psycopg2.extensions

        raw = self._engine.raw_connection()
        try:
            conn = raw.driver_connection
            conn.set_isolation_level(psycopg2.extensions.ISOLATION_LEVEL_AUTOCOMMIT)
            with conn.cursor() as cur:
                cur.execute(f"LISTEN {self._channel}")
            logger.info(f"[change_feed] listening channel={self._channel}")

            while not self._stop.is_set():
                if select.select([conn], [], [], 1.0) == ([], [], []):
                    continue
                conn.poll()
                while conn.notifies:
                    note = conn.notifies.pop(0)
                    self._handle_notification(note.payload)
        finally:
            # Autocommit is set on the DBAPI connection; keep it out of the pool
            raw.invalidate()

    def _handle_notification(self, payload: str) -> None:
        try:
            job_id = json.loads(payload)["id"]
        except (ValueError, KeyError, TypeError):
            logger.warning(f"[change_feed] bad notification payload={payload[:200]}")
            return

        # Nobody local cares, skip the reload
        if not self.subscriber_count(job_id):
            return

        update = self._loader(job_id)
        if update is not None:
            self._deliver(update)


# =====================================================================
# SECTION: PROCESS-WIDE FEED
# =====================================================================

_FEED: Optional[ChangeFeed] = None
_FEED_LOCK = threading.Lock()


def get_change_feed() -> ChangeFeed:
    global _FEED
    with _FEED_LOCK:
        if _FEED is None:
            _FEED = _build_feed()
        return _FEED


def set_change_feed(feed: Optional[ChangeFeed]) -> None:
    global _FEED
    with _FEED_LOCK:
        _FEED = feed


def _build_feed() -> ChangeFeed:
    if CHANGE_FEED == "postgres":
        from db import engine
        from services.job_store import load_update

        feed = PostgresChangeFeed(engine, loader=load_update)
        feed.start()
        return feed
    return ChangeFeed()
