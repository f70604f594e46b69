"""
Background geocoding of delivery addresses.

Jobs are polled FIFO and claimed with a conditional UPDATE
(pending -> processing) committed before the external call, so two workers
can never both process one job. Failed jobs return to ``pending`` after an
exponential backoff until ``GEOCODE_MAX_ATTEMPTS``. Administrators are
alerted once, when an order's attempt count crosses
``GEOCODE_NOTIFY_THRESHOLD``. Geocoding never blocks order processing.
With ``REDIS_URL`` set, the one-call-per-interval spacing is shared by
every worker process.
"""
from dataclasses import dataclass
from datetime import timedelta
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol

import httpx
import redis
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .config import Settings
from .db import SessionLocal
from .errors import ExternalServiceError
from .metrics import GEOCODE_OUTCOMES
from .models import GeocodeJob, GeocodeJobStatus, GeocodeStatus, Order
from .notify import Notifier, notifier as default_notifier
from .utils import dumps, now_utc

logger = logging.getLogger(__name__)

STALE_CLAIM_AFTER = timedelta(minutes=10)


class GeocodeError(ExternalServiceError):
    pass


@dataclass
class GeocodeResult:
    lat: float
    lng: float
    raw: dict[str, Any]


class Geocoder(Protocol):
    def geocode(self, address: str) -> GeocodeResult:
        ...


class NominatimGeocoder:
    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)

    def geocode(self, address: str) -> GeocodeResult:
        try:
            r = self.client.get(
                self.settings.GEOCODER_URL,
                params={"q": address, "format": "json", "limit": 1, "addressdetails": 1},
                headers={"User-Agent": self.settings.GEOCODER_USER_AGENT},
            )
        except httpx.HTTPError as exc:
            raise GeocodeError("Request failed", error=str(exc)) from exc
        if r.status_code != 200:
            raise GeocodeError("Request failed", status=r.status_code)
        try:
            data = r.json()
        except ValueError as exc:
            raise GeocodeError("Request failed", error="invalid JSON") from exc
        if not data:
            raise GeocodeError("No results")
        first = data[0]
        try:
            return GeocodeResult(lat=float(first["lat"]), lng=float(first["lon"]), raw=first)
        except (KeyError, TypeError, ValueError):
            raise GeocodeError("No lat/lon in result")


class CallThrottle(Protocol):
    def wait(self) -> None:
        ...


class Throttle:
    """At most one call per ``min_interval`` seconds."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._last: Optional[float] = None
        self._lock = threading.Lock()

    def wait(self) -> None:
        with self._lock:
            if self._last is not None:
                delay = self.min_interval - (self.clock() - self._last)
                if delay > 0:
                    self.sleep(delay)
            self._last = self.clock()


class RedisThrottle:
    """Process-shared spacing: each call must win a Redis key that lives ``min_interval`` seconds."""

    KEY = "throttle:geocoder"

    def __init__(self, client: redis.Redis, min_interval: float, sleep: Callable[[float], None] = time.sleep,
                 key: str = KEY):
        self.client = client
        self.min_interval = min_interval
        self.sleep = sleep
        self.key = key

    def wait(self) -> None:
        ttl_ms = max(1, int(self.min_interval * 1000))
        while not self.client.set(self.key, "1", nx=True, px=ttl_ms):
            remaining = self.client.pttl(self.key)
            # -1 means the key lost its expiry; -2 means it expired since the SET
            if remaining == -1:
                self.client.pexpire(self.key, ttl_ms)
                remaining = ttl_ms
            self.sleep(max(remaining, 1) / 1000)


def make_throttle(settings: Settings) -> CallThrottle:
    if settings.REDIS_URL and settings.GEOCODE_MIN_INTERVAL_SECONDS > 0:
        return RedisThrottle(redis.Redis.from_url(settings.REDIS_URL), settings.GEOCODE_MIN_INTERVAL_SECONDS)
    return Throttle(settings.GEOCODE_MIN_INTERVAL_SECONDS)


class GeocodeQueue:
    def __init__(self, settings: Settings):
        self.settings = settings

    def enqueue(self, db: Session, order: Order, reset: bool = False) -> GeocodeJob:
        """One job per order; re-enqueueing reuses it. ``reset`` clears attempt counters for a manual retry."""
        job = db.scalar(select(GeocodeJob).where(GeocodeJob.order_id == order.id).order_by(GeocodeJob.id.desc()))
        now = now_utc()
        if job is None:
            job = GeocodeJob(order_id=order.id, status=GeocodeJobStatus.PENDING, created_at=now, updated_at=now)
            db.add(job)
        elif job.status != GeocodeJobStatus.PROCESSING:
            job.status = GeocodeJobStatus.PENDING
            job.next_attempt_at = None
            job.updated_at = now
        if reset:
            job.attempts = 0
            job.last_error = None
            order.geocode_attempts = 0
            order.geocode_error = None
        if order.geocode_status != GeocodeStatus.OK or reset:
            order.geocode_status = GeocodeStatus.PENDING
        db.flush()
        return job

    def due(self, db: Session, limit: int) -> list[int]:
        now = now_utc()
        return list(db.scalars(
            select(GeocodeJob.id)
            .where(
                GeocodeJob.status == GeocodeJobStatus.PENDING,
                or_(GeocodeJob.next_attempt_at.is_(None), GeocodeJob.next_attempt_at <= now),
            )
            .order_by(GeocodeJob.created_at.asc(), GeocodeJob.id.asc())
            .limit(limit)
        ))

    def claim(self, db: Session, job_id: int) -> bool:
        res = db.execute(
            update(GeocodeJob)
            .where(GeocodeJob.id == job_id, GeocodeJob.status == GeocodeJobStatus.PENDING)
            .values(status=GeocodeJobStatus.PROCESSING, updated_at=now_utc())
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def requeue(self, db: Session) -> int:
        """Return due failed jobs to pending and recover claims abandoned by a dead worker."""
        now = now_utc()
        retried = db.execute(
            update(GeocodeJob)
            .where(
                GeocodeJob.status == GeocodeJobStatus.FAILED,
                GeocodeJob.attempts < self.settings.GEOCODE_MAX_ATTEMPTS,
                GeocodeJob.next_attempt_at.is_not(None),
                GeocodeJob.next_attempt_at <= now,
            )
            .values(status=GeocodeJobStatus.PENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        stale = db.execute(
            update(GeocodeJob)
            .where(GeocodeJob.status == GeocodeJobStatus.PROCESSING, GeocodeJob.updated_at < now - STALE_CLAIM_AFTER)
            .values(status=GeocodeJobStatus.PENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        if stale:
            logger.warning("Recovered %s stale geocode claims", stale)
        return retried + stale

    def backoff(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.settings.GEOCODE_BACKOFF_SECONDS * (2 ** max(attempts - 1, 0)))


class GeocodeWorker:
    def __init__(self, settings: Settings, geocoder: Optional[Geocoder] = None, session_factory=SessionLocal,
                 notifier: Optional[Notifier] = None, throttle: Optional[CallThrottle] = None):
        self.settings = settings
        self.queue = GeocodeQueue(settings)
        self.geocoder = geocoder or NominatimGeocoder(settings)
        self.session_factory = session_factory
        self.notifier = notifier or default_notifier
        self.throttle = throttle or make_throttle(settings)

    def run_once(self) -> dict[str, int]:
        stats = {"claimed": 0, "ok": 0, "failed": 0, "skipped": 0}
        with self.session_factory.begin() as db:
            self.queue.requeue(db)
        with self.session_factory() as db:
            job_ids = self.queue.due(db, self.settings.GEOCODE_BATCH_SIZE)
        for job_id in job_ids:
            with self.session_factory.begin() as db:
                claimed = self.queue.claim(db, job_id)
            if not claimed:
                stats["skipped"] += 1
                continue
            stats["claimed"] += 1
            stats["ok" if self.process(job_id) else "failed"] += 1
        if job_ids:
            logger.info("Geocode batch done: %s", stats)
        return stats

    def process(self, job_id: int) -> bool:
        with self.session_factory() as db:
            job = db.get(GeocodeJob, job_id)
            order = db.get(Order, job.order_id)
            address = (order.delivery_address or "").strip()
            order_number = order.order_number

        result: Optional[GeocodeResult] = None
        error: Optional[str] = None
        if not address:
            error = "No delivery address"
        else:
            self.throttle.wait()
            try:
                result = self.geocoder.geocode(address)
            except GeocodeError as exc:
                error = exc.message

        if result is not None:
            self._succeed(job_id, result)
            GEOCODE_OUTCOMES.labels("ok").inc()
            logger.info("Geocoded order %s -> %s,%s", order_number, result.lat, result.lng)
            return True
        self._fail(job_id, error or "Request failed")
        GEOCODE_OUTCOMES.labels("failed").inc()
        return False

    def _succeed(self, job_id: int, result: GeocodeResult) -> None:
        now = now_utc()
        with self.session_factory.begin() as db:
            job = db.get(GeocodeJob, job_id)
            order = db.get(Order, job.order_id)
            order.delivery_lat = result.lat
            order.delivery_lng = result.lng
            order.geocode_raw = dumps(result.raw)
            order.geocoded_at = now
            order.geocode_status = GeocodeStatus.OK
            order.geocode_attempts = 0
            order.geocode_error = None
            job.status = GeocodeJobStatus.DONE
            job.last_error = None
            job.next_attempt_at = None
            job.updated_at = now

    def _fail(self, job_id: int, error: str) -> None:
        now = now_utc()
        threshold = self.settings.GEOCODE_NOTIFY_THRESHOLD
        with self.session_factory.begin() as db:
            job = db.get(GeocodeJob, job_id)
            order = db.get(Order, job.order_id)
            previous = order.geocode_attempts or 0
            order.geocode_attempts = previous + 1
            order.geocode_error = error
            job.attempts = (job.attempts or 0) + 1
            job.status = GeocodeJobStatus.FAILED
            job.last_error = error
            job.updated_at = now
            if job.attempts < self.settings.GEOCODE_MAX_ATTEMPTS:
                job.next_attempt_at = now + self.queue.backoff(job.attempts)
            else:
                job.next_attempt_at = None
                order.geocode_status = GeocodeStatus.FAILED
            attempts = order.geocode_attempts
            order_id, order_number, address = order.id, order.order_number, order.delivery_address
        logger.warning("Geocode failed for order %s (attempt %s): %s", order_number, attempts, error)
        if previous < threshold <= attempts:
            self.notifier.admins(
                "geocode_failed", "Address could not be located",
                f"Order {order_number}: geocoding failed {attempts} times ({error}). Address: {address}",
                order_id,
            )

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        stop = stop or threading.Event()
        logger.info("Geocode worker started (batch=%s, poll=%ss)",
                    self.settings.GEOCODE_BATCH_SIZE, self.settings.GEOCODE_POLL_SECONDS)
        while not stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Geocode worker iteration failed")
            stop.wait(self.settings.GEOCODE_POLL_SECONDS)
        logger.info("Geocode worker stopped")
