from datetime import timedelta
import json

import httpx
import pytest
from sqlalchemy import func, select

from dailycup.db import SessionLocal
from dailycup.geocode import (
    GeocodeError, GeocodeQueue, GeocodeResult, GeocodeWorker, NominatimGeocoder, RedisThrottle, Throttle, make_throttle,
)
from dailycup.models import AdminNotification, GeocodeJob, GeocodeJobStatus, GeocodeStatus
from dailycup.utils import now_utc
from tests.factories import create_order, fresh, make_settings


class StubGeocoder:
    def __init__(self, result=None, error="No results"):
        self.result = result
        self.error = error
        self.calls = []

    def geocode(self, address):
        self.calls.append(address)
        if self.result is None:
            raise GeocodeError(self.error)
        return self.result


def job_for(db, order):
    db.expire_all()
    return db.scalar(select(GeocodeJob).where(GeocodeJob.order_id == order.id))


def worker(settings, geocoder):
    return GeocodeWorker(settings, geocoder=geocoder, throttle=Throttle(0))


class TestWorker:
    def test_success_writes_coordinates(self, settings, machine, db):
        order = create_order(machine, db)
        geocoder = StubGeocoder(GeocodeResult(lat=-6.2, lng=106.8, raw={"display_name": "Jakarta"}))

        stats = worker(settings, geocoder).run_once()
        assert stats == {"claimed": 1, "ok": 1, "failed": 0, "skipped": 0}
        assert geocoder.calls == ["Jl. Sudirman No. 1, Jakarta"]

        o = fresh(db, order)
        assert (o.delivery_lat, o.delivery_lng) == (-6.2, 106.8)
        assert o.geocode_status == GeocodeStatus.OK
        assert o.geocoded_at is not None
        assert json.loads(o.geocode_raw) == {"display_name": "Jakarta"}
        assert job_for(db, order).status == GeocodeJobStatus.DONE

        assert worker(settings, geocoder).run_once()["claimed"] == 0

    def test_repeated_failures_alert_once(self, settings, machine, db):
        order = create_order(machine, db)
        geocoder = StubGeocoder()
        w = worker(settings, geocoder)

        for _ in range(settings.GEOCODE_MAX_ATTEMPTS):
            assert w.run_once()["failed"] == 1
        assert w.run_once()["claimed"] == 0
        assert len(geocoder.calls) == settings.GEOCODE_MAX_ATTEMPTS

        o = fresh(db, order)
        assert o.geocode_status == GeocodeStatus.FAILED
        assert o.geocode_attempts == settings.GEOCODE_MAX_ATTEMPTS
        assert o.geocode_error == "No results"
        job = job_for(db, order)
        assert job.status == GeocodeJobStatus.FAILED
        assert job.next_attempt_at is None
        alerts = db.scalar(select(func.count()).select_from(AdminNotification)
                           .where(AdminNotification.kind == "geocode_failed"))
        assert alerts == 1

    def test_failure_backs_off(self, tmp_path, machine, db):
        settings = make_settings(tmp_path, GEOCODE_BACKOFF_SECONDS=30)
        order = create_order(machine, db)
        w = worker(settings, StubGeocoder())

        assert w.run_once()["failed"] == 1
        job = job_for(db, order)
        assert job.next_attempt_at > now_utc() + timedelta(seconds=20)
        assert w.run_once()["claimed"] == 0
        assert fresh(db, order).geocode_status == GeocodeStatus.PENDING

    def test_missing_address_never_calls_out(self, settings, machine, db):
        order = create_order(machine, db)
        order.delivery_address = "   "
        db.commit()
        geocoder = StubGeocoder(GeocodeResult(lat=0, lng=0, raw={}))

        assert worker(settings, geocoder).run_once()["failed"] == 1
        assert geocoder.calls == []
        assert job_for(db, order).last_error == "No delivery address"

    def test_batch_is_fifo(self, settings, machine, db):
        first = create_order(machine, db)
        second = create_order(machine, db)
        ids = GeocodeQueue(settings).due(db, 10)
        assert ids == [job_for(db, first).id, job_for(db, second).id]
        assert GeocodeQueue(settings).due(db, 1) == ids[:1]


class TestQueue:
    def test_claim_is_exclusive(self, settings, machine, db):
        order = create_order(machine, db)
        job_id = job_for(db, order).id
        queue = GeocodeQueue(settings)

        with SessionLocal.begin() as one:
            assert queue.claim(one, job_id) is True
        with SessionLocal.begin() as two:
            assert queue.claim(two, job_id) is False
        assert job_for(db, order).status == GeocodeJobStatus.PROCESSING

    def test_stale_claims_are_recovered(self, settings, machine, db):
        order = create_order(machine, db)
        job = job_for(db, order)
        job.status = GeocodeJobStatus.PROCESSING
        job.updated_at = now_utc() - timedelta(minutes=11)
        db.commit()

        with SessionLocal.begin() as s:
            assert GeocodeQueue(settings).requeue(s) == 1
        assert job_for(db, order).status == GeocodeJobStatus.PENDING

    def test_backoff_doubles(self, tmp_path):
        queue = GeocodeQueue(make_settings(tmp_path, GEOCODE_BACKOFF_SECONDS=30))
        assert [queue.backoff(n).total_seconds() for n in (1, 2, 3)] == [30, 60, 120]

    def test_manual_retry_resets_counters(self, client, admin_headers, settings, machine, db):
        order = create_order(machine, db)
        w = worker(settings, StubGeocoder())
        for _ in range(settings.GEOCODE_MAX_ATTEMPTS):
            w.run_once()

        r = client.get("/geocode/failures", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()[0]["order_number"] == order.order_number
        assert r.json()[0]["geocode_status"] == "failed"

        r = client.post(f"/orders/{order.order_number}/geocode", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["status"] == "pending"

        o = fresh(db, order)
        assert o.geocode_status == GeocodeStatus.PENDING
        assert o.geocode_attempts == 0
        job = job_for(db, order)
        assert job.attempts == 0
        assert db.scalar(select(func.count()).select_from(GeocodeJob)) == 1


class TestThrottle:
    def test_spaces_calls(self):
        now = [100.0]
        slept = []

        def sleep(seconds):
            slept.append(seconds)
            now[0] += seconds

        throttle = Throttle(1.0, clock=lambda: now[0], sleep=sleep)
        throttle.wait()
        now[0] += 0.25
        throttle.wait()
        now[0] += 5
        throttle.wait()
        assert slept == [0.75]


class SharedClock:
    """Expiring keys on a fake clock, shaped like the redis-py calls RedisThrottle makes."""

    def __init__(self):
        self.now = 0.0
        self.expiry = {}

    def sleep(self, seconds):
        self.now += seconds

    def set(self, key, value, nx=False, px=None):
        if nx and self.expiry.get(key, -1) > self.now:
            return None
        self.expiry[key] = self.now + px / 1000
        return True

    def pttl(self, key):
        if self.expiry.get(key, -1) <= self.now:
            return -2
        return int(round((self.expiry[key] - self.now) * 1000))

    def pexpire(self, key, ms):
        self.expiry[key] = self.now + ms / 1000


class TestRedisThrottle:
    def test_workers_share_one_call_per_interval(self):
        shared = SharedClock()
        one = RedisThrottle(shared, 1.0, sleep=shared.sleep)
        two = RedisThrottle(shared, 1.0, sleep=shared.sleep)

        calls = []
        for throttle in (one, two, one, two):
            throttle.wait()
            calls.append(shared.now)
        assert calls == [0.0, 1.0, 2.0, 3.0]

    def test_redis_url_selects_shared_throttle(self, tmp_path):
        shared = make_throttle(make_settings(tmp_path, REDIS_URL="redis://localhost:6379/0",
                                             GEOCODE_MIN_INTERVAL_SECONDS=1.0))
        assert isinstance(shared, RedisThrottle)
        assert isinstance(make_throttle(make_settings(tmp_path)), Throttle)


class TestNominatim:
    def _geocoder(self, settings, handler):
        return NominatimGeocoder(settings, client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_parses_first_result(self, settings):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            seen["agent"] = request.headers["user-agent"]
            return httpx.Response(200, json=[{"lat": "-6.2088", "lon": "106.8456", "display_name": "Jakarta"}])

        result = self._geocoder(settings, handler).geocode("Jl. Sudirman No. 1")
        assert (result.lat, result.lng) == (-6.2088, 106.8456)
        assert result.raw["display_name"] == "Jakarta"
        assert seen["params"]["q"] == "Jl. Sudirman No. 1"
        assert seen["params"]["format"] == "json"
        assert seen["params"]["limit"] == "1"
        assert seen["agent"] == settings.GEOCODER_USER_AGENT

    @pytest.mark.parametrize("response, message", [
        (httpx.Response(200, json=[]), "No results"),
        (httpx.Response(503, text="busy"), "Request failed"),
        (httpx.Response(200, json=[{"display_name": "Somewhere"}]), "No lat/lon in result"),
        (httpx.Response(200, text="<html>"), "Request failed"),
    ])
    def test_errors(self, settings, response, message):
        with pytest.raises(GeocodeError) as exc:
            self._geocoder(settings, lambda request: response).geocode("Nowhere")
        assert exc.value.message == message

    def test_transport_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GeocodeError) as exc:
            self._geocoder(settings, handler).geocode("Nowhere")
        assert exc.value.message == "Request failed"
