import logging

import pytest

from dailycup.api.deps import get_rate_limiter
from dailycup.audit import AuditTrail, audit_trail
from dailycup.auth import Principal, decode_token, issue_token, principal_from_claims
from dailycup.errors import AuthError, RateLimitError, best_effort
from dailycup.main import app
from dailycup.rate_limit import MemoryRateStore, RateLimiter
from dailycup.utils import now_utc
from tests.factories import auth, make_settings, order_payload


class TestAuditTrail:
    def test_detached_entries_persist(self, db):
        audit_trail.record_detached("WEBHOOK_VERIFICATION_FAILED", actor="webhook:xendit", meta={"ip": "10.0.0.1"})
        [entry] = audit_trail.read(db, now_utc().date())
        assert entry.level == "security"
        assert entry.actor == "webhook:xendit"

    def test_record_follows_caller_transaction(self, db):
        audit_trail.record(db, "ORDER_UPDATE", actor="admin:1", order_ref="ORD-1")
        db.rollback()
        assert audit_trail.read(db, now_utc().date()) == []

        audit_trail.record(db, "ORDER_UPDATE", actor="admin:1", order_ref="ORD-1")
        db.commit()
        assert len(audit_trail.read(db, now_utc().date())) == 1

    def test_read_filters(self, db):
        trail = AuditTrail()
        trail.record(db, "ORDER_CREATE", actor="guest")
        trail.record(db, "ORDER_UPDATE", actor="admin:1")
        trail.record(db, "ORDER_UPDATE", actor="courier:4")
        db.commit()
        today = now_utc().date()
        assert [e.actor for e in trail.read(db, today, action="ORDER_UPDATE")] == ["admin:1", "courier:4"]
        assert [e.action for e in trail.read(db, today, actor="guest")] == ["ORDER_CREATE"]

    def test_unknown_level(self, db):
        with pytest.raises(ValueError):
            audit_trail.record(db, "X", level="debug")

    def test_admin_endpoint(self, client, settings, admin_headers):
        audit_trail.record_detached("TOTAL_MISMATCH", actor="guest", meta={"claimed": 1})
        r = client.get("/audit", headers=admin_headers)
        assert r.status_code == 200
        [entry] = r.json()
        assert entry["action"] == "TOTAL_MISMATCH"
        assert entry["meta"] == {"claimed": 1}

        assert client.get("/audit?action=ORDER_CREATE", headers=admin_headers).json() == []
        assert client.get("/audit", headers=auth(settings, "customer", user_id=2)).status_code == 403
        assert client.get("/audit").status_code == 401


class TestRateLimiter:
    def test_sliding_window(self, tmp_path):
        now = [1000.0]
        limiter = RateLimiter(MemoryRateStore(), make_settings(tmp_path, RATE_LIMIT_ORDER="2/60"),
                              clock=lambda: now[0])
        limiter.hit("order", "guest")
        limiter.hit("order", "guest")
        with pytest.raises(RateLimitError) as exc:
            limiter.hit("order", "guest")
        assert exc.value.details["retry_after_seconds"] == 60

        limiter.hit("order", "someone-else")
        now[0] += 61
        limiter.hit("order", "guest")

    def test_order_endpoint_returns_429(self, client, tmp_path, rate_store):
        limited = make_settings(tmp_path, RATE_LIMIT_ORDER="1/60")
        app.dependency_overrides[get_rate_limiter] = lambda: RateLimiter(rate_store, limited)

        assert client.post("/orders", json=order_payload()).status_code == 200
        r = client.post("/orders", json=order_payload())
        assert r.status_code == 429
        assert r.headers["Retry-After"] == "60"
        assert r.json()["success"] is False


class TestAuth:
    def test_token_round_trip(self, settings):
        token = issue_token(settings, user_id=None, role="courier", courier_id=7)
        principal = principal_from_claims(decode_token(token, settings))
        assert principal == Principal(user_id=None, role="courier", courier_id=7)
        assert principal.actor == "courier:7"

    @pytest.mark.parametrize("claims", [
        {"sub": "1", "role": "superuser"},
        {"sub": "abc", "role": "customer"},
        {"sub": "", "role": "courier"},
    ])
    def test_bad_claims(self, claims):
        with pytest.raises(AuthError):
            principal_from_claims(claims)

    def test_foreign_signature(self, client, tmp_path):
        other = make_settings(tmp_path, JWT_SECRET_KEY="someone-else")
        r = client.get("/orders/ORD-1-0000", headers=auth(other, "admin", user_id=1))
        assert r.status_code == 401


class TestApp:
    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}

    def test_metrics(self, client):
        client.post("/orders", json=order_payload())
        r = client.get("/metrics")
        assert r.status_code == 200
        assert "dailycup_orders_created_total" in r.text

    def test_best_effort_swallows_and_logs(self, caplog):
        def broken():
            raise RuntimeError("smtp down")

        with caplog.at_level(logging.ERROR):
            best_effort("email", broken)
        assert "Side effect email failed" in caplog.text
