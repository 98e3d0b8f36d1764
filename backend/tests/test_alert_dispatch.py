"""
Alert-Zustellung: Kanalwahl, Webhook mit Retry/Backoff, Statusführung.

Webhook-Aufrufe laufen über httpx.MockTransport, Wartezeiten über eine
aufgezeichnete sleep-Funktion.
"""
from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app import config
from app.alert_dedup import AlertDeduplicator
from app.alert_dispatch import AlertDispatcher, build_payload, webhook_enabled
from app.alert_engine import AlertEngine
from app.db import Base
from app.login_attempts import LoginAttemptData, record_login_attempt
from app.models import SecurityAlert
from app.rule_engine import RuleEngine
from app.timeutil import utc_now_iso

pytestmark = pytest.mark.alerts

WEBHOOK_URL = "https://hooks.example.test/security"


@pytest.fixture
def webhook_on(monkeypatch):
    monkeypatch.setattr(config, "SECURITY_ALERTS_ENABLED", True)
    monkeypatch.setattr(config, "SECURITY_ALERT_WEBHOOK_URL", WEBHOOK_URL)
    monkeypatch.setattr(config, "SECURITY_ALERT_AUTH_TOKEN", "s3cret")
    monkeypatch.setattr(config, "ALERT_RETRY_MAX_ATTEMPTS", 3)
    monkeypatch.setattr(config, "ALERT_RETRY_BACKOFF", 2.0)
    monkeypatch.setattr(config, "ALERT_RETRY_MAX_BACKOFF_SECONDS", 30.0)


class Recorder:
    """MockTransport-Handler mit festen Antwortcodes (letzter wiederholt sich)."""

    def __init__(self, *codes: int):
        self.codes = list(codes)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        code = self.codes.pop(0) if len(self.codes) > 1 else self.codes[0]
        return httpx.Response(code, json={"ok": code < 300})


def _dispatcher(handler, sleeps: list) -> AlertDispatcher:
    return AlertDispatcher(transport=httpx.MockTransport(handler), sleep=sleeps.append)


class TestChannels:

    def test_webhook_disabled_by_default(self):
        assert webhook_enabled() is False
        d = AlertDispatcher()
        assert d.channels_for("CRITICAL") == ["log"]
        assert d.channels_for("LOW") == ["log"]

    def test_high_uses_webhook_when_enabled(self, webhook_on):
        d = AlertDispatcher()
        assert d.channels_for("HIGH") == ["log", "webhook"]
        assert d.channels_for("MEDIUM") == ["log"]
        assert d.channels_for("UNKNOWN") == ["log"]


class TestDispatch:

    def test_log_only_succeeds(self, db, make_alert):
        alert = make_alert(severity="MEDIUM")
        res = AlertDispatcher().dispatch(db, alert)
        assert res.success
        assert alert.status == "DISPATCHED"
        assert alert.dispatch_attempts == 1
        assert alert.dispatched_at is not None
        assert alert.dispatch_error is None

    def test_webhook_request(self, db, make_alert, webhook_on):
        rec = Recorder(200)
        sleeps: list = []
        alert = make_alert(severity="HIGH", type="BRUTE_FORCE_ATTEMPT", user_id="u1")
        res = _dispatcher(rec, sleeps).dispatch(db, alert)

        assert res.success
        assert res.dispatched_channels == ["log", "webhook"]
        assert alert.dispatched_channels == ["log", "webhook"]
        req = rec.requests[0]
        assert str(req.url) == WEBHOOK_URL
        assert req.headers["X-Alert-ID"] == alert.id
        assert req.headers["X-Alert-Type"] == "BRUTE_FORCE_ATTEMPT"
        assert req.headers["X-Alert-Severity"] == "HIGH"
        assert req.headers["Authorization"] == "Bearer s3cret"
        body = json.loads(req.content)
        assert body["alert_id"] == alert.id
        assert body["user_id"] == "u1"
        assert sleeps == []

    def test_retry_then_success(self, db, make_alert, webhook_on):
        rec = Recorder(503, 200)
        sleeps: list = []
        alert = make_alert(severity="CRITICAL")
        res = _dispatcher(rec, sleeps).dispatch(db, alert)
        assert res.success
        assert len(rec.requests) == 2
        assert sleeps == [2.0]

    def test_exhausted_retries_mark_failed(self, db, make_alert, webhook_on):
        rec = Recorder(500)
        sleeps: list = []
        alert = make_alert(severity="CRITICAL")
        res = _dispatcher(rec, sleeps).dispatch(db, alert)

        assert not res.success
        assert len(rec.requests) == 3
        assert sleeps == [2.0, 4.0]
        assert res.failed_channels == ["webhook"]
        assert alert.status == "FAILED"
        assert alert.dispatched_channels == ["log"]
        assert "HTTP 500" in alert.dispatch_error
        assert alert.dispatched_at is None

    def test_backoff_is_capped(self, db, make_alert, webhook_on, monkeypatch):
        monkeypatch.setattr(config, "ALERT_RETRY_MAX_ATTEMPTS", 5)
        monkeypatch.setattr(config, "ALERT_RETRY_BACKOFF", 10.0)
        sleeps: list = []
        _dispatcher(Recorder(500), sleeps).dispatch(db, make_alert(severity="HIGH"))
        assert sleeps == [10.0, 30.0, 30.0, 30.0]

    def test_transport_error(self, db, make_alert, webhook_on):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        sleeps: list = []
        alert = make_alert(severity="HIGH")
        res = _dispatcher(refuse, sleeps).dispatch(db, alert)
        assert not res.success
        assert "connection refused" in res.errors["webhook"]

    def test_payload(self, make_alert):
        alert = make_alert(severity="LOW", tags=["x"])
        p = build_payload(alert)
        assert p["severity"] == "LOW"
        assert p["tags"] == ["x"]
        assert p["occurrence_count"] == 1


class TestRetryFailed:

    def test_retries_recent_failures(self, db, make_alert, webhook_on):
        failing = _dispatcher(Recorder(500), [])
        a = make_alert(severity="HIGH")
        b = make_alert(severity="CRITICAL")
        failing.dispatch(db, a)
        failing.dispatch(db, b)
        assert a.status == b.status == "FAILED"

        healthy = _dispatcher(Recorder(200), [])
        out = healthy.retry_failed_dispatches(db)
        assert out == {"processed": 2, "succeeded": 2, "failed": 0}
        assert a.status == "DISPATCHED"
        assert a.dispatch_attempts == 2

    def test_attempt_limit_respected(self, db, make_alert, webhook_on):
        failing = _dispatcher(Recorder(500), [])
        a = make_alert(severity="HIGH")
        for _ in range(3):
            failing.dispatch(db, a)
        assert a.dispatch_attempts == 3
        out = _dispatcher(Recorder(200), []).retry_failed_dispatches(db)
        assert out["processed"] == 0


class TestBackgroundDelivery:

    @pytest.fixture
    def file_db(self, tmp_path):
        # eigene Datei-DB: Worker und Test brauchen getrennte Verbindungen
        engine = create_engine(
            f"sqlite:///{(tmp_path / 'dispatch.db').as_posix()}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(engine)
        yield sessionmaker(bind=engine, autoflush=False)
        engine.dispose()

    @pytest.fixture
    def pool(self):
        executor = ThreadPoolExecutor(max_workers=1)
        yield executor
        executor.shutdown(wait=True)

    def test_log_only_stays_synchronous(self, db, make_alert, pool):
        d = AlertDispatcher(executor=pool)
        alert = make_alert(severity="CRITICAL")
        assert d.submit(db, alert) is None
        assert alert.status == "DISPATCHED"
        assert alert.dispatch_attempts == 1

    def test_login_returns_before_webhook_delivery(self, file_db, pool, webhook_on, monkeypatch):
        monkeypatch.setattr(config, "SUSPICIOUS_LOGIN_RISK_SCORE", 10)
        release = threading.Event()
        hook_calls: list[httpx.Request] = []

        def slow_hook(request):
            hook_calls.append(request)
            release.wait(10)
            return httpx.Response(200)

        d = AlertDispatcher(
            transport=httpx.MockTransport(slow_hook),
            sleep=lambda _s: None,
            executor=pool,
            session_factory=file_db,
        )
        alerts = AlertEngine(AlertDeduplicator(), d)

        with file_db() as db:
            try:
                record_login_attempt(
                    db,
                    LoginAttemptData(email="eve@example.com", success=False,
                                     user_agent="curl/8.4.0", ip_address="198.51.100.7"),
                    rules=RuleEngine(),
                    alerts=alerts,
                )
                db.expire_all()
                alert = (
                    db.query(SecurityAlert)
                    .filter(SecurityAlert.rule_id == "system:suspicious_login")
                    .one()
                )
                # Login ist zurück, der Webhook hängt noch
                assert alert.status == "PROCESSING"
                assert alert.dispatch_attempts == 0
            finally:
                release.set()

            assert d.drain(timeout=10)
            db.expire_all()
            alert = db.get(SecurityAlert, alert.id)
            assert alert.status == "DISPATCHED"
            assert alert.dispatched_channels == ["log", "webhook"]
            assert alert.dispatch_attempts == 1
            assert any(r.headers["X-Alert-ID"] == alert.id for r in hook_calls)

    def test_failed_background_delivery_marks_alert(self, file_db, pool, webhook_on):
        sleeps: list = []
        d = AlertDispatcher(
            transport=httpx.MockTransport(Recorder(500)),
            sleep=sleeps.append,
            executor=pool,
            session_factory=file_db,
        )
        with file_db() as db:
            alert = SecurityAlert(
                id="bg-1", type="BRUTE_FORCE_ATTEMPT", severity="HIGH", title="t",
                description="d", fingerprint="f" * 16, status="PENDING",
                occurrence_count=1, dispatch_attempts=0,
                first_seen=utc_now_iso(), last_seen=utc_now_iso(),
                created_at=utc_now_iso(), updated_at=utc_now_iso(),
            )
            db.add(alert)
            db.commit()

            future = d.submit(db, alert)
            assert future is not None
            result = future.result(timeout=10)
            assert result.success is False
            assert sleeps == [2.0, 4.0]
            db.expire_all()
            assert db.get(SecurityAlert, "bg-1").status == "FAILED"
            assert d.drain(timeout=1)
