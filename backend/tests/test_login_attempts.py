"""
Login-Versuche: Geräteerkennung, Risiko-Score, Aufzeichnung, Sperre, Rate-Limit.

Service-Tests gegen die isolierte Test-DB. Regel- und Alert-Engine werden
pro Test frisch erzeugt und injiziert.
"""
from __future__ import annotations

import pytest

from app import config
from app.alert_dedup import AlertDeduplicator
from app.alert_dispatch import AlertDispatcher
from app.alert_engine import AlertEngine
from app.login_attempts import (
    LoginAttemptData,
    build_rule_context,
    calculate_risk_score,
    check_and_update_lockout,
    check_ip_rate_limit,
    check_multiple_failed_attempts,
    count_failed_attempts,
    get_locked_until,
    get_login_stats,
    get_recent_attempts,
    is_account_locked,
    is_bot,
    is_local_ip,
    parse_user_agent,
    record_login_attempt,
    reset_failed_attempts,
    unlock_account,
)
from app.models import SecurityAlert
from app.rule_engine import RuleEngine
from app.security_log import get_security_logs, verify_log_chain_integrity
from app.threat_rules import create_rule

pytestmark = pytest.mark.security

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
IPAD_UA = (
    "Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
SAMSUNG_UA = (
    "Mozilla/5.0 (Linux; Android 13; SM-S911B) AppleWebKit/537.36 "
    "(KHTML, like Gecko) SamsungBrowser/23.0 Chrome/115.0.0.0 Mobile Safari/537.36"
)
HEADLESS_UA = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) HeadlessChrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def rules():
    return RuleEngine()


@pytest.fixture
def alerts():
    return AlertEngine(AlertDeduplicator(), AlertDispatcher())


def _attempt(db, rules, alerts, email="alice@example.com", success=False, **kw):
    data = LoginAttemptData(email=email, success=success, **kw)
    return record_login_attempt(db, data, rules=rules, alerts=alerts)


class TestUserAgent:

    def test_desktop_chrome(self):
        d = parse_user_agent(CHROME_UA)
        assert (d.device_type, d.browser, d.os, d.is_bot) == ("desktop", "Chrome", "Windows", False)

    def test_iphone_safari(self):
        d = parse_user_agent(IPHONE_UA)
        assert (d.device_type, d.browser, d.os) == ("mobile", "Mobile Safari", "iOS")
        assert d.is_bot is False

    def test_ipad_is_tablet(self):
        assert parse_user_agent(IPAD_UA).device_type == "tablet"

    def test_samsung_internet(self):
        d = parse_user_agent(SAMSUNG_UA)
        assert (d.device_type, d.browser, d.os) == ("mobile", "Samsung Internet", "Android")

    def test_missing_is_bot(self):
        assert parse_user_agent(None).is_bot is True
        assert parse_user_agent("").is_bot is True

    @pytest.mark.parametrize("ua", [
        "curl/8.4.0",
        "python-requests/2.31.0",
        "Go-http-client/1.1",
        HEADLESS_UA,
        "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
    ])
    def test_automated_clients(self, ua):
        assert is_bot(ua)
        assert parse_user_agent(ua).is_bot is True

    def test_script_client_device(self):
        d = parse_user_agent("curl/8.4.0")
        assert d.device_type == "bot"
        assert d.browser is not None
        assert not is_bot(CHROME_UA)

    @pytest.mark.parametrize("ip,expected", [
        ("127.0.0.1", True),
        ("10.1.2.3", True),
        ("192.168.0.7", True),
        ("172.16.4.2", True),
        ("172.32.0.1", False),
        ("::1", True),
        ("fe80::1%eth0", True),
        ("fd12:3456::1", True),
        ("localhost", True),
        ("unknown", True),
        ("8.8.8.8", False),
        ("192.0.2.10", False),
        ("198.18.0.1", False),
        ("203.0.113.5", False),
        ("169.254.10.1", False),
        ("testclient", False),
        (None, False),
    ])
    def test_is_local_ip(self, ip, expected):
        assert is_local_ip(ip) is expected

    def test_benchmark_range_is_rate_limited(self, db, rules, alerts, monkeypatch):
        monkeypatch.setattr(config, "IP_RATE_LIMIT_ATTEMPTS", 2)
        for _ in range(2):
            _attempt(db, rules, alerts, user_agent=CHROME_UA, ip_address="198.18.0.1")
        assert check_ip_rate_limit(db, "198.18.0.1", alerts=alerts) is True


class TestRiskScore:

    def test_failed_without_user_agent(self, db):
        assert calculate_risk_score(db, LoginAttemptData(email="x@y.de", success=False)) == 35

    def test_clean_success(self, db):
        assert calculate_risk_score(
            db, LoginAttemptData(email="x@y.de", success=True, user_agent=CHROME_UA)
        ) == 0

    def test_failed_bot(self, db):
        assert calculate_risk_score(
            db, LoginAttemptData(email="x@y.de", success=False, user_agent="curl/8.4.0")
        ) == 45

    def test_history_raises_score(self, db, rules, alerts):
        for _ in range(3):
            _attempt(db, rules, alerts, user_agent=CHROME_UA, ip_address="203.0.113.5")
        score = calculate_risk_score(
            db, LoginAttemptData(email="alice@example.com", success=False, user_agent=CHROME_UA)
        )
        # 20 (Fehlschlag) + 30 (3 Fehlversuche, gedeckelt)
        assert score == 50


class TestRecording:

    def test_attempt_is_stored_and_logged(self, db, rules, alerts):
        a = _attempt(db, rules, alerts, user_id="alice", ip_address="203.0.113.5",
                     user_agent=CHROME_UA, failure_reason="invalid_password")
        assert a.browser == "Chrome"
        assert a.risk_score == 20
        assert a.suspicious is False
        assert a.meta["bot_detected"] is False

        logs = get_security_logs(db, event_type="LOGIN_FAILED")
        assert len(logs) == 1
        assert logs[0].meta["email"] == "alice@example.com"
        assert logs[0].meta["failure_reason"] == "invalid_password"
        assert verify_log_chain_integrity(db)["is_valid"]

    def test_bot_attempt_is_suspicious(self, db, rules, alerts):
        a = _attempt(db, rules, alerts, user_agent="curl/8.4.0")
        assert a.suspicious is True

    def test_high_risk_raises_suspicious_login_alert(self, db, rules, alerts):
        for _ in range(3):
            _attempt(db, rules, alerts, user_agent="curl/8.4.0", ip_address="203.0.113.9")
        a = _attempt(db, rules, alerts, user_agent="curl/8.4.0", ip_address="203.0.113.9")
        assert a.risk_score == 75
        types = {x.type for x in db.query(SecurityAlert).all()}
        assert "SUSPICIOUS_LOGIN" in types

    def test_rule_context_excludes_current_attempt(self, db, rules, alerts):
        _attempt(db, rules, alerts, ip_address="203.0.113.5")
        current = _attempt(db, rules, alerts, ip_address="203.0.113.5")
        data = LoginAttemptData(email="alice@example.com", success=False, ip_address="203.0.113.5")
        ctx = build_rule_context(db, data, current)
        assert len(ctx.recent_events) == 1
        assert ctx.recent_events[0].event_type == "LOGIN_FAILED"
        assert ctx.event_type == "LOGIN_FAILED"
        assert ctx.metadata["risk_score"] == current.risk_score

    def test_brute_force_rule_creates_alert(self, db, rules, alerts):
        rules.register_rule(create_rule("brute-force-detection"))
        for _ in range(5):
            _attempt(db, rules, alerts, user_agent=CHROME_UA, ip_address="203.0.113.5")
        bf = db.query(SecurityAlert).filter(SecurityAlert.type == "BRUTE_FORCE_ATTEMPT").all()
        assert len(bf) == 1
        assert bf[0].rule_id == "brute-force-detection"
        assert get_security_logs(db, event_type="THREAT_ACTION")

    def test_repeated_matches_deduplicated(self, db, rules, alerts):
        rules.register_rule(create_rule("brute-force-detection"))
        for _ in range(7):
            _attempt(db, rules, alerts, user_agent=CHROME_UA, ip_address="203.0.113.5")
        bf = db.query(SecurityAlert).filter(SecurityAlert.rule_id == "brute-force-detection").all()
        assert len(bf) == 1
        assert bf[0].occurrence_count == 3

    def test_recent_attempts(self, db, rules, alerts):
        _attempt(db, rules, alerts, email="a@x.de")
        _attempt(db, rules, alerts, email="b@x.de")
        assert len(get_recent_attempts(db)) == 2
        assert [a.email for a in get_recent_attempts(db, email="a@x.de")] == ["a@x.de"]


class TestLockout:

    def test_locks_after_max_attempts(self, db, rules, alerts, make_user):
        make_user("bob", email="bob@example.com")
        for _ in range(4):
            _attempt(db, rules, alerts, email="bob@example.com", user_id="bob", user_agent=CHROME_UA)
        assert check_and_update_lockout(db, "bob@example.com", alerts=alerts).is_locked is False

        _attempt(db, rules, alerts, email="bob@example.com", user_id="bob", user_agent=CHROME_UA)
        status = check_and_update_lockout(db, "bob@example.com", ip_address="203.0.113.5", alerts=alerts)
        assert status.is_locked is True
        assert status.failed_attempts == 5
        assert is_account_locked(db, "bob@example.com") is True
        assert get_locked_until(db, "bob@example.com") == status.locked_until

        locked = get_security_logs(db, event_type="ACCOUNT_LOCKED")
        assert locked[0].meta["failed_attempts"] == 5
        assert db.query(SecurityAlert).filter(SecurityAlert.type == "ACCOUNT_LOCKED").count() == 1

    def test_unknown_email_still_alerts(self, db, rules, alerts):
        for _ in range(5):
            _attempt(db, rules, alerts, email="ghost@example.com")
        status = check_and_update_lockout(db, "ghost@example.com", alerts=alerts)
        assert status.is_locked is True
        assert get_security_logs(db, event_type="ACCOUNT_LOCKED") == []
        assert db.query(SecurityAlert).filter(SecurityAlert.type == "ACCOUNT_LOCKED").count() == 1

    def test_expired_lock_is_cleared(self, db, make_user):
        make_user("carl", email="carl@example.com",
                  locked_until="2000-01-01T00:00:00.000+00:00", failed_login_count=5)
        assert is_account_locked(db, "carl@example.com") is False
        assert get_locked_until(db, "carl@example.com") is None

    def test_unlock(self, db, make_user):
        make_user("dora", email="dora@example.com",
                  locked_until="2999-01-01T00:00:00.000+00:00", failed_login_count=5)
        assert is_account_locked(db, "dora@example.com") is True
        assert unlock_account(db, "dora@example.com", "secadmin1") is True
        assert is_account_locked(db, "dora@example.com") is False
        unlocked = get_security_logs(db, event_type="ACCOUNT_UNLOCKED")
        assert unlocked[0].meta["unlocked_by"] == "secadmin1"
        assert unlocked[0].meta["was_locked"] is True
        assert unlock_account(db, "nobody@example.com", "secadmin1") is False

    def test_reset_failed_attempts(self, db, make_user):
        make_user("erik", email="erik@example.com", failed_login_count=3)
        assert reset_failed_attempts(db, "erik@example.com") is True
        assert reset_failed_attempts(db, "nobody@example.com") is False

    def test_count_failed_attempts(self, db, rules, alerts):
        _attempt(db, rules, alerts, email="f@x.de")
        _attempt(db, rules, alerts, email="f@x.de", success=True)
        assert count_failed_attempts(db, "f@x.de") == 1
        assert count_failed_attempts(db, "nobody@x.de") == 0

    def test_warning_threshold(self, db, alerts):
        assert check_multiple_failed_attempts(db, "g@x.de", None, 2, 3, alerts=alerts) is False
        assert check_multiple_failed_attempts(db, "g@x.de", None, 3, 2, alerts=alerts) is True
        assert db.query(SecurityAlert).filter(SecurityAlert.type == "MULTIPLE_FAILED_ATTEMPTS").count() == 1


class TestIpRateLimit:

    def test_local_addresses_exempt(self, db, alerts, monkeypatch):
        monkeypatch.setattr(config, "IP_RATE_LIMIT_ATTEMPTS", 0)
        assert check_ip_rate_limit(db, "127.0.0.1", alerts=alerts) is False
        assert check_ip_rate_limit(db, None, alerts=alerts) is False

    def test_public_ip_limited(self, db, rules, alerts, monkeypatch):
        monkeypatch.setattr(config, "IP_RATE_LIMIT_ATTEMPTS", 3)
        for i in range(2):
            _attempt(db, rules, alerts, email=f"u{i}@x.de", ip_address="8.8.4.4")
        assert check_ip_rate_limit(db, "8.8.4.4", alerts=alerts) is False
        _attempt(db, rules, alerts, email="u9@x.de", ip_address="8.8.4.4")
        assert check_ip_rate_limit(db, "8.8.4.4", alerts=alerts) is True
        bf = db.query(SecurityAlert).filter(SecurityAlert.type == "BRUTE_FORCE_ATTEMPT").one()
        assert bf.severity == "CRITICAL"
        assert bf.evidence["attempt_count"] == 3


class TestStats:

    def test_login_stats(self, db, rules, alerts):
        _attempt(db, rules, alerts, email="s@x.de", ip_address="1.1.1.1", user_agent=CHROME_UA)
        _attempt(db, rules, alerts, email="s@x.de", ip_address="2.2.2.2", success=True, user_agent=CHROME_UA)
        _attempt(db, rules, alerts, email="t@x.de", ip_address="2.2.2.2", user_agent="curl/8.4.0")
        stats = get_login_stats(db, "2000-01-01T00:00:00.000+00:00", "2999-01-01T00:00:00.000+00:00")
        assert stats["total_attempts"] == 3
        assert stats["successful_attempts"] == 1
        assert stats["failed_attempts"] == 2
        assert stats["unique_ips"] == 2
        assert stats["suspicious_attempts"] == 1

        only_s = get_login_stats(db, "2000-01-01T00:00:00.000+00:00",
                                 "2999-01-01T00:00:00.000+00:00", email="s@x.de")
        assert only_s["total_attempts"] == 2
