"""
Alert-Deduplizierung (Fingerprints + TTL-Store).

Uhr wird injiziert, damit Ablaufzeiten ohne sleep testbar sind.
"""
from __future__ import annotations

import pytest

from app.alert_dedup import AlertDeduplicator, generate_composite_fingerprint, generate_fingerprint

pytestmark = pytest.mark.alerts

WINDOW_MS = 300_000


class FakeClock:
    def __init__(self, t: float = 1_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class TestFingerprint:

    def test_stable_within_window(self):
        a = generate_fingerprint("BRUTE_FORCE_ATTEMPT", user_id="u1", ip_address="1.2.3.4",
                                 rule_id="r", now_ms=WINDOW_MS * 10 + 1, window_ms=WINDOW_MS)
        b = generate_fingerprint("BRUTE_FORCE_ATTEMPT", user_id="u1", ip_address="1.2.3.4",
                                 rule_id="r", now_ms=WINDOW_MS * 11 - 1, window_ms=WINDOW_MS)
        assert a == b
        assert len(a) == 16
        int(a, 16)

    def test_changes_with_window(self):
        a = generate_fingerprint("X", now_ms=WINDOW_MS * 10, window_ms=WINDOW_MS)
        b = generate_fingerprint("X", now_ms=WINDOW_MS * 11, window_ms=WINDOW_MS)
        assert a != b

    def test_differs_by_core_fields(self):
        base = dict(now_ms=0, window_ms=WINDOW_MS)
        fps = {
            generate_fingerprint("X", **base),
            generate_fingerprint("Y", **base),
            generate_fingerprint("X", user_id="u1", **base),
            generate_fingerprint("X", ip_address="1.1.1.1", **base),
            generate_fingerprint("X", rule_id="r1", **base),
            generate_fingerprint("X", session_id="s1", **base),
        }
        assert len(fps) == 6

    def test_extra_fields_sorted_and_core_keys_ignored(self):
        base = dict(now_ms=0, window_ms=WINDOW_MS)
        a = generate_fingerprint("X", extra={"b": 2, "a": 1}, **base)
        b = generate_fingerprint("X", extra={"a": 1, "b": 2}, **base)
        assert a == b
        assert generate_fingerprint("X", extra={"user_id": "evil"}, **base) == generate_fingerprint("X", **base)

    def test_composite(self):
        assert generate_composite_fingerprint(["a", 1]) == generate_composite_fingerprint(["a", "1"])
        assert len(generate_composite_fingerprint([])) == 16


class TestDeduplicator:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        return AlertDeduplicator(window_ms=WINDOW_MS, clock=clock)

    def test_register_and_detect(self, store):
        assert store.check_duplicate("fp") is False
        store.register_alert("fp", {"alert_id": "a1"})
        assert store.check_duplicate("fp") is True
        info = store.get_alert_info("fp")
        assert info["alert_id"] == "a1"
        assert info["count"] == 2

    def test_expires_after_window(self, store, clock):
        store.register_alert("fp", {"alert_id": "a1"})
        clock.advance(WINDOW_MS / 1000 - 1)
        assert store.check_duplicate("fp") is True
        clock.advance(2)
        assert store.check_duplicate("fp") is False
        assert store.get_alert_info("fp") is None

    def test_custom_ttl(self, store, clock):
        store.register_alert("fp", {}, ttl_seconds=5)
        clock.advance(6)
        assert store.check_duplicate("fp") is False

    def test_update_occurrence(self, store):
        assert store.update_occurrence("fp") is False
        store.register_alert("fp", {"alert_id": "a1"})
        assert store.update_occurrence("fp", {"severity": "HIGH"}) is True
        info = store.get_alert_info("fp")
        assert info["count"] == 2
        assert info["severity"] == "HIGH"

    def test_remove(self, store):
        store.register_alert("fp", {})
        assert store.remove_alert("fp") is True
        assert store.remove_alert("fp") is False

    def test_batch_check_does_not_count(self, store):
        store.register_alert("a", {})
        assert store.batch_check_duplicates(["a", "b"]) == {"a": True, "b": False}
        assert store.get_alert_info("a")["count"] == 1
        assert store.get_metrics()["duplicates"] == 0

    def test_active_alerts_and_cleanup(self, store, clock):
        store.register_alert("abc1", {}, ttl_seconds=10)
        store.register_alert("abc2", {})
        store.register_alert("zzz", {})
        assert {a["fingerprint"] for a in store.get_active_alerts("abc")} == {"abc1", "abc2"}
        clock.advance(11)
        assert store.cleanup() == 1
        assert len(store.get_active_alerts()) == 2

    def test_metrics(self, store):
        store.register_alert("fp", {})
        store.check_duplicate("fp")
        store.check_duplicate("fp")
        store.check_duplicate("other")
        m = store.get_metrics()
        assert m["registered"] == 1
        assert m["duplicates"] == 2
        assert m["deduplication_rate"] == pytest.approx(200 / 3)
        assert m["active_alerts"] == 1

    def test_reset(self, store):
        store.register_alert("fp", {})
        store.reset()
        assert store.get_metrics() == {
            "registered": 0, "duplicates": 0, "deduplication_rate": 0.0, "active_alerts": 0,
        }
