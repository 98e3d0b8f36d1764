"""
Alert-Deduplizierung über Fingerprints.

PROBLEM:
  Ein Brute-Force-Angriff erzeugt pro Fehlversuch denselben Regel-Treffer.
  Ohne Deduplizierung gibt es 50 identische Alerts in 5 Minuten.

LÖSUNG:
  Fingerprint = Hash über (Typ, User, IP, Regel, Session, Zeitfenster).
  Innerhalb eines Fensters erzeugt derselbe Fingerprint keinen neuen Alert,
  sondern erhöht nur den Occurrence-Zähler des bestehenden.

SPEICHER:
  Prozesslokaler TTL-Store. Bei mehreren Worker-Prozessen dedupliziert jeder
  für sich; die DB-Abfrage auf security_alert.fingerprint fängt den Rest.

THREAD-SAFETY:
  Lock-basiert.
"""
from __future__ import annotations

import hashlib
import threading
import time
from typing import Any, Callable, Iterable, Optional

from app import config
from app.logging_config import get_logger

logger = get_logger(__name__)

_CORE_KEYS = ("type", "user_id", "ip_address", "rule_id", "session_id")


def generate_fingerprint(
    alert_type: str,
    *,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    rule_id: Optional[str] = None,
    session_id: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
    now_ms: Optional[int] = None,
    window_ms: Optional[int] = None,
) -> str:
    """16 Hex-Zeichen, stabil innerhalb eines Zeitfensters."""
    window = window_ms or config.ALERT_DEDUP_WINDOW_MS
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    parts = [
        str(alert_type),
        user_id or "anonymous",
        ip_address or "unknown",
        rule_id or "manual",
        session_id or "no-session",
        str(now // window),
    ]
    for key in sorted(k for k in (extra or {}) if k not in _CORE_KEYS):
        parts.append(f"{key}:{extra[key]}")
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


def generate_composite_fingerprint(parts: Iterable[Any]) -> str:
    """Fingerprint über beliebige Bestandteile (ohne Zeitfenster)."""
    raw = "|".join(str(p) for p in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class _DedupEntry:
    __slots__ = ("info", "first_seen", "last_seen", "count", "expires_at")

    def __init__(self, info: dict, now: float, expires_at: float):
        self.info = info
        self.first_seen = now
        self.last_seen = now
        self.count = 1
        self.expires_at = expires_at

    def as_dict(self) -> dict:
        return {
            **self.info,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "count": self.count,
        }


class AlertDeduplicator:
    """Thread-safe TTL-Store für Alert-Fingerprints."""

    def __init__(self, window_ms: Optional[int] = None, clock: Callable[[], float] = time.time):
        self._store: dict[str, _DedupEntry] = {}
        self._lock = threading.Lock()
        self._window_ms = window_ms
        self._clock = clock
        self._registered = 0
        self._duplicates = 0

    @property
    def ttl_seconds(self) -> float:
        return (self._window_ms or config.ALERT_DEDUP_WINDOW_MS) / 1000.0

    def _live(self, fingerprint: str, now: float) -> Optional[_DedupEntry]:
        entry = self._store.get(fingerprint)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._store[fingerprint]
            return None
        return entry

    def check_duplicate(self, fingerprint: str) -> bool:
        """True, wenn der Fingerprint aktiv ist. Zählt das Duplikat mit."""
        now = self._clock()
        with self._lock:
            entry = self._live(fingerprint, now)
            if entry is None:
                return False
            entry.count += 1
            entry.last_seen = now
            self._duplicates += 1
            return True

    def register_alert(self, fingerprint: str, info: dict, ttl_seconds: Optional[float] = None) -> None:
        now = self._clock()
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        with self._lock:
            self._store[fingerprint] = _DedupEntry(dict(info), now, now + ttl)
            self._registered += 1

    def get_alert_info(self, fingerprint: str) -> Optional[dict]:
        with self._lock:
            entry = self._live(fingerprint, self._clock())
            return entry.as_dict() if entry else None

    def update_occurrence(self, fingerprint: str, additional: Optional[dict] = None) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._live(fingerprint, now)
            if entry is None:
                return False
            entry.count += 1
            entry.last_seen = now
            if additional:
                entry.info.update(additional)
            return True

    def remove_alert(self, fingerprint: str) -> bool:
        with self._lock:
            return self._store.pop(fingerprint, None) is not None

    def get_active_alerts(self, pattern: str = "") -> list[dict]:
        now = self._clock()
        with self._lock:
            fps = [fp for fp in list(self._store) if pattern in fp]
            return [
                {"fingerprint": fp, "info": entry.as_dict()}
                for fp in fps
                if (entry := self._live(fp, now)) is not None
            ]

    def batch_check_duplicates(self, fingerprints: Iterable[str]) -> dict[str, bool]:
        """Nur Lesen, ohne Zähler zu erhöhen."""
        now = self._clock()
        with self._lock:
            return {fp: self._live(fp, now) is not None for fp in fingerprints}

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [fp for fp, e in self._store.items() if e.expires_at <= now]
            for fp in expired:
                del self._store[fp]
        if expired:
            logger.debug(f"Dedup-Cleanup: {len(expired)} abgelaufene Fingerprints entfernt")
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._store.clear()
            self._registered = 0
            self._duplicates = 0

    def get_metrics(self) -> dict:
        self.cleanup()
        with self._lock:
            total = self._registered + self._duplicates
            return {
                "registered": self._registered,
                "duplicates": self._duplicates,
                "deduplication_rate": (self._duplicates / total * 100) if total else 0.0,
                "active_alerts": len(self._store),
            }


# ── Globale Instanz ──────────────────────────────────────────────────
dedup = AlertDeduplicator()
