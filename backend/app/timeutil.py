"""
Zeitstempel-Helfer.

Alle Zeitstempel werden als ISO-8601 in UTC mit Millisekunden gespeichert
(`2026-10-19T08:15:00.123+00:00`). Gleiches Format überall heisst:
String-Vergleiche in SQL entsprechen Zeitvergleichen, und der Hash eines
Security-Log-Eintrags ist reproduzierbar.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def utc_now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """ISO-String -> aware datetime (UTC). Ungültige Werte -> None."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso_minutes_ago(minutes: float, now: Optional[datetime] = None) -> str:
    return to_iso((now or utc_now()) - timedelta(minutes=minutes))
