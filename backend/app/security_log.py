"""
Security-Log (append-only, hash-verkettet).

Schreibt Sicherheits-Events in die SecurityLog-Tabelle und verkettet sie
über SHA-256 (siehe app/security_hash.py).

Resilient: Fehler beim Schreiben werden geloggt, aber NIEMALS nach oben
propagiert. Ein Login darf nicht scheitern, weil das Protokoll gerade
nicht schreibbar ist.

Nebenläufigkeit: sequence_number ist UNIQUE. Zwei Schreiber, die dieselbe
Nummer ziehen, kollidieren beim Commit; der Verlierer liest den neuen
Kettenkopf und versucht es erneut (begrenzt).
"""
from __future__ import annotations

import json
import uuid
from datetime import timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.enums import LogSeverity, SecurityEventType
from app.logging_config import get_logger
from app.models import SecurityLog
from app.security_hash import (
    HASH_ALGORITHM,
    calculate_hash,
    canonical_json,
    create_checkpoint,
    verify_chain_integrity,
    verify_log_integrity,
)
from app.timeutil import to_iso, utc_now, utc_now_iso

logger = get_logger(__name__)

_MAX_APPEND_RETRIES = 5
_ANOMALY_BATCH_SIZE = 1000


def _value(v: Any) -> Any:
    return v.value if hasattr(v, "value") else v


def _normalize_metadata(metadata: Optional[dict]) -> dict:
    # Round-Trip über JSON: gespeicherter und gehashter Inhalt sind identisch
    return json.loads(canonical_json(metadata or {}))


def security_log_to_dict(entry: SecurityLog) -> dict:
    return {
        "id": entry.id,
        "sequence_number": entry.sequence_number,
        "event_type": entry.event_type,
        "severity": entry.severity,
        "user_id": entry.user_id,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "session_id": entry.session_id,
        "metadata": entry.meta or {},
        "message": entry.message,
        "created_at": entry.created_at,
        "previous_hash": entry.previous_hash,
        "current_hash": entry.current_hash,
        "hash_algorithm": entry.hash_algorithm,
    }


def _chain_head(db: Session) -> Optional[SecurityLog]:
    return db.execute(
        select(SecurityLog).order_by(SecurityLog.sequence_number.desc()).limit(1)
    ).scalar_one_or_none()


def log_security_event(
    db: Session,
    event_type: SecurityEventType | str,
    *,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    session_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    severity: LogSeverity | str = LogSeverity.INFO,
    message: Optional[str] = None,
) -> Optional[SecurityLog]:
    """Hängt ein Event an die Kette an. Gibt den Eintrag zurück oder None.

    WICHTIG: Diese Funktion darf NIEMALS eine Exception nach oben propagieren.
    """
    event_type = _value(event_type)
    severity = _value(severity) or LogSeverity.INFO.value
    try:
        meta = _normalize_metadata(metadata)
    except (TypeError, ValueError):
        logger.error(f"Security-Log: Metadaten nicht serialisierbar (event={event_type})")
        meta = {}

    for attempt in range(1, _MAX_APPEND_RETRIES + 1):
        try:
            head = _chain_head(db)
            sequence_number = head.sequence_number + 1 if head else 1
            previous_hash = head.current_hash if head else None
            created_at = utc_now_iso()

            current_hash = calculate_hash(
                sequence_number=sequence_number,
                event_type=event_type,
                severity=severity,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                session_id=session_id,
                metadata=meta,
                message=message,
                created_at=created_at,
                previous_hash=previous_hash,
            )
            entry = SecurityLog(
                id=str(uuid.uuid4()),
                sequence_number=sequence_number,
                event_type=event_type,
                severity=severity,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                session_id=session_id,
                meta=meta,
                message=message,
                created_at=created_at,
                previous_hash=previous_hash,
                current_hash=current_hash,
                hash_algorithm=HASH_ALGORITHM,
            )
            db.add(entry)
            db.commit()
            return entry
        except IntegrityError:
            db.rollback()
            logger.warning(
                "security_log_sequence_conflict",
                event_type=event_type,
                attempt=attempt,
            )
        except Exception:
            try:
                db.rollback()
            except Exception:
                logger.debug("security_log_rollback_failed", exc_info=True)
            logger.error(
                f"Security-Logging fehlgeschlagen fuer event={event_type} user={user_id}",
                exc_info=True,
            )
            return None

    logger.error(
        "security_log_append_gave_up",
        event_type=event_type,
        retries=_MAX_APPEND_RETRIES,
    )
    return None


# ---------------------------------------------------------------------------
# Abfragen
# ---------------------------------------------------------------------------

def get_security_logs(
    db: Session,
    *,
    event_type: Optional[str] = None,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: int = 100,
) -> list[SecurityLog]:
    """Gefilterte Einträge, neueste zuerst."""
    stmt = select(SecurityLog)
    if event_type:
        stmt = stmt.where(SecurityLog.event_type == _value(event_type))
    if user_id:
        stmt = stmt.where(SecurityLog.user_id == user_id)
    if ip_address:
        stmt = stmt.where(SecurityLog.ip_address == ip_address)
    if start_date:
        stmt = stmt.where(SecurityLog.created_at >= start_date)
    if end_date:
        stmt = stmt.where(SecurityLog.created_at <= end_date)
    stmt = stmt.order_by(SecurityLog.sequence_number.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def get_user_security_events(db: Session, user_id: str, limit: int = 10) -> list[SecurityLog]:
    return get_security_logs(db, user_id=user_id, limit=limit)


def get_ip_security_events(db: Session, ip_address: str, limit: int = 10) -> list[SecurityLog]:
    return get_security_logs(db, ip_address=ip_address, limit=limit)


def cleanup_old_logs(db: Session, days_to_keep: int = 90) -> int:
    """Löscht Einträge älter als `days_to_keep` Tage.

    Die verbleibende Kette bleibt prüfbar: der älteste verbliebene Eintrag
    wird über seinen gespeicherten previous_hash verankert.
    """
    cutoff = to_iso(utc_now() - timedelta(days=days_to_keep))
    rows = db.query(SecurityLog).filter(SecurityLog.created_at < cutoff)
    count = rows.count()
    if count:
        rows.delete(synchronize_session=False)
        db.commit()
    logger.info(f"Security-Log Cleanup: {count} Einträge vor {cutoff} gelöscht")
    return count


# ---------------------------------------------------------------------------
# Integrität
# ---------------------------------------------------------------------------

def _anchor_for(db: Session, first: SecurityLog) -> Optional[str]:
    """Hash, an dem `first` hängen muss.

    - Vorgänger vorhanden: dessen gespeicherter Hash
    - Vorgänger gelöscht (Cleanup): der gespeicherte previous_hash von `first`
    - Genesis (Sequenz 1): None
    """
    prev = db.execute(
        select(SecurityLog)
        .where(SecurityLog.sequence_number < first.sequence_number)
        .order_by(SecurityLog.sequence_number.desc())
        .limit(1)
    ).scalar_one_or_none()
    if prev is not None:
        return prev.current_hash
    if first.sequence_number == 1:
        return None
    return first.previous_hash


def verify_log_chain_integrity(
    db: Session,
    start_sequence: Optional[int] = None,
    end_sequence: Optional[int] = None,
) -> dict:
    stmt = select(SecurityLog)
    if start_sequence is not None:
        stmt = stmt.where(SecurityLog.sequence_number >= start_sequence)
    if end_sequence is not None:
        stmt = stmt.where(SecurityLog.sequence_number <= end_sequence)
    entries = list(db.execute(stmt.order_by(SecurityLog.sequence_number.asc())).scalars().all())

    if not entries:
        return {"is_valid": True, "total_checked": 0,
                "broken_at_sequence": None, "error": None}

    result = verify_chain_integrity(entries, anchor_hash=_anchor_for(db, entries[0]))
    if not result.is_valid:
        logger.error(
            "security_log_chain_broken",
            broken_at_sequence=result.broken_at_sequence,
            error=result.error,
        )
    return {
        "is_valid": result.is_valid,
        "total_checked": len(entries),
        "broken_at_sequence": result.broken_at_sequence,
        "error": result.error,
    }


def create_log_chain_checkpoint(db: Session, count: int = 100) -> Optional[dict]:
    """Checkpoint über die neuesten `count` Einträge, selbst als Event in der Kette."""
    newest = list(db.execute(
        select(SecurityLog).order_by(SecurityLog.sequence_number.desc()).limit(count)
    ).scalars().all())
    if not newest:
        return None
    checkpoint = create_checkpoint(list(reversed(newest)))
    log_security_event(
        db,
        SecurityEventType.SYSTEM_CHECKPOINT,
        metadata={"checkpoint": checkpoint},
        message=f"Log chain checkpoint at sequence {checkpoint['sequence_number']}",
    )
    return checkpoint


def _iter_batches(db: Session, batch_size: int) -> Iterable[list[SecurityLog]]:
    last_seq = 0
    while True:
        batch = list(db.execute(
            select(SecurityLog)
            .where(SecurityLog.sequence_number > last_seq)
            .order_by(SecurityLog.sequence_number.asc())
            .limit(batch_size)
        ).scalars().all())
        if not batch:
            return
        yield batch
        last_seq = batch[-1].sequence_number


def detect_log_anomalies(db: Session) -> dict:
    """Sucht Lücken, falsche Hashes und gebrochene Verkettungen.

    Returns:
        {missing_sequences: [int], invalid_hashes: [int], broken_chains: [int]}
    """
    missing: list[int] = []
    invalid: list[int] = []
    broken: list[int] = []
    prev: Optional[SecurityLog] = None

    for batch in _iter_batches(db, _ANOMALY_BATCH_SIZE):
        for entry in batch:
            if prev is not None:
                if entry.sequence_number > prev.sequence_number + 1:
                    missing.extend(range(prev.sequence_number + 1, entry.sequence_number))
                if entry.previous_hash != prev.current_hash:
                    broken.append(entry.sequence_number)
            if not verify_log_integrity(entry, entry.previous_hash):
                invalid.append(entry.sequence_number)
            prev = entry

    if missing or invalid or broken:
        logger.warning(
            "security_log_anomalies",
            missing=len(missing),
            invalid=len(invalid),
            broken=len(broken),
        )
    return {
        "missing_sequences": missing,
        "invalid_hashes": invalid,
        "broken_chains": broken,
    }


def export_verified_logs(
    db: Session,
    *,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    event_types: Optional[list[str]] = None,
    verify_integrity: bool = True,
) -> dict:
    """Export für Revision: Einträge aufsteigend plus Prüfergebnis.

    Geprüft wird der zusammenhängende Sequenzbereich, den die exportierten
    Einträge abdecken (auch wenn event_types dazwischen Einträge ausfiltert).
    """
    stmt = select(SecurityLog)
    if start_date:
        stmt = stmt.where(SecurityLog.created_at >= start_date)
    if end_date:
        stmt = stmt.where(SecurityLog.created_at <= end_date)
    if event_types:
        stmt = stmt.where(SecurityLog.event_type.in_([_value(t) for t in event_types]))
    entries = list(db.execute(stmt.order_by(SecurityLog.sequence_number.asc())).scalars().all())

    verification = None
    if verify_integrity:
        if entries:
            verification = verify_log_chain_integrity(
                db, entries[0].sequence_number, entries[-1].sequence_number
            )
        else:
            verification = {"is_valid": True, "total_checked": 0,
                            "broken_at_sequence": None, "error": None}

    return {
        "logs": [security_log_to_dict(e) for e in entries],
        "verification": verification,
        "exported_at": utc_now_iso(),
    }


def count_events(db: Session, event_type: str, since: str) -> int:
    return int(db.execute(
        select(func.count(SecurityLog.id))
        .where(SecurityLog.event_type == _value(event_type))
        .where(SecurityLog.created_at >= since)
    ).scalar_one())
