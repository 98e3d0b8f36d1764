"""
Hash-Kette für das Security-Log.

Jeder Eintrag wird über seine eigenen Felder UND den Hash des Vorgängers
gehasht (SHA-256). Wird ein Eintrag nachträglich verändert, stimmt sein
Hash nicht mehr; wird einer gelöscht oder eingefügt, bricht die Verkettung
beim Nachfolger.

Prüfreihenfolge pro Eintrag (verify_chain_integrity):
  1. previous_hash == current_hash des Vorgängers (bzw. Anker)
  2. sequence_number == Vorgänger + 1
  3. current_hash == neu berechneter Hash

Der Anker ist der Hash, an dem der erste geprüfte Eintrag hängen muss:
None für eine Kette ab Genesis, sonst der gespeicherte Hash des Eintrags
vor dem geprüften Bereich.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from app.timeutil import utc_now_iso

HASH_ALGORITHM = "SHA256"


def canonical_json(data: Any) -> str:
    """Deterministische JSON-Darstellung (sortierte Keys, kompakt)."""
    return json.dumps(data if data is not None else {}, sort_keys=True,
                      separators=(",", ":"), ensure_ascii=False, default=str)


def calculate_hash(
    *,
    sequence_number: int,
    event_type: str,
    severity: str,
    user_id: Optional[str],
    ip_address: Optional[str],
    user_agent: Optional[str],
    session_id: Optional[str],
    metadata: Any,
    message: Optional[str],
    created_at: str,
    previous_hash: Optional[str],
) -> str:
    data_to_hash = "|".join([
        str(sequence_number),
        str(event_type),
        str(severity),
        user_id or "",
        ip_address or "",
        user_agent or "",
        session_id or "",
        canonical_json(metadata or {}),
        message or "",
        created_at,
        previous_hash or "",
    ])
    return hashlib.sha256(data_to_hash.encode("utf-8")).hexdigest()


def hash_entry(entry, previous_hash: Optional[str]) -> str:
    """Hash eines gespeicherten Eintrags (SecurityLog oder gleichförmiges Objekt)."""
    return calculate_hash(
        sequence_number=entry.sequence_number,
        event_type=entry.event_type,
        severity=entry.severity,
        user_id=entry.user_id,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        session_id=entry.session_id,
        metadata=entry.meta,
        message=entry.message,
        created_at=entry.created_at,
        previous_hash=previous_hash,
    )


def verify_log_integrity(entry, previous_hash: Optional[str]) -> bool:
    return hash_entry(entry, previous_hash) == entry.current_hash


@dataclass
class ChainVerification:
    is_valid: bool
    broken_at_index: Optional[int] = None
    broken_at_sequence: Optional[int] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "broken_at_index": self.broken_at_index,
            "broken_at_sequence": self.broken_at_sequence,
            "error": self.error,
        }


def verify_chain_integrity(entries: Sequence, anchor_hash: Optional[str] = None) -> ChainVerification:
    """Prüft eine aufsteigend sortierte Folge von Einträgen."""
    if not entries:
        return ChainVerification(is_valid=True)

    for i, entry in enumerate(entries):
        expected_prev = anchor_hash if i == 0 else entries[i - 1].current_hash

        if entry.previous_hash != expected_prev:
            if i == 0 and anchor_hash is None:
                error = "First log entry should not have a previous hash"
            else:
                error = f"Previous hash mismatch at sequence {entry.sequence_number}"
            return ChainVerification(False, i, entry.sequence_number, error)

        if i > 0:
            expected_seq = entries[i - 1].sequence_number + 1
            if entry.sequence_number != expected_seq:
                return ChainVerification(
                    False, i, entry.sequence_number,
                    f"Sequence gap detected: expected {expected_seq}, got {entry.sequence_number}",
                )

        if not verify_log_integrity(entry, expected_prev):
            return ChainVerification(
                False, i, entry.sequence_number,
                f"Hash mismatch at sequence {entry.sequence_number}",
            )

    return ChainVerification(is_valid=True)


def find_chain_breakpoint(entries: Sequence, start_index: int = 0,
                          anchor_hash: Optional[str] = None) -> int:
    """Index des ersten Eintrags mit falscher Verkettung oder falschem Hash, sonst -1."""
    for i in range(start_index, len(entries)):
        entry = entries[i]
        expected_prev = anchor_hash if i == 0 else entries[i - 1].current_hash
        if entry.previous_hash != expected_prev:
            return i
        if not verify_log_integrity(entry, expected_prev):
            return i
    return -1


def generate_merkle_root(hashes: Sequence[str]) -> str:
    """Merkle-Root über eine Liste von Hex-Hashes.

    Ungerade Ebenen: das letzte Element wird mit sich selbst kombiniert.
    """
    if not hashes:
        return ""
    level = list(hashes)
    while len(level) > 1:
        nxt: list[str] = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            nxt.append(hashlib.sha256((left + right).encode("utf-8")).hexdigest())
        level = nxt
    return level[0]


def create_checkpoint(entries: Sequence) -> Optional[dict]:
    """Checkpoint über die übergebenen Einträge (aufsteigend sortiert)."""
    if not entries:
        return None
    last = entries[-1]
    return {
        "sequence_number": last.sequence_number,
        "hash": last.current_hash,
        "merkle_root": generate_merkle_root([e.current_hash for e in entries]),
        "timestamp": utc_now_iso(),
        "count": len(entries),
    }
