# backend/app/models.py
from __future__ import annotations

"""
SQLAlchemy-Modelle (Datenbanktabellen) für das Security-Backend.

Begriffe / Zweck:
- SecurityLog   : Append-only Sicherheitsprotokoll mit Hash-Kette. Jeder
                  Eintrag enthält den Hash seines Vorgängers; Manipulationen
                  an einem Eintrag brechen die Kette ab dieser Stelle.
- LoginAttempt  : Jeder Login-Versuch (erfolgreich oder nicht) inkl.
                  Geräteinfo und Risiko-Score.
- SecurityAlert : Aus Regel-Treffern erzeugte Alerts mit Deduplizierungs-,
                  Korrelations- und Dispatch-Status.
- ThreatRule    : Persistente Konfiguration der Threat-Detection-Regeln.

Hinweis:
- Zeitstempel sind ISO-Strings (UTC, Millisekunden). Dadurch entspricht die
  lexikalische Sortierung der zeitlichen, auf SQLite wie auf PostgreSQL.
- JSON-Felder werden als TEXT gespeichert (JSONText), damit SQLite keine
  Sonderbehandlung braucht.
"""

import json
from typing import Any, Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from app.db import Base


class JSONText(TypeDecorator):
    """JSON als TEXT-Spalte (dict/list rein, dict/list raus)."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, ensure_ascii=False, default=str)

    def process_result_value(self, value: Optional[str], dialect) -> Any:
        if value is None or value == "":
            return None
        try:
            return json.loads(value)
        except ValueError:
            return None


# -----------------------------------------------------------------------------
# RBAC
# -----------------------------------------------------------------------------

class User(Base):
    """Interner Benutzer (Identität + Login-Status).

    Hinweis:
      - password_hash ist ein Argon2-Hash. Im Demo-Modus darf er leer sein,
        dann genügt die User-ID zum Login.
      - locked_until wird vom Lockout gesetzt und beim nächsten Check nach
        Ablauf automatisch zurückgesetzt.
    """

    __tablename__ = "user"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)  # stable external id
    display_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True, unique=True, index=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[str] = mapped_column(String)  # ISO timestamp (UTC)

    locked_until: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    failed_login_count: Mapped[int] = mapped_column(Integer, default=0)
    last_login_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class Role(Base):
    """Rolle (stabiler Name, z.B. 'viewer', 'analyst', 'security_admin')."""

    __tablename__ = "role"

    role_id: Mapped[str] = mapped_column(String, primary_key=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=True)


class Permission(Base):
    """Einzelrecht (String)."""

    __tablename__ = "permission"

    perm_id: Mapped[str] = mapped_column(String, primary_key=True)  # e.g. "alerts:read"
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=True)


class RolePermission(Base):
    """Many-to-many: Rollen -> Permissions."""

    __tablename__ = "role_permission"

    role_id: Mapped[str] = mapped_column(String, ForeignKey("role.role_id"), primary_key=True)
    perm_id: Mapped[str] = mapped_column(String, ForeignKey("permission.perm_id"), primary_key=True)


class UserRole(Base):
    """Rollen-Zuweisung."""

    __tablename__ = "user_role"

    user_id: Mapped[str] = mapped_column(String, ForeignKey("user.user_id"), primary_key=True)
    role_id: Mapped[str] = mapped_column(String, ForeignKey("role.role_id"), primary_key=True)

    created_at: Mapped[str] = mapped_column(String)  # ISO timestamp (UTC)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)


# -----------------------------------------------------------------------------
# Security-Log (Hash-Kette)
# -----------------------------------------------------------------------------

class SecurityLog(Base):
    """Sicherheitsprotokoll (append-only, hash-verkettet).

    sequence_number ist UNIQUE: zwei parallele Schreiber können nicht
    dieselbe Position belegen, der Verlierer bekommt einen IntegrityError
    und versucht es mit der nächsten Nummer erneut.
    """

    __tablename__ = "security_log"
    __table_args__ = (
        Index("ix_security_log_event_created", "event_type", "created_at"),
        Index("ix_security_log_user_created", "user_id", "created_at"),
        Index("ix_security_log_ip_created", "ip_address", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)  # UUID
    sequence_number: Mapped[int] = mapped_column(Integer, unique=True, index=True)

    event_type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String, default="INFO")  # INFO|WARNING|ERROR|CRITICAL

    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # "metadata" ist in DeclarativeBase reserviert -> Attribut heisst meta
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSONText, nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(String)  # ISO timestamp (UTC, ms)

    previous_hash: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    current_hash: Mapped[str] = mapped_column(String)
    hash_algorithm: Mapped[str] = mapped_column(String, default="SHA256")


# -----------------------------------------------------------------------------
# Login-Versuche
# -----------------------------------------------------------------------------

class LoginAttempt(Base):
    """Ein einzelner Login-Versuch."""

    __tablename__ = "login_attempt"
    __table_args__ = (
        Index("ix_login_attempt_email_at", "email", "attempt_at"),
        Index("ix_login_attempt_ip_at", "ip_address", "attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)  # UUID
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    email: Mapped[str] = mapped_column(String)
    ip_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, default=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Geräteinfo (aus User-Agent abgeleitet)
    device_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    browser: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    os: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    suspicious: Mapped[bool] = mapped_column(Boolean, default=False)
    risk_score: Mapped[int] = mapped_column(Integer, default=0)
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSONText, nullable=True)

    attempt_at: Mapped[str] = mapped_column(String)  # ISO timestamp (UTC, ms)


# -----------------------------------------------------------------------------
# Alerts
# -----------------------------------------------------------------------------

class SecurityAlert(Base):
    """Security-Alert mit Lebenszyklus.

    Status: PENDING -> PROCESSING -> DISPATCHED|FAILED -> ACKNOWLEDGED -> RESOLVED
            (SUPPRESSED jederzeit möglich)
    """

    __tablename__ = "security_alert"
    __table_args__ = (
        Index("ix_security_alert_created", "created_at"),
        Index("ix_security_alert_correlation", "correlation_id"),
        Index("ix_security_alert_fingerprint", "fingerprint"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)  # UUID
    type: Mapped[str] = mapped_column(String)
    severity: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    fingerprint: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="PENDING")

    # Herkunft
    rule_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    rule_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    event_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Kontext
    user_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    evidence: Mapped[Optional[dict]] = mapped_column(JSONText, nullable=True)
    context: Mapped[Optional[dict]] = mapped_column(JSONText, nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSONText, nullable=True)

    # Korrelation
    correlation_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    correlated_alerts: Mapped[Optional[list]] = mapped_column(JSONText, nullable=True)
    is_correlated: Mapped[bool] = mapped_column(Boolean, default=False)

    # Deduplizierung
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1)
    first_seen: Mapped[str] = mapped_column(String)
    last_seen: Mapped[str] = mapped_column(String)

    # Dispatch
    dispatch_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_dispatch_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    dispatched_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    dispatched_channels: Mapped[Optional[list]] = mapped_column(JSONText, nullable=True)
    dispatch_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Bearbeitung
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    acknowledged_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resolved_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suppressed_until: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    suppression_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[str] = mapped_column(String)
    updated_at: Mapped[str] = mapped_column(String)


# -----------------------------------------------------------------------------
# Threat-Regeln (editierbar via /api/threat-rules)
# -----------------------------------------------------------------------------


class ThreatRule(Base):
    """Konfiguration einer Threat-Detection-Regel.

    - Seed: beim Startup werden die Regeln aus rules/threat_rules.yaml
      eingefügt, sofern sie noch nicht existieren.
    - Pflege: Admins können Status, Schweregrad und config anpassen.

    Wichtiger Sicherheits-Punkt:
      - rule_id bestimmt die Implementierung (Factory). Über die API lassen
        sich nur Parameter bekannter Regeln ändern, keine neue Logik.
    """

    __tablename__ = "threat_rule"

    rule_id: Mapped[str] = mapped_column("id", String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[str] = mapped_column(String, default="1.0.0")
    status: Mapped[str] = mapped_column(String, default="INACTIVE")  # ACTIVE|INACTIVE|TESTING
    severity: Mapped[str] = mapped_column(String)
    condition_type: Mapped[str] = mapped_column(String)
    config: Mapped[Optional[dict]] = mapped_column(JSONText, nullable=True)
    tags: Mapped[Optional[list]] = mapped_column(JSONText, nullable=True)

    is_system: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[str] = mapped_column(String)
    created_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    updated_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    updated_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)


__all__ = [
    "JSONText",
    "User",
    "Role",
    "Permission",
    "RolePermission",
    "UserRole",
    "SecurityLog",
    "LoginAttempt",
    "SecurityAlert",
    "ThreatRule",
]
