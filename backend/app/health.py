"""
Datei: backend/app/health.py

Zweck:
- Health-Check-Daten für Monitoring (Liveness/Readiness)
- Detaillierte System- und Datenbank-Informationen
- Zustand der Security-Log-Kette (Kopf der Kette, Anzahl Einträge)
"""

from __future__ import annotations

import os
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

import psutil
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import SecurityLog

logger = get_logger(__name__)


class HealthStatus(BaseModel):
    """Health-Status-Modell."""

    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: datetime
    version: str
    uptime_seconds: float
    checks: Dict[str, Any]


class DetailedHealthStatus(HealthStatus):
    """Erweiterte Health-Informationen."""

    system: Dict[str, Any]
    database: Dict[str, Any]
    resources: Dict[str, Any]


# Startup-Zeit für Uptime-Berechnung
_STARTUP_TIME = datetime.now(timezone.utc)


def _version() -> str:
    return os.getenv("APP_VERSION", "1.0.0")


def check_database_connection(engine: Engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Datenbankverbindung fehlgeschlagen: {e}")
        return False


def get_database_info(db: Session, engine: Engine) -> dict:
    head = db.execute(
        select(SecurityLog.sequence_number, SecurityLog.created_at)
        .order_by(SecurityLog.sequence_number.desc())
        .limit(1)
    ).first()
    return {
        "type": engine.dialect.name,
        "driver": engine.driver,
        "url": str(engine.url).split("@")[-1],  # ohne Credentials
        "security_log_entries": db.execute(select(func.count()).select_from(SecurityLog)).scalar_one(),
        "chain_head_sequence": head[0] if head else None,
        "chain_head_at": head[1] if head else None,
    }


def get_basic_health() -> HealthStatus:
    """Schnell, für Load Balancer / Liveness-Checks."""
    now = datetime.now(timezone.utc)
    return HealthStatus(
        status="healthy",
        timestamp=now,
        version=_version(),
        uptime_seconds=(now - _STARTUP_TIME).total_seconds(),
        checks={"api": "ok"},
    )


def _resource_check(percent_used: float, warn: float, crit: float) -> str:
    if percent_used > crit:
        return "critical"
    if percent_used > warn:
        return "warning"
    return "ok"


def get_detailed_health(db: Session, engine: Engine) -> DetailedHealthStatus:
    """
    Gibt detaillierte Health-Informationen zurück.
    Für Monitoring und Debugging.

    Status-Ableitung:
      - Datenbank nicht erreichbar oder Ressource "critical" -> unhealthy
      - Ressource "warning" -> degraded
    """
    now = datetime.now(timezone.utc)
    checks = {"api": "ok", "database": "unknown", "disk": "unknown", "memory": "unknown"}

    checks["database"] = "ok" if check_database_connection(engine) else "failed"

    try:
        data_dir = Path("data")
        disk = psutil.disk_usage(str(data_dir if data_dir.exists() else Path.cwd()))
        checks["disk"] = _resource_check(disk.percent, 90, 95)
    except OSError as e:
        logger.warning(f"Disk-Check fehlgeschlagen: {e}")

    memory = psutil.virtual_memory()
    checks["memory"] = _resource_check(memory.percent, 85, 95)

    if checks["database"] == "failed" or "critical" in checks.values():
        overall = "unhealthy"
    elif "warning" in checks.values():
        overall = "degraded"
    else:
        overall = "healthy"

    system_info = {
        "platform": platform.system(),
        "python_version": sys.version.split()[0],
        "hostname": platform.node(),
        "cpu_count": psutil.cpu_count(),
        "cpu_percent": psutil.cpu_percent(interval=None),
    }

    if checks["database"] == "ok":
        db_info = get_database_info(db, engine)
    else:
        db_info = {"type": engine.dialect.name, "error": "unreachable"}

    resources_info = {
        "memory": {
            "total_mb": memory.total / (1024 * 1024),
            "available_mb": memory.available / (1024 * 1024),
            "used_percent": memory.percent,
        },
        "process_rss_mb": psutil.Process().memory_info().rss / (1024 * 1024),
    }

    return DetailedHealthStatus(
        status=overall,
        timestamp=now,
        version=_version(),
        uptime_seconds=(now - _STARTUP_TIME).total_seconds(),
        checks=checks,
        system=system_info,
        database=db_info,
        resources=resources_info,
    )


def is_ready(engine: Engine) -> bool:
    """Für Readiness-Checks: Datenbank muss erreichbar sein."""
    return check_database_connection(engine)
