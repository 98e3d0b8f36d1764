"""
Datei: backend/app/logging_config.py

Zweck:
- Strukturiertes Logging (structlog) für alle Services
- Separate Log-Streams: app.log, audit.log (Admin-Aktionen),
  security.log (Detektionen, Lockouts, Eskalationen)
- Request-Kontext (request_id, client_ip) via contextvars in jedem Eintrag

Audit- und Security-Stream schreiben eine JSON-Zeile pro Ereignis, damit
ein Log-Shipper sie ohne Parser-Regeln übernehmen kann.

Sicherheit:
- Automatisches Maskieren sensibler Felder (Passwörter, Tokens, Hashes)
- Log-Rotation
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Any, Dict

import structlog

from app.timeutil import utc_now_iso


# Sensible Felder, die nie geloggt werden sollen
SENSITIVE_FIELDS = {
    'password',
    'token',
    'secret',
    'api_key',
    'authorization',
    'cookie',
    'password_hash',
}

_MASK = '***FILTERED***'
_MAX_BYTES = 10 * 1024 * 1024

AUDIT_LOGGER = 'audit'
SECURITY_LOGGER = 'security'

# Threat-Severities auf Log-Level
_SEVERITY_LEVELS = {
    'LOW': logging.INFO,
    'INFO': logging.INFO,
    'MEDIUM': logging.WARNING,
    'WARNING': logging.WARNING,
    'HIGH': logging.ERROR,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}


def filter_sensitive_data(event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Maskiert sensible Daten (auch in verschachtelten dicts)."""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if any(sensitive in str(key).lower() for sensitive in SENSITIVE_FIELDS):
            event_dict[key] = _MASK
        elif isinstance(value, dict):
            event_dict[key] = filter_sensitive_data(dict(value))
    return event_dict


def _mask_processor(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    return filter_sensitive_data(event_dict)


def _rotating(path: Path, backups: int) -> logging.handlers.RotatingFileHandler:
    return logging.handlers.RotatingFileHandler(
        path, maxBytes=_MAX_BYTES, backupCount=backups, encoding='utf-8'
    )


def _attach_stream(name: str, path: Path, backups: int = 50) -> logging.Logger:
    """Eigener File-Stream ohne Weitergabe an Root; idempotent pro Datei."""
    stream = logging.getLogger(name)
    stream.setLevel(logging.INFO)
    stream.propagate = False
    target = os.path.abspath(path)
    if not any(getattr(h, 'baseFilename', None) == target for h in stream.handlers):
        handler = _rotating(path, backups)
        handler.setFormatter(logging.Formatter('%(message)s'))
        stream.addHandler(handler)
    return stream


def setup_logging(
    log_level: str = "INFO",
    log_dir: Path | str = "logs",
    enable_json: bool = False
) -> None:
    """
    Konfiguriert das Logging-System.

    Args:
        log_level: Log-Level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Verzeichnis für Log-Dateien
        enable_json: Falls True, JSON-Ausgabe (für SIEM/Log-Shipper)
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout), _rotating(log_dir / "app.log", 10)],
    )

    renderer = (
        structlog.processors.JSONRenderer() if enable_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _mask_processor,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _attach_stream(AUDIT_LOGGER, log_dir / "audit.log")
    _attach_stream(SECURITY_LOGGER, log_dir / "security.log")


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def _record(stream: str, **fields: Any) -> str:
    ctx = structlog.contextvars.get_contextvars()
    record = {
        "ts": utc_now_iso(),
        "stream": stream,
        "request_id": ctx.get("request_id"),
        **fields,
    }
    return json.dumps(record, default=str, ensure_ascii=False, sort_keys=True)


def audit_log(action: str, user_id: str, details: Dict[str, Any] | None = None) -> None:
    """
    Schreibt einen Audit-Log-Eintrag (wer hat was administriert).

    Args:
        action: Durchgeführte Aktion, z.B. "THREAT_RULE_UPDATE"
        user_id: Handelnder Benutzer
        details: Zusätzliche Details (werden gefiltert)
    """
    logging.getLogger(AUDIT_LOGGER).info(
        _record("audit", action=action, user=user_id,
                details=filter_sensitive_data(dict(details or {})))
    )


def security_log(
    event: str,
    severity: str,
    user_id: str | None = None,
    ip: str | None = None,
    details: Dict[str, Any] | None = None
) -> None:
    """
    Schreibt einen Security-Log-Eintrag.

    `severity` akzeptiert Log-Level (INFO..CRITICAL) und Threat-Severities
    (LOW..CRITICAL); unbekannte Werte landen auf WARNING.
    """
    sev = severity.upper()
    logging.getLogger(SECURITY_LOGGER).log(
        _SEVERITY_LEVELS.get(sev, logging.WARNING),
        _record("security", event=event, severity=sev, user=user_id, ip=ip,
                details=filter_sensitive_data(dict(details or {}))),
    )
