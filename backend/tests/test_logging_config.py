"""
Logging: Maskierung sensibler Felder und JSON-Zeilen im Audit-/Security-Stream.
"""
import json
import logging

import pytest
import structlog

from app.logging_config import (
    AUDIT_LOGGER,
    SECURITY_LOGGER,
    audit_log,
    filter_sensitive_data,
    security_log,
)

pytestmark = pytest.mark.security


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def capture():
    handlers = []

    def _attach(name):
        h = _Capture()
        logging.getLogger(name).addHandler(h)
        logging.getLogger(name).setLevel(logging.DEBUG)
        handlers.append((name, h))
        return h

    yield _attach
    for name, h in handlers:
        logging.getLogger(name).removeHandler(h)


def test_masks_nested_fields():
    out = filter_sensitive_data({
        "email": "a@example.com",
        "password": "hunter2",
        "headers": {"Authorization": "Bearer x", "accept": "*/*"},
        "user_password_hash": "$argon2id$...",
    })
    assert out["email"] == "a@example.com"
    assert out["password"] == "***FILTERED***"
    assert out["headers"] == {"Authorization": "***FILTERED***", "accept": "*/*"}
    assert out["user_password_hash"] == "***FILTERED***"


def test_security_log_level_and_payload(capture):
    h = capture(SECURITY_LOGGER)
    security_log("ACCOUNT_LOCKED", "HIGH", user_id="u1", ip="8.8.8.8",
                 details={"attempts": 5, "token": "abc"})
    record = h.records[-1]
    assert record.levelno == logging.ERROR
    body = json.loads(record.getMessage())
    assert body["event"] == "ACCOUNT_LOCKED"
    assert body["severity"] == "HIGH"
    assert body["ip"] == "8.8.8.8"
    assert body["details"] == {"attempts": 5, "token": "***FILTERED***"}


@pytest.mark.parametrize("severity,level", [
    ("LOW", logging.INFO),
    ("medium", logging.WARNING),
    ("CRITICAL", logging.CRITICAL),
    ("SOMETHING", logging.WARNING),
])
def test_security_severity_mapping(capture, severity, level):
    h = capture(SECURITY_LOGGER)
    security_log("X", severity)
    assert h.records[-1].levelno == level


def test_audit_log_carries_request_id(capture):
    h = capture(AUDIT_LOGGER)
    structlog.contextvars.bind_contextvars(request_id="req-42")
    try:
        audit_log("THREAT_RULE_UPDATE", "secadmin1", {"rule_id": "brute-force-detection"})
    finally:
        structlog.contextvars.clear_contextvars()
    body = json.loads(h.records[-1].getMessage())
    assert body["action"] == "THREAT_RULE_UPDATE"
    assert body["user"] == "secadmin1"
    assert body["request_id"] == "req-42"
