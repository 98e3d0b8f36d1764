"""
Zustellung von Security-Alerts.

Kanäle nach Schweregrad:
  LOW, MEDIUM     -> log
  HIGH, CRITICAL  -> log, webhook

"log" schreibt in den Security-Logger und gelingt immer. "webhook" ist nur
aktiv, wenn SECURITY_ALERTS_ENABLED=1 und SECURITY_ALERT_WEBHOOK_URL gesetzt
sind; Zustellung per httpx mit Retry und exponentiellem Backoff.

Aus dem Request heraus (`submit`) laufen Webhook-Zustellungen im
Worker-Pool des Dispatchers mit eigener DB-Session; der Login wartet nicht
auf Retries. Reine Log-Zustellung bleibt synchron.

Ergebnis landet am Alert: status (PROCESSING -> DISPATCHED|FAILED),
dispatch_attempts, last_dispatch_at, dispatched_channels, dispatch_error.
"""
from __future__ import annotations

import json
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from app import config
from app.db import SessionLocal
from app.enums import AlertStatus, ThreatSeverity
from app.logging_config import get_logger, security_log
from app.models import SecurityAlert
from app.timeutil import to_iso, utc_now, utc_now_iso

logger = get_logger(__name__)

CHANNEL_LOG = "log"
CHANNEL_WEBHOOK = "webhook"

CHANNELS_BY_SEVERITY: dict[str, list[str]] = {
    ThreatSeverity.LOW.value: [CHANNEL_LOG],
    ThreatSeverity.MEDIUM.value: [CHANNEL_LOG],
    ThreatSeverity.HIGH.value: [CHANNEL_LOG, CHANNEL_WEBHOOK],
    ThreatSeverity.CRITICAL.value: [CHANNEL_LOG, CHANNEL_WEBHOOK],
}

RETRY_BATCH_SIZE = 50


class WebhookError(Exception):
    pass


@dataclass
class DispatchResult:
    success: bool = False
    dispatched_channels: list[str] = field(default_factory=list)
    failed_channels: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "dispatched_channels": list(self.dispatched_channels),
            "failed_channels": list(self.failed_channels),
            "errors": dict(self.errors),
        }


def build_payload(alert: SecurityAlert) -> dict:
    return {
        "alert_id": alert.id,
        "type": alert.type,
        "severity": alert.severity,
        "title": alert.title,
        "description": alert.description,
        "user_id": alert.user_id,
        "user_email": alert.user_email,
        "ip_address": alert.ip_address,
        "timestamp": alert.created_at,
        "score": alert.score,
        "evidence": alert.evidence,
        "correlation_id": alert.correlation_id,
        "is_correlated": bool(alert.is_correlated),
        "occurrence_count": alert.occurrence_count,
        "first_seen": alert.first_seen,
        "last_seen": alert.last_seen,
        "tags": alert.tags or [],
    }


def webhook_enabled() -> bool:
    return bool(config.SECURITY_ALERTS_ENABLED and config.SECURITY_ALERT_WEBHOOK_URL)


class AlertDispatcher:
    """Verteilt Alerts auf die Kanäle ihres Schweregrads.

    `transport` und `sleep` sind für Tests austauschbar
    (httpx.MockTransport, kein echtes Warten). Ohne `executor` stellt auch
    `submit` synchron zu.
    """

    def __init__(
        self,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        executor: Optional[Executor] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self._transport = transport
        self._sleep = sleep
        self._executor = executor
        self._session_factory = session_factory or SessionLocal
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    def channels_for(self, severity: str) -> list[str]:
        channels = CHANNELS_BY_SEVERITY.get(severity, [CHANNEL_LOG])
        if not webhook_enabled():
            channels = [c for c in channels if c != CHANNEL_WEBHOOK]
        return list(channels)

    # --- Kanäle -----------------------------------------------------------

    def _send_log(self, alert: SecurityAlert) -> None:
        security_log(
            f"ALERT_{alert.type}",
            alert.severity,
            user_id=alert.user_id or alert.user_email,
            ip=alert.ip_address,
            details={"alert_id": alert.id, "title": alert.title, "score": alert.score},
        )

    def _post_webhook(self, alert: SecurityAlert) -> None:
        headers = {
            "Content-Type": "application/json",
            "X-Alert-ID": alert.id,
            "X-Alert-Type": alert.type,
            "X-Alert-Severity": alert.severity,
        }
        if config.SECURITY_ALERT_AUTH_TOKEN:
            headers["Authorization"] = f"Bearer {config.SECURITY_ALERT_AUTH_TOKEN}"
        body = json.dumps(build_payload(alert), default=str)
        with httpx.Client(timeout=config.ALERT_WEBHOOK_TIMEOUT_SECONDS, transport=self._transport) as client:
            r = client.post(config.SECURITY_ALERT_WEBHOOK_URL, content=body, headers=headers)
        if not 200 <= r.status_code < 300:
            raise WebhookError(f"Webhook returned HTTP {r.status_code}")

    def _send_webhook(self, alert: SecurityAlert) -> None:
        """Retry mit exponentiellem Backoff; letzte Exception wird weitergereicht."""
        attempts = max(1, config.ALERT_RETRY_MAX_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                self._post_webhook(alert)
                return
            except (httpx.HTTPError, WebhookError) as e:
                if attempt >= attempts:
                    raise
                delay = min(config.ALERT_RETRY_BACKOFF ** attempt, config.ALERT_RETRY_MAX_BACKOFF_SECONDS)
                logger.warning(
                    f"Webhook-Zustellung für Alert {alert.id} fehlgeschlagen "
                    f"(Versuch {attempt}/{attempts}): {e}. Neuer Versuch in {delay:.1f}s"
                )
                self._sleep(delay)

    def _send(self, alert: SecurityAlert, channel: str) -> None:
        if channel == CHANNEL_LOG:
            self._send_log(alert)
        elif channel == CHANNEL_WEBHOOK:
            self._send_webhook(alert)
        else:
            raise WebhookError(f"Unknown channel: {channel}")

    # --- Dispatch ---------------------------------------------------------

    def dispatch(self, db: Session, alert: SecurityAlert) -> DispatchResult:
        result = DispatchResult()
        channels = self.channels_for(alert.severity)

        alert.status = AlertStatus.PROCESSING.value
        db.commit()

        for channel in channels:
            try:
                self._send(alert, channel)
                result.dispatched_channels.append(channel)
            except (httpx.HTTPError, WebhookError) as e:
                result.failed_channels.append(channel)
                result.errors[channel] = str(e)
                logger.error(f"Alert {alert.id} konnte nicht über {channel} zugestellt werden: {e}")

        result.success = bool(result.dispatched_channels) and not result.failed_channels
        now = utc_now_iso()
        alert.status = AlertStatus.DISPATCHED.value if result.success else AlertStatus.FAILED.value
        alert.dispatch_attempts = (alert.dispatch_attempts or 0) + 1
        alert.last_dispatch_at = now
        alert.dispatched_channels = result.dispatched_channels
        alert.dispatch_error = "; ".join(f"{k}: {v}" for k, v in result.errors.items()) or None
        if result.success:
            alert.dispatched_at = now
        alert.updated_at = now
        db.commit()

        logger.info(
            "alert_dispatch_completed",
            alert_id=alert.id,
            severity=alert.severity,
            success=result.success,
            channels=result.dispatched_channels,
            failed_channels=result.failed_channels,
        )
        return result

    # --- Hintergrund-Zustellung -------------------------------------------

    def submit(self, db: Session, alert: SecurityAlert) -> Optional[Future]:
        """Zustellung aus einem Request heraus.

        Mit Webhook-Kanal und Executor: Alert auf PROCESSING setzen, Zustellung
        im Worker einreihen und sofort zurückkehren. Sonst synchron über
        `dispatch`. Liefert das Future der Hintergrund-Zustellung oder None.
        """
        if self._executor is None or CHANNEL_WEBHOOK not in self.channels_for(alert.severity):
            self.dispatch(db, alert)
            return None

        alert.status = AlertStatus.PROCESSING.value
        alert.updated_at = utc_now_iso()
        db.commit()

        future = self._executor.submit(self._dispatch_detached, alert.id)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        logger.debug("alert_dispatch_queued", alert_id=alert.id, severity=alert.severity)
        return future

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _dispatch_detached(self, alert_id: str) -> Optional[DispatchResult]:
        try:
            with self._session_factory() as db:
                alert = db.get(SecurityAlert, alert_id)
                if alert is None:
                    logger.warning(f"Alert {alert_id} vor der Zustellung verschwunden")
                    return None
                return self.dispatch(db, alert)
        except Exception:
            logger.error(f"Hintergrund-Zustellung für Alert {alert_id} abgebrochen", exc_info=True)
            raise

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wartet auf eingereihte Zustellungen. True, wenn alle fertig sind."""
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def retry_failed_dispatches(self, db: Session, since: Optional[str] = None) -> dict:
        """FAILED-Alerts seit `since` (Default: letzte Stunde) erneut zustellen."""
        cutoff = since or to_iso(utc_now() - timedelta(hours=1))
        failed = (
            db.query(SecurityAlert)
            .filter(SecurityAlert.status == AlertStatus.FAILED.value)
            .filter(SecurityAlert.last_dispatch_at >= cutoff)
            .filter(SecurityAlert.dispatch_attempts < config.ALERT_RETRY_MAX_ATTEMPTS)
            .all()
        )
        rank = {s: i for i, s in enumerate(CHANNELS_BY_SEVERITY)}
        failed.sort(key=lambda a: -rank.get(a.severity, 0))
        failed = failed[:RETRY_BATCH_SIZE]

        succeeded = 0
        for alert in failed:
            if self.dispatch(db, alert).success:
                succeeded += 1
        return {"processed": len(failed), "succeeded": succeeded, "failed": len(failed) - succeeded}


dispatcher = AlertDispatcher(
    executor=ThreadPoolExecutor(
        max_workers=max(1, config.ALERT_DISPATCH_WORKERS),
        thread_name_prefix="alert-dispatch",
    ),
)
