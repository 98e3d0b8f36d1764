"""
Request-Context Middleware (Pure ASGI).

Pro Request:
  - request_id aus dem eingehenden X-Request-Id übernehmen oder neu erzeugen
  - request_id, method, path und Client-IP in die structlog-contextvars binden,
    damit jede Log-Zeile des Requests sie trägt
  - X-Request-Id in der Antwort setzen

Pure ASGI (nicht BaseHTTPMiddleware) wegen Python 3.11+ ExceptionGroup-Bug.
"""

from __future__ import annotations

import re
import uuid

import structlog
from starlette.types import ASGIApp, Message, Receive, Scope, Send

_HEADER = b"x-request-id"
_VALID_ID = re.compile(r"^[A-Za-z0-9._\-]{1,64}$")


def _incoming_id(scope: Scope) -> str | None:
    for name, value in scope.get("headers", []):
        if name == _HEADER:
            rid = value.decode("latin-1").strip()
            return rid if _VALID_ID.match(rid) else None
    return None


class RequestContextMiddleware:
    """Bindet Request-Metadaten an structlog und spiegelt X-Request-Id."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _incoming_id(scope) or uuid.uuid4().hex
        client = scope.get("client")
        scope.setdefault("state", {})["request_id"] = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=scope.get("method"),
            path=scope.get("path"),
            client_ip=client[0] if client else None,
        )

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((_HEADER, request_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_with_id)
        finally:
            structlog.contextvars.clear_contextvars()
