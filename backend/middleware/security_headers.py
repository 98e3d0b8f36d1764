"""
Security Headers Middleware (Pure ASGI).

Das Backend liefert ausschliesslich JSON. Die CSP ist daher maximal
restriktiv (kein Script, kein Framing), API-Antworten werden nie gecacht.
Die Swagger-UI unter /docs braucht eigene Script-Quellen und bekommt
deshalb keine CSP.

Warum Pure ASGI (nicht BaseHTTPMiddleware):
  Starlette-Problem: >=3 gestackte BaseHTTPMiddleware-Layer
  koennen HTTPExceptions verschlucken und als 500 zurueckgeben.
"""
from __future__ import annotations

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app import config

_CSP = b"default-src 'none'; frame-ancestors 'none'; base-uri 'none'; form-action 'none'"
_DOCS_PATHS = ("/docs", "/redoc", "/openapi.json")

_COMMON_HEADERS: list[tuple[bytes, bytes]] = [
    (b"x-content-type-options", b"nosniff"),
    (b"x-frame-options", b"DENY"),
    (b"referrer-policy", b"no-referrer"),
    (b"permissions-policy", b"camera=(), microphone=(), geolocation=(), payment=(), usb=()"),
]

_NO_STORE: list[tuple[bytes, bytes]] = [
    (b"cache-control", b"no-store, no-cache, must-revalidate, private"),
    (b"pragma", b"no-cache"),
]


class SecurityHeadersMiddleware:
    """Setzt Security-Header auf jede HTTP-Antwort."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app
        self._headers = list(_COMMON_HEADERS)
        if config.SECURE_COOKIES:
            self._headers.append((b"strict-transport-security", b"max-age=31536000; includeSubDomains"))

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path: str = scope.get("path", "")
        is_docs = path.startswith(_DOCS_PATHS)
        is_api = path.startswith("/api/")

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.extend(self._headers)
                if not is_docs:
                    headers.append((b"content-security-policy", _CSP))
                if is_api:
                    headers.extend(_NO_STORE)
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_headers)
