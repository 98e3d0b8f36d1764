from middleware.request_context import RequestContextMiddleware
from middleware.security_headers import SecurityHeadersMiddleware

__all__ = ["RequestContextMiddleware", "SecurityHeadersMiddleware"]
