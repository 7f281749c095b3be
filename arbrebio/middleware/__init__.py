"""Middleware package for FastAPI application."""

from arbrebio.middleware.request_id import RequestIdMiddleware
from arbrebio.middleware.security_headers import SecurityHeadersMiddleware

__all__ = ["RequestIdMiddleware", "SecurityHeadersMiddleware"]
