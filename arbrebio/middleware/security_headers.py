"""Security headers middleware for the JSON API responses."""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import logging

from arbrebio.config import get_settings

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response.

    The API only ever returns JSON, so the CSP denies everything and API
    responses are never framed.
    """

    def __init__(self, app, **options):
        super().__init__(app)
        self.settings = get_settings()

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        if not self.settings.security_headers_enabled:
            return response

        if self.settings.security_csp_enabled:
            response.headers["Content-Security-Policy"] = self.settings.security_csp_directives

        response.headers["X-Frame-Options"] = self.settings.security_x_frame_options

        if self.settings.security_x_content_type_options:
            response.headers["X-Content-Type-Options"] = "nosniff"

        if self.settings.security_hsts_enabled:
            hsts_value = f"max-age={self.settings.security_hsts_max_age}"
            if self.settings.security_hsts_include_subdomains:
                hsts_value += "; includeSubDomains"
            response.headers["Strict-Transport-Security"] = hsts_value

        response.headers["Referrer-Policy"] = self.settings.security_referrer_policy

        # Responses carrying subscriber data must not be cached by proxies
        if request.url.path.startswith("/api/") and "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"

        return response
