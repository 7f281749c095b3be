import pytest
from httpx import AsyncClient, ASGITransport
from unittest.mock import AsyncMock, patch

from arbrebio.main import app
from arbrebio.database import init_db

ADMIN_KEY = "test-admin-key-123"


@pytest.mark.asyncio
async def test_security_headers_values():
    """Verify security headers have the correct values."""
    await init_db()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/health")
        assert response.status_code == 200

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"

        csp = response.headers["Content-Security-Policy"]
        assert "default-src 'none'" in csp
        assert "frame-ancestors 'none'" in csp

        hsts = response.headers["Strict-Transport-Security"]
        assert "max-age=31536000" in hsts
        assert "includeSubDomains" in hsts


@pytest.mark.asyncio
async def test_api_responses_are_not_cacheable():
    await init_db()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/newsletter/confirm", params={"token": "unknown"})

    assert response.headers["Cache-Control"] == "no-store"
    assert "Content-Security-Policy" in response.headers


@pytest.mark.asyncio
async def test_stats_keeps_its_own_cache_header():
    await init_db()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/newsletter/stats", params={"token": ADMIN_KEY})

    assert response.status_code == 200
    assert response.headers["Cache-Control"].startswith("max-age=")


@pytest.mark.asyncio
async def test_request_id_is_echoed_or_generated():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        echoed = await client.get("/", headers={"X-Request-ID": "edge-1234"})
        generated = await client.get("/", headers={"X-Request-ID": "bad id with spaces"})

    assert echoed.headers["X-Request-ID"] == "edge-1234"
    assert generated.headers["X-Request-ID"] != "bad id with spaces"
    assert len(generated.headers["X-Request-ID"]) == 36


@pytest.mark.asyncio
async def test_unhandled_errors_use_generic_envelope():
    await init_db()

    with patch(
        "arbrebio.api.newsletter.newsletter_service.confirm",
        new=AsyncMock(side_effect=RuntimeError("secret internals")),
    ):
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/newsletter/confirm", params={"token": "boom"})

    assert response.status_code == 500
    assert response.json() == {"success": False, "message": "An error occurred", "code": "INTERNAL_ERROR"}
    assert "secret internals" not in response.text
