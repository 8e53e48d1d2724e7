import pytest
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from agrirent.middleware import SecurityHeadersMiddleware


async def _homepage(request: Request):
    return PlainTextResponse("OK")


async def _get(is_production: bool):
    test_app = Starlette(routes=[Route("/", _homepage)])
    test_app.add_middleware(SecurityHeadersMiddleware, is_production=is_production)

    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        return await ac.get("/")


@pytest.mark.asyncio
async def test_security_headers_middleware():
    """SecurityHeadersMiddleware adds all security headers to responses."""
    response = await _get(is_production=True)

    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Referrer-Policy"] == "no-referrer"
    assert response.headers["Cache-Control"] == "no-store"
    assert "max-age=31536000" in response.headers["Strict-Transport-Security"]


@pytest.mark.asyncio
async def test_security_headers_no_hsts_in_dev():
    """HSTS is NOT added when is_production=False."""
    response = await _get(is_production=False)

    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "Strict-Transport-Security" not in response.headers
