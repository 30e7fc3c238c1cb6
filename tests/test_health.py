import pytest
import httpx
from marketplace.main import app

@pytest.mark.asyncio
async def test_health():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        r = await ac.get("/v1/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_payments_webhook_reports_active():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        r = await ac.get("/v1/webhooks/payments")
        assert r.status_code == 200
        assert r.json() == {"service": "listings-api:payments-webhook", "status": "active", "version": "2.0.0"}
