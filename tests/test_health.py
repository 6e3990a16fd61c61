import pytest
from fastapi.testclient import TestClient

from account_security.core import health as health_module
from account_security.main import app
from account_security.utils import cache as cache_module
from account_security.utils.cache import NullCache

client = TestClient(app)


@pytest.fixture(autouse=True)
def _mock_env(monkeypatch):
    monkeypatch.setattr(health_module.settings, "environment", "test")
    yield


def _patch_checks(monkeypatch, db_status: str = "ok", cache_status: str = "ok") -> None:
    async def db():
        return {"status": db_status}

    async def cache():
        return {"status": cache_status}

    monkeypatch.setattr(health_module, "_check_db", db)
    monkeypatch.setattr(health_module, "_check_cache", cache)


def test_health_live_returns_ok() -> None:
    response = client.get("/api/v1/health/live")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "ok"
    assert "timestamp" in payload
    assert response.headers.get("x-request-id")


def test_health_ready_ok(monkeypatch) -> None:
    _patch_checks(monkeypatch)

    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "ok"
    assert payload.get("ready") is True
    assert payload.get("environment") == "test"
    assert payload.get("version") == health_module.APP_VERSION
    assert payload["checks"]["database"]["status"] == "ok"
    assert payload["checks"]["cache"]["status"] == "ok"


def test_health_ready_degraded(monkeypatch) -> None:
    _patch_checks(monkeypatch, db_status="error")

    response = client.get("/api/v1/health/ready")
    assert response.status_code == 200
    payload = response.json()["data"]
    assert payload.get("status") == "degraded"
    assert payload.get("ready") is False
    assert payload["checks"]["database"]["status"] == "error"


@pytest.mark.asyncio
async def test_disabled_cache_reports_ok(monkeypatch) -> None:
    monkeypatch.setattr(cache_module, "_cache", NullCache())
    assert await health_module._check_cache() == {"status": "ok", "mode": "disabled"}


@pytest.mark.asyncio
async def test_failing_cache_reports_error(monkeypatch) -> None:
    class DownCache:
        async def ping(self):
            raise ConnectionError("refused")

    monkeypatch.setattr(cache_module, "_cache", DownCache())
    result = await health_module._check_cache()
    assert result["status"] == "error"
    assert "refused" in result["error"]
