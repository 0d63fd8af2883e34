"""Tests for AI provider/model registry, usage accounting and IO logs."""
import pytest
from werkzeug.security import generate_password_hash

from app.botconsole import create_app
from app.botconsole.constants import PERMISSIONS
from app.botconsole.db import session_scope
from app.botconsole.models import Base, Permission, Role, User
from app.botconsole.modules.ai.models import AIProvider
from app.botconsole.modules.ai.service import compute_cost, health_verdict


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = [Permission(key=k, name=n) for k, n in PERMISSIONS]
        r = Role(key="admin", name="Administrator")
        r.permissions.extend(perms)
        u = User(username="admin", email="admin@example.com", password_hash=generate_password_hash("pw-secret"), is_active=True)
        u.roles.append(r)
        s.add_all(perms + [r, u])
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client):
    r = client.post("/auth/login", json={"username": "admin", "password": "pw-secret"})
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _post(client, h, url, payload, status=201):
    r = client.post(url, json=payload, headers=h)
    assert r.status_code == status, r.json
    return r.json


def test_compute_cost_and_health_verdict():
    assert compute_cost(1500, 0.01) == pytest.approx(0.015)
    assert compute_cost(0, 0.01) == 0.0
    assert compute_cost(1000, None) == 0.0

    assert health_verdict(0, None, None) == "idle"
    assert health_verdict(10, 40.0, 100.0) == "down"
    assert health_verdict(10, 80.0, 100.0) == "degraded"
    assert health_verdict(10, 99.0, 20000.0) == "degraded"
    assert health_verdict(10, 99.0, 100.0) == "healthy"


def test_provider_crud_masks_key(app, client):
    h = _login(client)
    body = _post(
        client,
        h,
        "/api/admin/ai/providers",
        {"providerId": "openai", "providerName": "OpenAI", "apiKey": "sk-1234567890abcdef", "rateLimit": 60},
    )
    provider = body["data"]
    assert provider["api_key"] == "sk-1…cdef"
    assert provider["has_api_key"] is True

    _post(client, h, "/api/admin/ai/providers", {"providerId": "openai", "providerName": "Dup"}, status=409)
    r = _post(client, h, "/api/admin/ai/providers", {"providerId": "bad id!", "rateLimit": -5}, status=400)
    assert len(r["errors"]) == 3

    r = client.put(f"/api/admin/ai/providers/{provider['id']}", json={"apiKey": ""}, headers=h)
    assert r.json["data"]["has_api_key"] is False
    assert r.json["data"]["api_key"] is None

    with session_scope(app) as s:
        assert s.query(AIProvider).one().api_key is None

    assert client.delete(f"/api/admin/ai/providers/{provider['id']}", headers=h).status_code == 200
    assert client.get("/api/admin/ai/providers").json["data"] == []


def test_model_crud(client):
    h = _login(client)
    model = _post(
        client,
        h,
        "/api/admin/ai/models",
        {"modelId": "gpt-4o", "modelName": "GPT-4o", "providerId": "openai", "inputPrice": 0.01, "outputPrice": 0.03},
    )["data"]
    assert model["input_price"] == 0.01
    assert model["model_config"] == {}

    _post(client, h, "/api/admin/ai/models", {"modelId": "gpt-4o", "modelName": "again"}, status=409)
    _post(client, h, "/api/admin/ai/models", {"modelId": "x", "modelName": "x", "maxTokens": 0}, status=400)

    r = client.put(f"/api/admin/ai/models/{model['id']}", json={"temperature": 0.2, "isActive": False}, headers=h)
    assert r.json["data"]["temperature"] == 0.2
    assert client.get("/api/admin/ai/models?is_active=true").json["data"] == []
    assert len(client.get("/api/admin/ai/models?provider_id=openai").json["data"]) == 1


def test_usage_cost_and_stats(client):
    h = _login(client)
    _post(
        client,
        h,
        "/api/admin/ai/models",
        {"modelId": "gpt-4o", "modelName": "GPT-4o", "providerId": "openai", "inputPrice": 0.01, "outputPrice": 0.03},
    )

    body = _post(client, h, "/api/admin/ai/usage", {"modelId": "gpt-4o", "inputTokens": 1500, "outputTokens": 500, "responseTime": 800})
    assert body["cost"] == pytest.approx(0.03)
    usage = body["data"]
    assert usage["total_tokens"] == 2000
    assert usage["provider_id"] == "openai"
    assert usage["input_cost"] == pytest.approx(0.015)

    body = _post(client, h, "/api/admin/ai/usage", {"modelId": "mystery", "inputTokens": 100, "status": "error"})
    assert body["cost"] == 0

    _post(client, h, "/api/admin/ai/usage", {"modelId": "gpt-4o", "status": "timeout"}, status=400)

    stats = client.get("/api/admin/ai/usage/stats").json["data"]
    assert stats["totals"]["requests"] == 2
    assert stats["totals"]["tokens"] == 2100
    assert stats["totals"]["errors"] == 1
    assert [m["model_id"] for m in stats["by_model"]] == ["gpt-4o", "mystery"]
    assert len(stats["by_day"]) == 1

    assert client.get("/api/admin/ai/usage/stats?model_id=mystery").json["data"]["totals"]["requests"] == 1
    assert client.get("/api/admin/ai/usage/stats?start=yesterday").status_code == 400


def test_provider_health(client):
    h = _login(client)
    for pid in ("deepseek", "idle", "moonshot", "openai"):
        _post(client, h, "/api/admin/ai/providers", {"providerId": pid, "providerName": pid})

    for pid, status in [("openai", "success"), ("openai", "success"), ("deepseek", "success"), ("deepseek", "error"), ("moonshot", "error")]:
        _post(client, h, "/api/admin/ai/usage", {"modelId": "m", "providerId": pid, "status": status, "responseTime": 100})

    r = client.get("/api/admin/ai/providers/health?hours=6")
    assert r.json["hours"] == 6
    verdicts = {row["provider_id"]: row["status"] for row in r.json["data"]}
    assert verdicts == {"deepseek": "degraded", "idle": "idle", "moonshot": "down", "openai": "healthy"}


def test_io_logs(client):
    h = _login(client)
    _post(client, h, "/api/admin/ai/io-logs", {"robotId": "wt-001"}, status=400)
    _post(client, h, "/api/admin/ai/io-logs", {"operationType": "reply", "sessionId": "s1", "requestDuration": 100})
    _post(client, h, "/api/admin/ai/io-logs", {"operationType": "reply", "sessionId": "s1", "requestDuration": 300, "status": "error"})
    _post(client, h, "/api/admin/ai/io-logs", {"operationType": "intent", "sessionId": "s2"})

    r = client.get("/api/admin/ai/io-logs?session_id=s1")
    assert r.json["total"] == 2

    stats = client.get("/api/admin/ai/io-logs/stats?operation_type=reply").json["data"]
    assert stats == {"total": 2, "success": 1, "error": 1, "avg_duration": 200.0}


def test_provider_health_window_is_clamped(client):
    _login(client)
    r = client.get("/api/admin/ai/providers/health?hours=999999999")
    assert r.status_code == 200
    assert r.json["hours"] == 2160
    assert client.get("/api/admin/ai/providers/health?hours=0").json["hours"] == 24


def test_provider_and_model_paging(client):
    h = _login(client)
    for pid in ("a", "b", "c"):
        _post(client, h, "/api/admin/ai/providers", {"providerId": pid, "providerName": pid})
        _post(client, h, "/api/admin/ai/models", {"modelId": f"m-{pid}", "modelName": pid})

    r = client.get("/api/admin/ai/providers?limit=2&offset=1")
    assert r.json["total"] == 3
    assert [p["provider_id"] for p in r.json["data"]] == ["b", "c"]
    assert len(client.get("/api/admin/ai/models?limit=1").json["data"]) == 1
