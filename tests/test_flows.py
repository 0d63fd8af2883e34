"""Tests for flow definitions, instances and the flow monitor."""
from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.botconsole import create_app
from app.botconsole.constants import PERMISSIONS
from app.botconsole.db import session_scope
from app.botconsole.models import Base, Permission, Role, User
from app.botconsole.modules.flows.models import FlowExecutionLog, FlowInstance
from app.botconsole.modules.flows.service import bump_minor_version


NODES = [{"id": "start", "type": "trigger"}, {"id": "reply", "type": "ai_reply"}]
EDGES = [{"source": "start", "target": "reply"}]


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


def _flow(client, h, **extra):
    payload = {"name": "Welcome", "triggerType": "user_message", "nodes": NODES, "edges": EDGES}
    payload.update(extra)
    r = client.post("/api/flow-engine/definitions", json=payload, headers=h)
    assert r.status_code == 201, r.json
    return r.json["data"]


@pytest.mark.parametrize("raw,expected", [("1.0", "1.1"), ("2.9", "2.10"), (None, "1.1"), ("v1", "1.1")])
def test_bump_minor_version(raw, expected):
    assert bump_minor_version(raw) == expected


def test_create_defaults(client):
    h = _login(client)
    flow = _flow(client, h)
    assert flow["version"] == "1.0"
    assert flow["status"] == "active"
    assert flow["timeout"] == 30000
    assert flow["retry_config"] == {"maxRetries": 3, "retryInterval": 1000}
    assert flow["created_by"] == "admin"

    r = client.get("/api/flow-engine/definitions?trigger_type=user_message")
    assert r.json["total"] == 1


def test_validation(client):
    h = _login(client)
    r = client.post(
        "/api/flow-engine/definitions",
        json={
            "name": "Broken",
            "triggerType": "user_message",
            "nodes": [{"id": "a", "type": "x"}, {"id": "a", "type": "y"}],
            "edges": [{"source": "a", "target": "ghost"}],
            "timeout": 0,
        },
        headers=h,
    )
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Duplicate node id: a",
        "edges[0].target references unknown node: ghost",
        "timeout must be a positive integer (ms).",
    ]

    r = client.post("/api/flow-engine/definitions", json={"name": "x", "triggerType": "carrier_pigeon"}, headers=h)
    assert r.status_code == 400


def test_update_bumps_version_on_structure_change(client):
    h = _login(client)
    flow = _flow(client, h)
    url = f"/api/flow-engine/definitions/{flow['id']}"

    r = client.put(url, json={"description": "greets people", "status": "inactive"}, headers=h)
    assert r.json["data"]["version"] == "1.0"
    assert r.json["data"]["is_active"] is False

    nodes = NODES + [{"id": "handoff", "type": "transfer"}]
    r = client.put(url, json={"nodes": nodes}, headers=h)
    assert r.json["data"]["version"] == "1.1"

    r = client.put(url, json={"nodes": [{"id": "start", "type": "trigger"}]}, headers=h)
    assert r.status_code == 400
    assert "edges[0].target references unknown node: reply" in r.json["errors"]


def test_default_definition(client):
    h = _login(client)
    first = _flow(client, h, isDefault=True)
    second = _flow(client, h, name="Second", isDefault=True)

    assert client.get(f"/api/flow-engine/definitions/{first['id']}").json["data"]["is_default"] is False

    r = client.get("/api/flow-engine/definitions/default?trigger_type=user_message")
    assert r.json["data"]["id"] == second["id"]

    assert client.get("/api/flow-engine/definitions/default").status_code == 400
    assert client.get("/api/flow-engine/definitions/default?trigger_type=scheduled").status_code == 404


def test_delete_blocked_by_running_instance(app, client):
    h = _login(client)
    flow = _flow(client, h)
    with session_scope(app) as s:
        s.add(FlowInstance(flow_definition_id=flow["id"], status="running", session_id="sess-1"))

    url = f"/api/flow-engine/definitions/{flow['id']}"
    assert client.delete(url, headers=h).status_code == 409

    with session_scope(app) as s:
        s.query(FlowInstance).update({FlowInstance.status: "completed"})
    assert client.delete(url, headers=h).status_code == 200

    instances = client.get("/api/flow-engine/instances").json["data"]
    assert instances[0]["flow_definition_id"] is None


def test_instance_detail_includes_logs(app, client):
    h = _login(client)
    flow = _flow(client, h)
    with session_scope(app) as s:
        t0 = datetime.utcnow()
        instance = FlowInstance(flow_definition_id=flow["id"], status="failed", error_message="model timeout")
        instance.logs.append(FlowExecutionLog(node_id="start", node_type="trigger", status="success", started_at=t0))
        instance.logs.append(
            FlowExecutionLog(node_id="reply", node_type="ai_reply", status="failed", started_at=t0 + timedelta(seconds=1))
        )
        s.add(instance)
        s.flush()
        instance_id = instance.id

    r = client.get(f"/api/flow-engine/instances/{instance_id}")
    assert r.json["data"]["flow_name"] == "Welcome"
    assert [log["node_id"] for log in r.json["data"]["logs"]] == ["start", "reply"]

    r = client.get("/api/flow-engine/instances?status=failed")
    assert r.json["total"] == 1
    assert "logs" not in r.json["data"][0]


def test_monitor(app, client):
    _login(client)
    now = datetime.utcnow()
    with session_scope(app) as s:
        s.add(FlowInstance(status="completed", processing_time=100))
        s.add(FlowInstance(status="completed", processing_time=200))
        failed = FlowInstance(status="failed", processing_time=300)
        failed.logs.append(FlowExecutionLog(node_id="n2", node_type="ai_reply", status="failed"))
        failed.logs.append(FlowExecutionLog(node_id="n2", node_type="ai_reply", status="failed"))
        s.add(failed)
        s.add(FlowInstance(status="running"))
        old = FlowInstance(status="failed", processing_time=9000, started_at=now - timedelta(hours=48))
        old.logs.append(FlowExecutionLog(node_id="n9", node_type="webhook", status="failed"))
        s.add(old)

    data = client.get("/api/flow-engine/monitor?hours=24").json["data"]
    assert data["total"] == 4
    assert data["by_status"] == {"running": 1, "completed": 2, "failed": 1, "timeout": 0, "cancelled": 0}
    assert data["avg_processing_time"] == 200.0
    assert data["success_rate"] == 66.67
    assert data["top_failing_nodes"] == [{"node_id": "n2", "node_type": "ai_reply", "failures": 2}]

    assert client.get("/api/flow-engine/monitor?hours=72").json["data"]["total"] == 5
    assert client.get("/api/flow-engine/monitor?hours=-3").json["data"]["hours"] == 24
