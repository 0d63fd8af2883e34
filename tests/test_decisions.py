"""Tests for AI/staff collaboration decision logging."""
import json

import pytest
from werkzeug.security import generate_password_hash

from app.botconsole import create_app
from app.botconsole.constants import PERMISSIONS
from app.botconsole.db import session_scope
from app.botconsole.models import AuditEvent, Base, Permission, Role, User
from app.botconsole.modules.decisions.models import CollaborationDecisionLog


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


def _decision(client, h, message_id, session_id="sess-1", **extra):
    payload = {"sessionId": session_id, "messageId": message_id, "robotId": "wt-001"}
    payload.update(extra)
    r = client.post("/api/collaboration/decisions", json=payload, headers=h)
    assert r.status_code == 201, r.json
    return r.json["data"]


def test_create_defaults(client):
    h = _login(client)
    d = _decision(client, h, "m1", shouldAiReply="true", staffContext={"staff": "李四"})
    assert d["ai_action"] == "none"
    assert d["staff_action"] == "none"
    assert d["priority"] == "medium"
    assert d["should_ai_reply"] is True
    assert d["staff_context"] == {"staff": "李四"}


def test_create_validation(client):
    h = _login(client)
    r = client.post(
        "/api/collaboration/decisions",
        json={"sessionId": "s", "aiAction": "shrugged", "priority": "urgent", "infoContext": "x"},
        headers=h,
    )
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Missing required fields: message_id, robot_id",
        "Invalid ai_action. Must be one of: replied, skipped, transferred, none, processing",
        "Invalid priority. Must be one of: high, medium, low",
        "info_context must be an object.",
    ]


def test_batch_is_all_or_nothing(app, client):
    h = _login(client)
    items = [
        {"sessionId": "s", "messageId": "m1", "robotId": "wt-001"},
        {"sessionId": "s", "messageId": "m2"},
    ]
    r = client.post("/api/collaboration/decisions/batch", json={"decisions": items}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "decisions[1]: Missing required fields: robot_id"

    with session_scope(app) as s:
        assert s.query(CollaborationDecisionLog).count() == 0

    items[1]["robotId"] = "wt-001"
    r = client.post("/api/collaboration/decisions/batch", json=items, headers=h)
    assert r.status_code == 201
    assert r.json["count"] == 2

    assert client.post("/api/collaboration/decisions/batch", json=[], headers=h).status_code == 400
    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "decision.batch_create").count() == 1


def test_reply_status(client):
    h = _login(client)
    _decision(client, h, "m1", aiAction="processing")
    _decision(client, h, "m1", aiAction="replied", strategy="qa_exact")
    _decision(client, h, "m2", staffAction="handled")
    _decision(client, h, "m3", aiAction="skipped")

    statuses = client.get("/api/collaboration/sessions/sess-1/reply-status").json["data"]
    assert {k: v["reply_type"] for k, v in statuses.items()} == {"m1": "ai", "m2": "human", "m3": "none"}

    r = client.get("/api/collaboration/messages/m3/reply-status")
    assert r.json["data"]["is_replied"] is False
    r = client.get("/api/collaboration/messages/unknown/reply-status")
    assert r.json["data"] == {
        "message_id": "unknown",
        "is_replied": False,
        "reply_type": "none",
        "decision_at": None,
        "ai_action": None,
        "staff_action": None,
        "priority": None,
        "reason": None,
    }


def test_session_ids_with_colons(client):
    h = _login(client)
    _decision(client, h, "m1", session_id="group:wt-001:销售群", aiAction="replied")
    r = client.get("/api/collaboration/sessions/group:wt-001:销售群/stats")
    assert r.json["data"]["total"] == 1


def test_session_stats(client):
    h = _login(client)
    _decision(client, h, "m1", aiAction="replied", priority="high")
    _decision(client, h, "m2", aiAction="transferred", staffAction="replied")
    _decision(client, h, "m3", aiAction="skipped", priority="low")
    _decision(client, h, "m4", session_id="other")

    stats = client.get("/api/collaboration/sessions/sess-1/stats").json["data"]
    assert stats["total"] == 3
    assert stats["ai_replies"] == 1
    assert stats["staff_replies"] == 1
    assert stats["skipped"] == 1
    assert stats["transferred"] == 1
    assert stats["by_priority"] == {"high": 1, "medium": 1, "low": 1}


def test_update_message_decision(app, client):
    h = _login(client)
    assert client.put("/api/collaboration/messages/m1", json={"staffAction": "handled"}, headers=h).status_code == 404

    _decision(client, h, "m1")
    r = client.put("/api/collaboration/messages/m1", json={"staffAction": "handled", "reason": " took over "}, headers=h)
    assert r.status_code == 200
    assert r.json["data"]["staff_action"] == "handled"
    assert r.json["data"]["reason"] == "took over"
    assert r.json["data"]["updated_at"] is not None

    assert client.put("/api/collaboration/messages/m1", json={"staffAction": "napped"}, headers=h).status_code == 400

    with session_scope(app) as s:
        event = s.query(AuditEvent).filter(AuditEvent.action == "decision.update").one()
        assert json.loads(event.metadata_json)["changes"]["staff_action"] == {"old": "none", "new": "handled"}

    r = client.get("/api/collaboration/decisions?message_id=m1")
    assert r.json["total"] == 1
