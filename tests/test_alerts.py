"""Tests for alert rules, triggering, handling and escalation."""
from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.botconsole import create_app
from app.botconsole.constants import PERMISSIONS
from app.botconsole.db import session_scope
from app.botconsole.models import Base, Permission, Role, User
from app.botconsole.modules.alerts import notify
from app.botconsole.modules.alerts.models import AlertDedupRecord, AlertHistory, NotificationMethod
from app.botconsole.modules.alerts.service import escalate_due, render_message, trigger_alert
from app.botconsole.modules.callback.models import SessionMessage
from app.botconsole.modules.robots.models import Robot
from app.botconsole.modules.worktool.client import WorkToolClient
from app.botconsole.modules.worktool.models import ApiCallLog


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
        s.add(Robot(robot_id="wt-001", name="Front desk", api_base_url="https://api.worktool.test", status="online"))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client):
    r = client.post("/auth/login", json={"username": "admin", "password": "pw-secret"})
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _rule(client, h, **extra):
    payload = {
        "intentType": "complaint",
        "ruleName": "投诉告警",
        "alertLevel": "critical",
        "keywords": ["投诉", "差评"],
        "messageTemplate": "[{alertLevel}] {userName}@{groupName}: {messageContent}",
    }
    payload.update(extra)
    r = client.post("/api/admin/alerts/rules", json=payload, headers=h)
    assert r.status_code == 201, r.json
    return r.json["data"]


def _method(client, h, rule_id, **payload):
    r = client.post(f"/api/admin/alerts/rules/{rule_id}/notification-methods", json=payload, headers=h)
    assert r.status_code == 201, r.json
    return r.json["data"]


def _trigger(client, h, **payload):
    r = client.post("/api/admin/alerts/trigger", json=payload, headers=h)
    assert r.status_code == 200, r.json
    return r.json["data"]


def test_render_message():
    now = datetime(2030, 1, 1, 8, 30)
    ctx = {"intent_type": "complaint", "content": "太慢了"}
    text = render_message("{alertLevel} {userName} {groupName} {intentType} {messageContent} {timestamp}", ctx, "warning", now)
    assert text == "警告 未知用户 未知群组 complaint 太慢了 2030-01-01 08:30:00"
    assert render_message(None, ctx, "warning") == "检测到告警"


def test_rule_defaults_and_validation(client):
    h = _login(client)
    rule = _rule(client, h)
    assert rule["cooldown_period"] == 300
    assert rule["escalation_threshold"] == 3
    assert rule["escalation_interval"] == 1800
    assert rule["keywords"] == "投诉,差评"
    assert rule["notification_methods"] == []

    r = client.post("/api/admin/alerts/rules", json={"alertLevel": "panic", "cooldownPeriod": -1}, headers=h)
    assert r.status_code == 400
    assert len(r.json["errors"]) == 4

    r = client.post("/api/admin/alerts/rules", json={"intentType": "x", "ruleName": "x", "groupId": 999}, headers=h)
    assert r.status_code == 400


def test_notification_method_validation(client):
    h = _login(client)
    rule = _rule(client, h)
    url = f"/api/admin/alerts/rules/{rule['id']}/notification-methods"
    assert client.post(url, json={"methodType": "webhook", "recipientConfig": {}}, headers=h).status_code == 400
    assert client.post(url, json={"methodType": "robot", "recipientConfig": {}}, headers=h).status_code == 400
    assert client.post(url, json={"methodType": "sms"}, headers=h).status_code == 400

    method = _method(client, h, rule["id"], methodType="log")
    r = client.put(f"/api/admin/alerts/notification-methods/{method['id']}", json={"priority": 1}, headers=h)
    assert r.json["data"]["priority"] == 1
    assert len(client.get(url).json["data"]) == 1


def test_groups_crud(client):
    h = _login(client)
    r = client.post("/api/admin/alerts/groups", json={"groupName": "VIP", "groupCode": "vip"}, headers=h)
    assert r.status_code == 201
    group = r.json["data"]

    assert client.post("/api/admin/alerts/groups", json={"groupName": "Other", "groupCode": "vip"}, headers=h).status_code == 409
    assert client.post("/api/admin/alerts/groups", json={"groupName": "Bad", "groupCode": "has space"}, headers=h).status_code == 400

    rule = _rule(client, h, groupId=group["id"])
    assert rule["group_name"] == "VIP"

    assert client.delete(f"/api/admin/alerts/groups/{group['id']}", headers=h).status_code == 200
    assert client.get(f"/api/admin/alerts/rules/{rule['id']}").json["data"]["group_id"] is None


def test_trigger_and_cooldown(app, client):
    h = _login(client)
    rule = _rule(client, h)
    _method(client, h, rule["id"], methodType="log")

    ctx = {"intentType": "complaint", "content": "我要投诉", "userId": "u1", "userName": "张三", "robotId": "wt-001"}
    data = _trigger(client, h, **ctx)
    assert data["triggered"] is True
    alert = data["alert"]
    assert alert["alert_message"] == "[严重] 张三@未知群组: 我要投诉"
    assert alert["notification_status"] == "sent"
    assert alert["status"] == "pending"

    data = _trigger(client, h, **ctx)
    assert data == {"triggered": False, "reason": "cooldown", "rule_id": rule["id"], "last_alert_id": alert["id"]}

    data = _trigger(client, h, **{**ctx, "userId": "u2"})
    assert data["triggered"] is True

    with session_scope(app) as s:
        assert s.query(AlertHistory).count() == 2
        first = s.query(AlertDedupRecord).filter(AlertDedupRecord.first_alert_id == alert["id"]).one()
        assert first.trigger_count == 2
        assert first.suppressed_count == 1


def test_trigger_by_keyword_and_no_rule(client):
    h = _login(client)
    _rule(client, h)

    data = _trigger(client, h, content="给你们差评")
    assert data["triggered"] is True
    assert data["alert"]["intent_type"] == "complaint"
    assert data["alert"]["notification_status"] == "pending"

    assert _trigger(client, h, content="谢谢") == {"triggered": False, "reason": "no_rule"}
    assert client.post("/api/admin/alerts/trigger", json={}, headers=h).status_code == 400


def test_failed_webhook_marks_notification_failed(client, monkeypatch):
    h = _login(client)
    rule = _rule(client, h)
    _method(client, h, rule["id"], methodType="webhook", recipientConfig={"url": "https://hooks.test/alert"})

    def boom(url, payload, timeout_seconds):
        raise notify.NotificationError("Webhook returned HTTP 500")

    monkeypatch.setattr(notify, "post_webhook", boom)
    alert = _trigger(client, h, intentType="complaint", content="投诉")["alert"]
    assert alert["notification_status"] == "failed"
    assert alert["notification_result"]["results"][0]["error"] == "Webhook returned HTTP 500"


def test_robot_notification_sends_message(app, client, monkeypatch):
    h = _login(client)
    rule = _rule(client, h)
    _method(client, h, rule["id"], methodType="robot", recipientConfig={"toName": "值班群"}, messageTemplate="请处理: {messageContent}")

    calls = []

    def fake(self, method, path, **kw):
        calls.append((method, path, kw.get("body")))
        return 200, {"code": 200, "data": None}

    monkeypatch.setattr(WorkToolClient, "request_json", fake)
    alert = _trigger(client, h, intentType="complaint", content="投诉", robotId="wt-001")["alert"]
    assert alert["notification_status"] == "sent"
    assert calls[0][1] == "/wework/sendRawMessage"
    assert calls[0][2]["list"][0]["titleList"] == ["值班群"]
    assert calls[0][2]["list"][0]["receivedContent"] == "请处理: 投诉"

    with session_scope(app) as s:
        assert s.query(ApiCallLog).filter(ApiCallLog.api_type == "send_message").count() == 1


def test_handle_and_batch(client):
    h = _login(client)
    rule = _rule(client, h, cooldownPeriod=0)
    a = _trigger(client, h, intentType="complaint", content="投诉")["alert"]
    b = _trigger(client, h, intentType="complaint", content="投诉")["alert"]

    url = f"/api/admin/alerts/history/{a['id']}/handle"
    assert client.post(url, json={"status": "snoozed"}, headers=h).status_code == 400
    r = client.post(url, json={"note": "called back"}, headers=h)
    assert r.status_code == 200
    assert r.json["data"]["status"] == "handled"
    assert r.json["data"]["handled_by"] == "admin"
    assert client.post(url, json={}, headers=h).status_code == 409

    r = client.post(
        "/api/admin/alerts/history/batch",
        json={"action": "ignore", "alertIds": [a["id"], b["id"], 999], "note": "noise"},
        headers=h,
    )
    assert r.status_code == 200
    op = r.json["data"]
    assert op["total_count"] == 3
    assert op["success_count"] == 1
    assert op["failed_count"] == 2

    assert client.get(f"/api/admin/alerts/history/{b['id']}").json["data"]["status"] == "ignored"
    assert client.post("/api/admin/alerts/history/batch", json={"action": "nuke", "alertIds": [1]}, headers=h).status_code == 400

    r = client.get("/api/admin/alerts/history?is_handled=true&alert_level=critical")
    assert r.json["total"] == 2
    assert rule["id"] == r.json["data"][0]["rule_id"]


def test_stats(client):
    h = _login(client)
    _rule(client, h, cooldownPeriod=0)
    a = _trigger(client, h, intentType="complaint", content="投诉")["alert"]
    _trigger(client, h, intentType="complaint", content="投诉")
    client.post(f"/api/admin/alerts/history/{a['id']}/handle", json={}, headers=h)

    stats = client.get("/api/admin/alerts/stats?range=24h").json["data"]
    assert stats["range"] == "24h"
    assert stats["total"] == 2
    assert stats["handled"] == 1
    assert stats["unhandled"] == 1
    assert stats["by_level"] == {"critical": 2, "warning": 0, "info": 0}
    assert stats["by_intent_type"] == {"complaint": 2}

    assert client.get("/api/admin/alerts/stats?range=bogus").json["data"]["range"] == "7d"


def test_escalation(app, client):
    h = _login(client)
    rule = _rule(client, h, enableEscalation=True, escalationInterval=60, escalationThreshold=2)
    _method(client, h, rule["id"], methodType="log")

    with session_scope(app) as s:
        result = trigger_alert(s, {"intent_type": "complaint", "content": "投诉"}, now=datetime.utcnow() - timedelta(minutes=5))
        alert_id = result["alert"]["id"]

    r = client.post("/api/admin/alerts/escalate", headers=h)
    assert r.json["data"]["escalated"] == [{"alert_id": alert_id, "from_level": 0, "to_level": 1}]

    r = client.post("/api/admin/alerts/escalate", headers=h)
    assert r.json["data"]["checked"] == 1
    assert r.json["data"]["escalated_count"] == 0

    with session_scope(app) as s:
        assert escalate_due(s, now=datetime.utcnow() + timedelta(hours=1))["escalated_count"] == 1
    with session_scope(app) as s:
        assert escalate_due(s, now=datetime.utcnow() + timedelta(hours=2))["escalated_count"] == 0
        alert = s.get(AlertHistory, alert_id)
        assert alert.escalation_level == 2
        assert [e["to_level"] for e in alert.escalation_history] == [1, 2]


def test_webhook_url_validation(client):
    h = _login(client)
    rule = _rule(client, h)
    url = f"/api/admin/alerts/rules/{rule['id']}/notification-methods"
    for bad in ("https://hooks.test/a b", "ftp://hooks.test/x", 5):
        r = client.post(url, json={"methodType": "webhook", "recipientConfig": {"url": bad}}, headers=h)
        assert r.status_code == 400, bad


def test_post_webhook_wraps_invalid_url():
    with pytest.raises(notify.NotificationError):
        notify.post_webhook("https://hooks.test/a b", {"text": "x"}, 1)


def test_failing_method_does_not_block_others(client, monkeypatch):
    h = _login(client)
    rule = _rule(client, h)
    _method(client, h, rule["id"], methodType="webhook", recipientConfig={"url": "https://hooks.test/alert"}, priority=1)
    _method(client, h, rule["id"], methodType="log", priority=5)

    def crash(url, payload, timeout_seconds):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(notify, "post_webhook", crash)
    alert = _trigger(client, h, intentType="complaint", content="投诉")["alert"]
    assert alert["notification_status"] == "sent"
    results = alert["notification_result"]["results"]
    assert [(m["method_type"], m["success"]) for m in results] == [("webhook", False), ("log", True)]
    assert results[0]["error"] == "RuntimeError: connection reset"


def test_callback_survives_stored_bad_webhook(app, client):
    h = _login(client)
    rule = _rule(client, h)
    _method(client, h, rule["id"], methodType="log", priority=5)
    with session_scope(app) as s:
        s.add(
            NotificationMethod(
                alert_rule_id=rule["id"],
                method_type="webhook",
                recipient_config={"url": "https://hooks.test/a b"},
                priority=1,
            )
        )

    r = client.post("/api/robot/callback", json={"robotId": "wt-001", "spoken": "我要投诉", "receivedName": "张三"})
    assert r.status_code == 200

    with session_scope(app) as s:
        assert s.query(SessionMessage).count() == 1
        alert = s.query(AlertHistory).one()
        assert alert.notification_status == "sent"
        assert [m["success"] for m in alert.notification_result["results"]] == [False, True]


def test_rule_and_group_type_validation(client):
    h = _login(client)
    r = client.post("/api/admin/alerts/rules", json={"intentType": 7, "ruleName": "x", "keywords": 3}, headers=h)
    assert r.status_code == 400
    assert r.json["errors"] == ["intent_type must be a string.", "keywords must be a string or a list."]

    r = client.post("/api/admin/alerts/groups", json={"groupName": "VIP", "groupCode": 123}, headers=h)
    assert r.status_code == 400
    assert "group_code must be a string." in r.json["errors"]


def test_rule_and_group_paging(client):
    h = _login(client)
    for i in range(3):
        _rule(client, h, ruleName=f"rule-{i}")
        client.post("/api/admin/alerts/groups", json={"groupName": f"G{i}", "groupCode": f"g{i}"}, headers=h)

    r = client.get("/api/admin/alerts/rules?limit=2&offset=1")
    assert r.json["total"] == 3
    assert [row["rule_name"] for row in r.json["data"]] == ["rule-1", "rule-2"]

    r = client.get("/api/admin/alerts/groups?limit=1")
    assert r.json["total"] == 3
    assert len(r.json["data"]) == 1
