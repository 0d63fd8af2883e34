"""Tests for the inbound WorkTool message callback."""
import pytest
from werkzeug.security import generate_password_hash

from app.botconsole import create_app
from app.botconsole.constants import PERMISSIONS
from app.botconsole.db import session_scope
from app.botconsole.models import Base, Permission, Role, User
from app.botconsole.modules.alerts.models import AlertHistory
from app.botconsole.modules.callback.models import SessionMessage
from app.botconsole.modules.callback.service import reply_body, session_id_for
from app.botconsole.modules.decisions.models import CollaborationDecisionLog
from app.botconsole.modules.loadbalancing.models import RobotLoadBalancing
from app.botconsole.modules.robots.models import Robot
from app.botconsole.modules.robots.service import hash_api_key
from app.botconsole.modules.worktool.models import ApiCallLog

URL = "/api/robot/callback"


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
        s.add(Robot(robot_id="wt-001", name="小助手", api_base_url="https://wt.test", status="online"))
        s.add(Robot(robot_id="wt-off", name="Retired", api_base_url="https://wt.test", is_active=False))
        s.add(Robot(robot_id="wt-key", name="Keyed", api_base_url="https://wt.test", api_key_hash=hash_api_key("rk_secret")))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def admin(client):
    r = client.post("/auth/login", json={"username": "admin", "password": "pw-secret"})
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _message(**extra):
    payload = {"robotId": "wt-001", "spoken": "你好", "receivedName": "张三"}
    payload.update(extra)
    return payload


def test_helpers():
    assert session_id_for("wt-1", "张三", None) == "private:wt-1:张三"
    assert session_id_for("wt-1", "张三", "销售群") == "group:wt-1:销售群"
    assert reply_body(None) == {"code": 0, "message": "success", "data": None}
    assert reply_body("hi")["data"] == {"type": 5000, "info": {"text": "hi"}}


def test_probe(client):
    r = client.get(URL)
    assert r.status_code == 200
    assert r.json["code"] == 0


def test_missing_fields_rejected_and_logged(app, client):
    r = client.post(URL, json={"robotId": "wt-001"})
    assert r.status_code == 400
    assert r.json == {"success": False, "error": "Missing required fields: spoken, received_name"}

    with session_scope(app) as s:
        log = s.query(ApiCallLog).one()
        assert log.api_type == "callback"
        assert log.robot_id == "wt-001"
        assert log.success is False
        assert log.response_status == 400


def test_unknown_and_inactive_robots(client):
    r = client.post(URL, json=_message(robotId="ghost"))
    assert r.status_code == 404
    assert r.json["error"] == "Robot not found"

    r = client.post(URL, json=_message(robotId="wt-off"))
    assert r.status_code == 403


def test_api_key_required_when_configured(client):
    assert client.post(URL, json=_message(robotId="wt-key")).status_code == 401
    assert client.post(URL, json=_message(robotId="wt-key"), headers={"X-Api-Key": "rk_wrong"}).status_code == 401
    r = client.post(URL, json=_message(robotId="wt-key"), headers={"X-Api-Key": "rk_secret"})
    assert r.status_code == 200


def test_qa_reply(app, client, admin):
    client.post("/api/admin/qa", json={"keyword": "价格", "reply": "请联系销售"}, headers=admin)

    r = client.post(URL, json=_message(spoken="价格多少", groupName="VIP群", messageId="msg-1", timestamp=1893456000000))
    assert r.status_code == 200
    assert r.json == {"code": 0, "message": "success", "data": {"type": 5000, "info": {"text": "请联系销售"}}}

    with session_scope(app) as s:
        rows = s.query(SessionMessage).order_by(SessionMessage.id.asc()).all()
        assert [m.is_from_user for m in rows] == [True, False]
        assert rows[0].session_id == "group:wt-001:VIP群"
        assert rows[0].sent_at.isoformat() == "2030-01-01T00:00:00"
        assert rows[1].content == "请联系销售"
        assert rows[1].user_name == "小助手"
        assert rows[1].reply_to_message_id == "msg-1"

        decision = s.query(CollaborationDecisionLog).one()
        assert decision.message_id == "msg-1"
        assert decision.ai_action == "replied"
        assert decision.strategy == "qa_fuzzy"
        assert decision.should_ai_reply is True

        lb = s.query(RobotLoadBalancing).filter(RobotLoadBalancing.robot_id == "wt-001").one()
        assert lb.total_requests == 1

        log = s.query(ApiCallLog).filter(ApiCallLog.api_type == "callback").one()
        assert log.success is True
        assert log.request_body["spoken"] == "价格多少"


def test_no_match_records_decision(app, client):
    r = client.post(URL, json=_message(spoken="随便聊聊"))
    assert r.json["data"] is None

    with session_scope(app) as s:
        decision = s.query(CollaborationDecisionLog).one()
        assert decision.ai_action == "none"
        assert decision.reason == "no_qa_match"
        assert decision.session_id == "private:wt-001:张三"
        assert s.query(SessionMessage).count() == 1


def test_form_encoded_callback(app, client):
    r = client.post(URL, data={"robotId": "wt-001", "spoken": "hi", "receivedName": "李四"})
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.query(SessionMessage).one().user_name == "李四"


def test_alert_keywords(app, client, admin):
    client.post(
        "/api/admin/alerts/rules",
        json={"intentType": "complaint", "ruleName": "投诉", "keywords": "投诉"},
        headers=admin,
    )
    client.post(URL, json=_message(spoken="我要投诉你们"))
    client.post(URL, json=_message(spoken="我还要投诉"))

    with session_scope(app) as s:
        alert = s.query(AlertHistory).one()
        assert alert.robot_id == "wt-001"
        assert alert.session_id == "private:wt-001:张三"
        assert alert.intent_type == "complaint"
        assert alert.alert_message == "检测到告警"


def test_admin_views(client, admin):
    client.post("/api/admin/qa", json={"keyword": "价格", "reply": "请联系销售"}, headers=admin)
    client.post(URL, json=_message(spoken="价格"))
    client.post(URL, json={"robotId": "ghost", "spoken": "x", "receivedName": "y"})

    r = client.get("/api/admin/messages?session_id=private:wt-001:张三")
    assert r.json["total"] == 2
    r = client.get("/api/admin/messages?is_from_user=false")
    assert r.json["data"][0]["content"] == "请联系销售"
    r = client.get("/api/admin/messages?q=价格")
    assert r.json["total"] == 1

    r = client.get("/api/admin/robot-callback-logs")
    assert r.json["total"] == 2
    r = client.get("/api/admin/robot-callback-logs?success=false")
    assert r.json["data"][0]["robot_id"] == "ghost"
