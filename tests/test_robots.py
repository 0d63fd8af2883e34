"""Tests for robot management and WorkTool-backed robot operations."""
import pytest
from werkzeug.security import generate_password_hash

from app.botconsole import create_app
from app.botconsole.constants import PERMISSIONS
from app.botconsole.db import session_scope
from app.botconsole.models import AuditEvent, Base, Permission, Role, User
from app.botconsole.modules.robots.models import Robot, RobotRole
from app.botconsole.modules.worktool.client import WorkToolClient, WorkToolError


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


@pytest.fixture()
def worktool(monkeypatch):
    """Replace the WorkTool HTTP layer; map path -> payload (or exception)."""
    responses: dict = {}
    calls: list = []

    def fake_request_json(self, method, path, *, params=None, body=None, retries=2):
        calls.append({"method": method, "path": path, "params": params, "body": body})
        resp = responses.get(path)
        if isinstance(resp, Exception):
            raise resp
        if resp is None:
            raise WorkToolError(f"no fake response for {path}")
        return 200, resp

    monkeypatch.setattr(WorkToolClient, "request_json", fake_request_json)
    return responses, calls


def _login(client):
    r = client.post("/auth/login", json={"username": "admin", "password": "pw-secret"})
    return {"X-CSRF-Token": r.json["csrf_token"]}


def _create_robot(client, h, robot_id="wt-001", **extra):
    payload = {"robotId": robot_id, "name": "Front desk", "apiBaseUrl": "https://api.worktool.test/wework/"}
    payload.update(extra)
    r = client.post("/api/admin/robots", json=payload, headers=h)
    assert r.status_code == 201, r.json
    return r.json["data"]


def test_robots_list_requires_auth(client):
    r = client.get("/api/admin/robots")
    assert r.status_code == 401


def test_robot_create_and_get(client):
    h = _login(client)
    robot = _create_robot(client, h, capabilities=["text", "image"])
    assert robot["robot_id"] == "wt-001"
    assert robot["status"] == "unknown"
    assert robot["capabilities"] == ["text", "image"]

    r = client.get(f"/api/admin/robots/{robot['id']}")
    assert r.status_code == 200
    lb = r.json["data"]["load_balancing"]
    assert lb["max_sessions"] == 100
    assert lb["health_score"] == 100.0

    r = client.get("/api/admin/robots?q=front")
    assert r.json["total"] == 1


def test_robot_create_validation(client):
    h = _login(client)
    r = client.post("/api/admin/robots", json={"robotId": "has space", "apiBaseUrl": "ftp://x"}, headers=h)
    assert r.status_code == 400
    assert len(r.json["errors"]) == 3

    _create_robot(client, h)
    r = client.post(
        "/api/admin/robots",
        json={"robotId": "wt-001", "name": "Dup", "apiBaseUrl": "https://api.worktool.test"},
        headers=h,
    )
    assert r.status_code == 409


def test_robot_update_and_immutable_robot_id(app, client):
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.put(f"/api/admin/robots/{robot['id']}", json={"robotId": "wt-002"}, headers=h)
    assert r.status_code == 400
    assert "robot_id" in r.json["error"]

    r = client.put(f"/api/admin/robots/{robot['id']}", json={"name": "Lobby", "loadBalancingWeight": 2}, headers=h)
    assert r.status_code == 200
    assert r.json["data"]["name"] == "Lobby"
    assert r.json["data"]["load_balancing_weight"] == 2.0

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "robot.update").one()
        assert ev.entity_id == "wt-001"


def test_robot_delete(client):
    h = _login(client)
    robot = _create_robot(client, h)
    r = client.delete(f"/api/admin/robots/{robot['id']}", headers=h)
    assert r.status_code == 200
    assert client.get(f"/api/admin/robots/{robot['id']}").status_code == 404


def test_api_key_lifecycle(client):
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.post(f"/api/admin/robots/{robot['id']}/api-key", headers=h)
    key = r.json["data"]["api_key"]
    assert key.startswith("rk_")
    assert len(key) == 35

    r = client.get(f"/api/admin/robots/{robot['id']}/api-key")
    assert r.json["data"]["has_api_key"] is True
    assert "api_key" not in r.json["data"]

    assert client.delete(f"/api/admin/robots/{robot['id']}/api-key", headers=h).status_code == 200
    assert client.delete(f"/api/admin/robots/{robot['id']}/api-key", headers=h).status_code == 404


def test_check_status_online(client, worktool):
    responses, calls = worktool
    responses["/robot/robotInfo/online"] = {"code": 200, "data": True}
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.post(f"/api/admin/robots/{robot['id']}/check", headers=h)
    assert r.status_code == 200
    assert r.json["data"]["status"] == "online"
    assert calls[0]["params"] is None

    r = client.get(f"/api/admin/robots/{robot['id']}/api-call-logs")
    assert r.json["total"] == 1
    log = r.json["data"][0]
    assert log["api_type"] == "online_status"
    assert log["success"] is True
    assert log["url"].startswith("https://api.worktool.test/robot/robotInfo/online?robotId=wt-001")


def test_check_status_failure_marks_offline(client, worktool):
    responses, _calls = worktool
    responses["/robot/robotInfo/online"] = {"code": 500, "message": "robot not found"}
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.post(f"/api/admin/robots/{robot['id']}/check", headers=h)
    assert r.status_code == 200
    assert r.json["data"]["status"] == "offline"
    assert r.json["data"]["error"] == "robot not found"

    r = client.get(f"/api/admin/robots/{robot['id']}/api-call-logs?success=false")
    assert r.json["total"] == 1


def test_check_all_skips_inactive(client, worktool):
    responses, _calls = worktool
    responses["/robot/robotInfo/online"] = {"code": 200, "data": True}
    h = _login(client)
    _create_robot(client, h, "wt-001")
    _create_robot(client, h, "wt-002", isActive=False)

    r = client.post("/api/admin/robots/check-all", headers=h)
    assert r.status_code == 200
    assert r.json["data"]["checked"] == 1
    assert r.json["data"]["online"] == 1


def test_sync_info(client, worktool):
    responses, _calls = worktool
    responses["/robot/robotInfo/get"] = {
        "code": 200,
        "data": {
            "name": "小助手",
            "corporation": "Acme",
            "ip": "10.0.0.8",
            "authExpir": 1893456000000,
            "openCallback": 1,
        },
    }
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.post(f"/api/admin/robots/{robot['id']}/sync-info", headers=h)
    assert r.status_code == 200
    data = r.json["data"]
    assert data["nickname"] == "小助手"
    assert data["company"] == "Acme"
    assert data["expires_at"] == "2030-01-01T00:00:00"
    assert data["message_callback_enabled"] is True
    assert "nickname" in r.json["changed"]


def test_sync_info_failure_keeps_call_log(client, worktool):
    responses, _calls = worktool
    responses["/robot/robotInfo/get"] = WorkToolError("timed out")
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.post(f"/api/admin/robots/{robot['id']}/sync-info", headers=h)
    assert r.status_code == 502
    r = client.get(f"/api/admin/robots/{robot['id']}/api-call-logs")
    assert r.json["data"][0]["error_message"] == "timed out"


def test_send_message(client, worktool):
    responses, calls = worktool
    responses["/wework/sendRawMessage"] = {"code": 200, "data": "ok"}
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.post(
        f"/api/admin/robots/{robot['id']}/send-message",
        json={"toName": "张三", "content": "hello"},
        headers=h,
    )
    assert r.status_code == 200
    body = calls[0]["body"]
    assert body["socketType"] == 2
    assert body["list"][0] == {"type": 203, "titleList": ["张三"], "receivedContent": "hello"}

    r = client.post(f"/api/admin/robots/{robot['id']}/send-message", json={"toName": "张三"}, headers=h)
    assert r.status_code == 400

    r = client.post(
        f"/api/admin/robots/{robot['id']}/send-message",
        json={"toName": "张三", "content": "img", "messageType": 2},
        headers=h,
    )
    assert r.status_code == 400


def test_worktool_remote_lists(client, worktool):
    responses, calls = worktool
    responses["/wework/listRawMessage"] = {"code": 200, "data": {"list": [{"spoken": "hi"}], "total": 1}}
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.get(f"/api/admin/robots/{robot['id']}/worktool/raw-messages?page=2&page_size=500")
    assert r.status_code == 200
    assert r.json["data"]["total"] == 1
    assert r.json["page_size"] == 100
    assert calls[0]["params"] == {"page": 2, "pageSize": 100}

    assert client.get(f"/api/admin/robots/{robot['id']}/worktool/bogus").status_code == 404


def test_groups(client):
    h = _login(client)
    r = client.post("/api/admin/robot-groups", json={"name": "Sales", "color": "#3b82f6", "priority": 1}, headers=h)
    assert r.status_code == 201
    gid = r.json["data"]["id"]
    assert client.post("/api/admin/robot-groups", json={"name": "Sales"}, headers=h).status_code == 409

    robot = _create_robot(client, h, groupId=gid)
    assert robot["group_name"] == "Sales"

    r = client.get(f"/api/admin/robot-groups/{gid}")
    assert r.json["data"]["robot_count"] == 1
    assert r.json["data"]["robots"][0]["robot_id"] == "wt-001"

    assert client.delete(f"/api/admin/robot-groups/{gid}", headers=h).status_code == 409
    client.put(f"/api/admin/robots/{robot['id']}", json={"groupId": None}, headers=h)
    assert client.delete(f"/api/admin/robot-groups/{gid}", headers=h).status_code == 200


def test_robot_with_unknown_group_is_rejected(client):
    h = _login(client)
    r = client.post(
        "/api/admin/robots",
        json={"robotId": "wt-009", "name": "X", "apiBaseUrl": "https://api.worktool.test", "groupId": 999},
        headers=h,
    )
    assert r.status_code == 400


def test_roles(app, client):
    with session_scope(app) as s:
        s.add(RobotRole(name="客服", is_system=True, permissions={"allowed": ["reply"]}))
    h = _login(client)

    r = client.post("/api/admin/robot-roles", json={"name": "Sales", "permissions": ["reply", "transfer"]}, headers=h)
    assert r.status_code == 201
    assert r.json["data"]["permissions"] == {"allowed": ["reply", "transfer"]}

    roles = client.get("/api/admin/robot-roles").json["data"]
    system = next(role for role in roles if role["is_system"])
    assert client.delete(f"/api/admin/robot-roles/{system['id']}", headers=h).status_code == 400
    assert client.delete(f"/api/admin/robot-roles/{r.json['data']['id']}", headers=h).status_code == 200


def test_monitoring_and_heartbeat(app, client):
    h = _login(client)
    _create_robot(client, h)

    r = client.post(
        "/api/admin/robot-monitoring/heartbeat",
        json={"robotId": "wt-001", "currentSessions": 30, "successRate": 95},
        headers=h,
    )
    assert r.status_code == 200
    assert r.json["data"]["robot"]["status"] == "online"
    assert r.json["data"]["load_balancing"]["current_sessions"] == 30
    assert r.json["data"]["load_balancing"]["load_score"] == 30.0

    r = client.get("/api/admin/robot-monitoring")
    data = r.json["data"]
    assert data["robots"]["total"] == 1
    assert data["robots"]["online"] == 1
    assert data["performance"]["avg_success_rate"] == 95.0

    r = client.post("/api/admin/robot-monitoring/heartbeat", json={"robotId": "ghost"}, headers=h)
    assert r.status_code == 404

    with session_scope(app) as s:
        assert s.query(Robot).one().last_check_at is not None


def test_sync_info_out_of_range_expiry_is_null(client, worktool):
    responses, _calls = worktool
    responses["/robot/robotInfo/get"] = {"code": 200, "data": {"name": "小助手", "authExpir": 10**20}}
    h = _login(client)
    robot = _create_robot(client, h)

    r = client.post(f"/api/admin/robots/{robot['id']}/sync-info", headers=h)
    assert r.status_code == 200
    assert r.json["data"]["expires_at"] is None


def test_robot_create_rejects_non_string_fields(client):
    h = _login(client)
    r = client.post(
        "/api/admin/robots",
        json={"robotId": 123, "name": "Front desk", "apiBaseUrl": "https://api.worktool.test"},
        headers=h,
    )
    assert r.status_code == 400
    assert r.json["errors"] == ["robot_id must be a string."]

    r = client.post("/api/admin/robot-groups", json={"name": ["Sales"]}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "name must be a string."


def test_list_paging(client):
    h = _login(client)
    for i in range(3):
        _create_robot(client, h, robot_id=f"wt-00{i}")
        client.post("/api/admin/robot-groups", json={"name": f"Group {i}"}, headers=h)

    r = client.get("/api/admin/robots?limit=2")
    assert r.json["total"] == 3
    assert len(r.json["data"]) == 2

    r = client.get("/api/admin/robots?limit=500&offset=2")
    assert len(r.json["data"]) == 1

    r = client.get("/api/admin/robot-groups?limit=1&offset=1")
    assert r.json["total"] == 3
    assert [g["name"] for g in r.json["data"]] == ["Group 1"]


@pytest.mark.parametrize("raw,expected", [("yes", ["wt-on"]), ("1", ["wt-on"]), ("no", ["wt-off"]), ("0", ["wt-off"])])
def test_is_active_query_flag(client, raw, expected):
    h = _login(client)
    _create_robot(client, h, robot_id="wt-on")
    _create_robot(client, h, robot_id="wt-off", isActive=False)

    r = client.get(f"/api/admin/robots?is_active={raw}")
    assert [row["robot_id"] for row in r.json["data"]] == expected
