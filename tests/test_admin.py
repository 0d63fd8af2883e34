"""Tests for user, settings and audit administration."""
import pytest
from werkzeug.security import generate_password_hash

from app.botconsole import create_app
from app.botconsole.constants import PERMISSIONS
from app.botconsole.db import session_scope
from app.botconsole.models import Base, Permission, Role, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
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
        s.add(Role(key="operator", name="Operator"))
        u = User(username="admin", email="admin@example.com", password_hash=generate_password_hash("pw-secret"), is_active=True)
        u.roles.append(r)
        s.add_all(perms + [r, u])

    return app.test_client()


def _login(client):
    r = client.post("/auth/login", json={"username": "admin", "password": "pw-secret"})
    return {"X-CSRF-Token": r.json["csrf_token"]}


def test_user_create_and_list(client):
    h = _login(client)
    r = client.post(
        "/api/admin/users",
        json={"username": "alice", "email": "Alice@Example.com", "password": "longenough", "roles": ["operator"]},
        headers=h,
    )
    assert r.status_code == 201
    assert r.json["data"]["email"] == "alice@example.com"
    assert r.json["data"]["roles"] == ["operator"]

    r = client.get("/api/admin/users?q=ali")
    assert r.json["total"] == 1


def test_user_create_validation(client):
    h = _login(client)
    r = client.post("/api/admin/users", json={"username": "a", "password": "short"}, headers=h)
    assert r.status_code == 400
    assert len(r.json["errors"]) == 2

    r = client.post("/api/admin/users", json={"username": "admin", "password": "longenough"}, headers=h)
    assert r.status_code == 409

    r = client.post("/api/admin/users", json={"username": "bob", "password": "longenough", "roles": ["ghost"]}, headers=h)
    assert r.status_code == 400
    assert "ghost" in r.json["error"]


def test_cannot_deactivate_self(client):
    h = _login(client)
    me = client.get("/auth/me").json["data"]
    r = client.put(f"/api/admin/users/{me['id']}", json={"is_active": False}, headers=h)
    assert r.status_code == 400


def test_reset_password(client):
    h = _login(client)
    r = client.post("/api/admin/users", json={"username": "carol", "password": "longenough"}, headers=h)
    uid = r.json["data"]["id"]
    r = client.post(f"/api/admin/users/{uid}/reset-password", json={"password": "newpassword1"}, headers=h)
    assert r.status_code == 200

    client.post("/auth/logout", headers=h)
    r = client.post("/auth/login", json={"username": "carol", "password": "newpassword1"})
    assert r.status_code == 200


def test_settings_upsert_and_audit(client):
    h = _login(client)
    r = client.put("/api/admin/settings/worktool.base_url", json={"value": "https://wt.test", "category": "worktool"}, headers=h)
    assert r.status_code == 200
    assert r.json["data"]["value"] == "https://wt.test"

    r = client.get("/api/admin/settings?category=worktool")
    assert [row["key"] for row in r.json["data"]] == ["worktool.base_url"]

    r = client.get("/api/admin/audit?action=setting.update")
    assert r.json["total"] == 1
    assert r.json["data"][0]["metadata"]["new"] == "https://wt.test"
    assert r.json["data"][0]["actor_username"] == "admin"


def test_settings_require_value(client):
    h = _login(client)
    r = client.put("/api/admin/settings/x", json={}, headers=h)
    assert r.status_code == 400


def test_user_create_rejects_non_string_fields(client):
    h = _login(client)
    r = client.post("/api/admin/users", json={"username": 12345, "password": 12345678}, headers=h)
    assert r.status_code == 400
    assert r.json["errors"] == [
        "username must be a string.",
        "Password must be at least 8 characters.",
    ]

    r = client.put("/api/admin/users/1", json={"email": ["a@example.com"]}, headers=h)
    assert r.status_code == 400


def test_roles_and_settings_paging(client):
    h = _login(client)
    for key in ("a.one", "b.two", "c.three"):
        client.put(f"/api/admin/settings/{key}", json={"value": "x"}, headers=h)

    r = client.get("/api/admin/roles?limit=1")
    assert r.json["total"] == 2
    assert [row["key"] for row in r.json["data"]] == ["admin"]

    r = client.get("/api/admin/settings?limit=2&offset=1")
    assert r.json["total"] == 3
    assert len(r.json["data"]) == 2
