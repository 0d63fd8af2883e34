"""Tests for the QA knowledge base: CRUD, matching and CSV import."""
import io

import pytest
from werkzeug.security import generate_password_hash

from app.botconsole import create_app
from app.botconsole.constants import PERMISSIONS
from app.botconsole.db import session_scope
from app.botconsole.models import Base, Permission, Role, User
from app.botconsole.modules.qa.models import QAEntry
from app.botconsole.modules.qa.parsers.csv import parse_qa_csv


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


def _entry(client, h, **payload):
    r = client.post("/api/admin/qa", json=payload, headers=h)
    assert r.status_code == 201, r.json
    return r.json["data"]


def _match(client, h, message, **extra):
    r = client.post("/api/admin/qa/match", json={"message": message, **extra}, headers=h)
    assert r.status_code == 200
    return r.json["data"]


def test_create_and_list(client):
    h = _login(client)
    entry = _entry(client, h, keyword="价格", reply="请联系销售", relatedKeywords=["多少钱", " 报价 "])
    assert entry["related_keywords"] == "多少钱,报价"
    assert entry["receiver_type"] == "all"
    assert entry["priority"] == 5

    r = client.get("/api/admin/qa?q=报价")
    assert r.json["total"] == 1


def test_create_validation(client):
    h = _login(client)
    r = client.post("/api/admin/qa", json={"keyword": "", "receiverType": "robot", "priority": 0}, headers=h)
    assert r.status_code == 400
    assert len(r.json["errors"]) == 4


def test_exact_beats_fuzzy(client):
    h = _login(client)
    _entry(client, h, keyword="退款", reply="fuzzy refund", priority=1)
    _entry(client, h, keyword="退款", reply="exact refund", isExactMatch=True, priority=9)

    assert _match(client, h, " 退款 ")["reply"] == "exact refund"
    data = _match(client, h, "我要退款")
    assert data["reply"] == "fuzzy refund"
    assert data["type"] == "fuzzy"


def test_fuzzy_priority_and_related_keywords(client):
    h = _login(client)
    _entry(client, h, keyword="发货", reply="low", priority=8)
    _entry(client, h, keyword="物流", reply="high", relatedKeywords="发货,快递", priority=2)

    data = _match(client, h, "什么时候发货")
    assert data["reply"] == "high"
    assert data["keyword"] == "发货"


def test_match_scoping(client):
    h = _login(client)
    _entry(client, h, keyword="hello", reply="group only", receiverType="group", groupName="VIP")
    _entry(client, h, keyword="hello", reply="private", receiverType="user", priority=9)

    assert _match(client, h, "hello there") == {"matched": False}
    assert _match(client, h, "hello", receiverType="user")["reply"] == "private"
    assert _match(client, h, "hello", receiverType="group", groupName="Other") == {"matched": False}
    assert _match(client, h, "hello", receiverType="group", groupName="VIP")["reply"] == "group only"


def test_inactive_entries_do_not_match(client):
    h = _login(client)
    entry = _entry(client, h, keyword="hi", reply="hey")
    r = client.put(f"/api/admin/qa/{entry['id']}", json={"isActive": False}, headers=h)
    assert r.json["data"]["is_active"] is False
    assert _match(client, h, "hi") == {"matched": False}


def test_match_requires_message(client):
    h = _login(client)
    r = client.post("/api/admin/qa/match", json={"message": "  "}, headers=h)
    assert r.status_code == 400


def test_delete(client):
    h = _login(client)
    entry = _entry(client, h, keyword="hi", reply="hey")
    assert client.delete(f"/api/admin/qa/{entry['id']}", headers=h).status_code == 200
    assert client.get(f"/api/admin/qa/{entry['id']}").status_code == 404


def test_parse_qa_csv():
    data = "keyword,reply,isExactMatch\n你好,您好,true\n,,\n价格,,\n".encode("utf-8-sig")
    rows = parse_qa_csv(data)
    assert [n for n, _ in rows] == [2, 4]
    assert rows[0][1]["is_exact_match"] == "true"

    with pytest.raises(ValueError):
        parse_qa_csv(b"question,answer\nx,y\n")


def test_csv_import_keeps_valid_rows(app, client):
    h = _login(client)
    csv_bytes = "keyword,reply,priority\n你好,您好,1\n价格,,2\n营业时间,9-18点,99\n".encode("utf-8")
    r = client.post(
        "/api/admin/qa/import",
        data={"file": (io.BytesIO(csv_bytes), "qa.csv")},
        headers=h,
        content_type="multipart/form-data",
    )
    assert r.status_code == 200
    result = r.json["data"]
    assert result["total"] == 3
    assert result["created"] == 1
    assert result["failed"] == 2
    assert [row["row"] for row in result["results"] if not row["success"]] == [3, 4]

    with session_scope(app) as s:
        assert s.query(QAEntry).count() == 1


def test_json_import_and_bad_upload(client):
    h = _login(client)
    r = client.post(
        "/api/admin/qa/import",
        json={"entries": [{"keyword": "a", "reply": "b"}, "junk"]},
        headers=h,
    )
    assert r.json["data"]["created"] == 1
    assert r.json["data"]["results"][1]["errors"] == ["Row must be an object."]

    r = client.post(
        "/api/admin/qa/import",
        data={"file": (io.BytesIO(b"x"), "qa.xlsx")},
        headers=h,
        content_type="multipart/form-data",
    )
    assert r.status_code == 400


def test_json_import_rejects_non_string_fields(app, client):
    h = _login(client)
    r = client.post(
        "/api/admin/qa/import",
        json={
            "entries": [
                {"keyword": "hi", "reply": "hello"},
                {"keyword": 123, "reply": "x"},
                {"keyword": "k", "reply": ["not", "text"]},
                {"keyword": "k", "reply": "r", "relatedKeywords": 7},
            ]
        },
        headers=h,
    )
    assert r.status_code == 200
    result = r.json["data"]
    assert result["created"] == 1
    assert result["failed"] == 3
    assert result["results"][1]["errors"] == ["keyword must be a string."]
    assert result["results"][2]["errors"] == ["reply must be a string."]
    assert result["results"][3]["errors"] == ["related_keywords must be a string or a list."]

    with session_scope(app) as s:
        assert [e.keyword for e in s.query(QAEntry).all()] == ["hi"]


def test_update_rejects_non_string_keyword(client):
    h = _login(client)
    entry = _entry(client, h, keyword="价格", reply="请联系销售")
    r = client.put(f"/api/admin/qa/{entry['id']}", json={"keyword": 42}, headers=h)
    assert r.status_code == 400
    assert r.json["error"] == "keyword must be a string."


def test_list_paging(client):
    h = _login(client)
    for i in range(3):
        _entry(client, h, keyword=f"kw{i}", reply="r")

    r = client.get("/api/admin/qa?limit=1")
    assert r.json["total"] == 3
    assert [e["keyword"] for e in r.json["data"]] == ["kw0"]

    r = client.get("/api/admin/qa?limit=2&offset=2")
    assert [e["keyword"] for e in r.json["data"]] == ["kw2"]

    assert len(client.get("/api/admin/qa?limit=0").json["data"]) == 1
    assert len(client.get("/api/admin/qa?limit=abc&offset=-4").json["data"]) == 3


@pytest.mark.parametrize("raw,expected", [("yes", 1), ("1", 1), ("no", 2), ("0", 2)])
def test_is_active_query_flag(client, raw, expected):
    h = _login(client)
    _entry(client, h, keyword="on", reply="r")
    _entry(client, h, keyword="off1", reply="r", isActive=False)
    _entry(client, h, keyword="off2", reply="r", isActive="no")

    r = client.get(f"/api/admin/qa?is_active={raw}")
    assert r.json["total"] == expected
