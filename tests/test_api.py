""""使用临时 SQLite；

通过 TestClient 走一遍 /api/register → /api/login → /api/authorize → /api/me；

校验信封结构 {"e", "d"}、受保护路由的 401，以及请求体校验失败的 {"e": 3}。"""
# tests/test_api.py
import os

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("LOG_TO_FILE", "false")

from authbridge.core.response import ErrorCode  # noqa: E402
from authbridge.main import app  # noqa: E402


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setenv("USER_TABLE", "api_users")
    with TestClient(app) as c:
        yield c


def _register(client, username="alice", password="secret"):
    r = client.post("/api/register", json={"username": username, "password": password})
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert r.headers.get("x-request-id")


def test_register_login_authorize_me(client):
    body = _register(client)
    assert body["e"] == ErrorCode.SUCCESS
    assert body["d"]["username"] == "alice"

    r = client.post("/api/login", json={"username": "alice", "password": "secret"})
    assert r.status_code == 200
    token = r.json()["d"]["token"]
    assert token != body["d"]["token"]

    r = client.get("/api/authorize", headers={"token": token})
    assert r.json()["e"] == ErrorCode.SUCCESS
    assert r.json()["d"]["token"] == token

    r = client.get("/api/me", headers={"token": token})
    assert r.status_code == 200
    me = r.json()
    assert me["e"] == ErrorCode.SUCCESS
    assert me["d"]["username"] == "alice"


def test_business_errors_are_envelopes(client):
    _register(client)
    assert _register(client)["e"] == ErrorCode.USERNAME_TAKEN

    r = client.post("/api/login", json={"username": "alice", "password": "nope"})
    assert r.status_code == 200
    assert r.json() == {"e": ErrorCode.WRONG_PASSWORD}

    r = client.post("/api/login", json={"username": "bob", "password": "x"})
    assert r.json() == {"e": ErrorCode.USERNAME_NOT_FOUND}

    r = client.get("/api/authorize", headers={"token": "garbage-token"})
    assert r.json() == {"e": ErrorCode.INVALID_TOKEN}


def test_me_requires_valid_token(client):
    r = client.get("/api/me")
    assert r.status_code == 401
    assert r.json() == {"e": ErrorCode.UNAUTHORIZED}

    r = client.get("/api/me", headers={"token": "garbage-token"})
    assert r.status_code == 401
    assert r.json() == {"e": ErrorCode.UNAUTHORIZED}


def test_malformed_body_is_bad_request(client):
    r = client.post("/api/register", json={"username": "alice"})
    assert r.status_code == 422
    assert r.json() == {"e": ErrorCode.BAD_REQUEST}


def test_request_id_is_echoed(client):
    r = client.get("/health", headers={"x-request-id": "rid-123"})
    assert r.headers["x-request-id"] == "rid-123"
