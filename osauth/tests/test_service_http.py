# osauth/tests/test_service_http.py
import asyncio
import datetime as dt

import pytest
from fastapi.testclient import TestClient

from osauth.backend import AuthBackend
from osauth.config import Settings
from osauth.inventory import InMemoryInventory
from osauth.service_http import _sweep_loop, create_app
from osauth.storage import InMemoryStorage

TOKEN = "admin-secret"
ADMIN = {"X-OSAuth-Admin-Token": TOKEN}


@pytest.fixture
def backend(make_snapshot, clock):
    settings = Settings(sweep_interval_s=0)
    return AuthBackend(
        InMemoryStorage(),
        system=settings.system_view(),
        inventory=InMemoryInventory(make_snapshot()),
        clock=clock,
    )


@pytest.fixture
def client(backend):
    app = create_app(backend, Settings(sweep_interval_s=0), admin_token_value=TOKEN)
    c = TestClient(app)
    r = c.post(
        "/v1/role/test",
        json={"policies": "dev", "tenant_id": "fcad67a6189847c4aecfa3c81a05783b", "auth_limit": 2},
        headers=ADMIN,
    )
    assert r.status_code == 200
    r = c.post("/v1/config", json={"request_address_headers": ["X-Forwarded-For"]}, headers=ADMIN)
    assert r.status_code == 200
    return c


def _login(client, ip="192.168.1.1", role="test"):
    return client.post(
        "/v1/login",
        json={"instance_id": "a1b2c3", "role": role},
        headers={"X-Forwarded-For": f"203.0.113.50, {ip}"},
    )


def test_healthz_and_request_id(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.headers["X-OSAuth-Request-Id"]
    assert client.get("/healthz", headers={"X-Request-Id": "abc"}).headers["X-OSAuth-Request-Id"] == "abc"


def test_login_ok(client):
    r = _login(client)
    assert r.status_code == 200
    auth = r.json()["auth"]
    assert auth["alias"] == "a1b2c3"
    assert auth["policies"] == ["dev"]
    assert auth["metadata"] == {"role": "test"}


def test_login_failures_are_indistinguishable(client):
    bad_addr = _login(client, ip="8.8.8.8")
    bad_role = _login(client, role="nope")
    for r in (bad_addr, bad_role):
        assert r.status_code == 400
        assert r.json() == {"detail": "login denied"}

    _login(client)  # attempt 2 of 2
    over = _login(client)
    assert over.status_code == 400
    assert over.json() == {"detail": "login denied"}


def test_login_missing_fields(client):
    r = client.post("/v1/login", json={"role": "test"})
    assert r.status_code == 400
    assert r.json()["detail"] == "instance_id required"


def test_admin_guard(client):
    assert client.get("/v1/roles").status_code == 403
    assert client.get("/v1/roles", headers={"X-OSAuth-Admin-Token": "wrong-secret"}).status_code == 403
    assert client.get("/v1/roles", headers=ADMIN).status_code == 200


def test_admin_closed_without_token(backend):
    c = TestClient(create_app(backend, Settings(sweep_interval_s=0), admin_token_value=""))
    assert c.get("/v1/roles", headers=ADMIN).status_code == 401


def test_role_crud(client):
    r = client.get("/v1/role/TEST", headers=ADMIN)
    assert r.status_code == 200
    body = r.json()
    assert body["auth_limit"] == 2 and body["auth_period"] == 120 and body["ttl"] == 0

    r = client.post("/v1/role/big", json={"ttl": 10**8, "max_ttl": 2 * 10**8}, headers=ADMIN)
    assert r.status_code == 200
    assert len(r.json()["warnings"]) == 2

    r = client.post("/v1/role/bad", json={"auth_limit": -1}, headers=ADMIN)
    assert r.status_code == 400
    assert "auth_limit cannot be negative" in r.json()["detail"]

    assert client.get("/v1/roles", headers=ADMIN).json() == {"keys": ["big", "test"]}
    assert client.delete("/v1/role/big", headers=ADMIN).status_code == 200
    assert client.get("/v1/role/big", headers=ADMIN).status_code == 404


def test_config_hides_secrets(client):
    client.post("/v1/config", json={"auth_url": "http://ks", "password": "pw"}, headers=ADMIN)
    body = client.get("/v1/config", headers=ADMIN).json()
    assert body["auth_url"] == "http://ks"
    assert "password" not in body


def test_renew(client):
    auth = _login(client).json()["auth"]
    r = client.post("/v1/renew", json={"auth": auth, "addresses": ["192.168.1.1"]}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["auth"]["alias"] == "a1b2c3"

    r = client.post("/v1/renew", json={"auth": auth, "addresses": ["8.8.8.8"]}, headers=ADMIN)
    assert r.status_code == 400


def test_tidy(client, clock):
    _login(client)
    assert client.post("/v1/tidy", headers=ADMIN).json() == {"removed": 0}
    clock.advance(seconds=300)
    assert client.post("/v1/tidy", headers=ADMIN).json() == {"removed": 1}


def test_metrics(client):
    _login(client)
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "osauth_login_total" in r.text
    assert "osauth_http_request_total" in r.text


def test_sweep_loop_survives_unexpected_errors():
    calls = []

    class FlakyBackend:
        def periodic(self, now):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

    async def run():
        task = asyncio.create_task(_sweep_loop(FlakyBackend(), 0.01))
        for _ in range(500):
            await asyncio.sleep(0.01)
            if len(calls) >= 2:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert len(calls) >= 2
