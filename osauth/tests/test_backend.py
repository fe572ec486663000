# osauth/tests/test_backend.py
import datetime as dt

import pytest

from osauth.backend import AuthBackend, ConfigUpdate, cap_lease
from osauth.errors import (
    InstanceNotFound,
    InvalidRequest,
    InvalidRole,
    InventoryError,
    LoginDenied,
    RenewalDenied,
)
from osauth.inventory import ComputeClientCache, InMemoryInventory
from osauth.models import SystemView
from osauth.roles import RoleUpdate
from osauth.storage import InMemoryStorage

H = dt.timedelta(hours=1)
SYSTEM = SystemView(default_lease_ttl=12 * H, max_lease_ttl=24 * H)


@pytest.fixture
def inventory(make_snapshot):
    return InMemoryInventory(make_snapshot())


@pytest.fixture
def backend(inventory, clock):
    b = AuthBackend(InMemoryStorage(), system=SYSTEM, inventory=inventory, clock=clock)
    b.update_role(
        "test",
        RoleUpdate(
            policies="dev,ops",
            ttl=3600,
            tenant_id="fcad67a6189847c4aecfa3c81a05783b",
            auth_limit=2,
        ),
    )
    return b


def test_login_returns_auth(backend):
    res = backend.login("a1b2c3", "test", ["192.168.1.1"])
    auth = res.auth
    assert res.attempt == 1
    assert auth.alias == "a1b2c3"
    assert auth.display_name == "web-01"
    assert auth.policies == ["dev", "ops"]
    assert auth.metadata == {"role": "test"}
    assert auth.renewable is True
    assert auth.ttl == H
    assert auth.max_ttl == 24 * H
    assert auth.to_dict()["ttl"] == 3600


def test_login_role_name_is_case_insensitive(backend):
    assert backend.login("a1b2c3", "TEST", ["192.168.1.1"]).role == "test"


def test_login_requires_fields(backend):
    with pytest.raises(InvalidRequest, match="instance_id required"):
        backend.login("", "test", [])
    with pytest.raises(InvalidRequest, match="role required"):
        backend.login("a1b2c3", None, [])


@pytest.mark.parametrize(
    "instance_id, role, addrs, reason",
    [
        ("a1b2c3", "missing", ["192.168.1.1"], "role"),
        ("nope", "test", ["192.168.1.1"], "instance"),
        ("a1b2c3", "test", ["8.8.8.8"], "address"),
    ],
)
def test_login_denials_are_generic(backend, instance_id, role, addrs, reason):
    with pytest.raises(LoginDenied) as ei:
        backend.login(instance_id, role, addrs)
    assert str(ei.value) == "login denied"
    assert ei.value.reason == reason


def test_login_limit(backend):
    backend.login("a1b2c3", "test", ["192.168.1.1"])
    backend.login("a1b2c3", "test", ["192.168.1.1"])
    with pytest.raises(LoginDenied) as ei:
        backend.login("a1b2c3", "test", ["192.168.1.1"])
    assert ei.value.reason == "limit"


def test_login_deadline(backend, clock):
    clock.advance(seconds=121)
    with pytest.raises(LoginDenied) as ei:
        backend.login("a1b2c3", "test", ["192.168.1.1"])
    assert ei.value.reason == "deadline"


def test_role_write_rejects_auth_period_past_datetime_range(backend):
    with pytest.raises(InvalidRole, match="exceeds the maximum"):
        backend.update_role("test", RoleUpdate(auth_period=10**12))
    # the stored role is untouched and logins still work
    assert backend.login("a1b2c3", "test", ["192.168.1.1"]).attempt == 1


def test_periodic_sweeps_expired_attempts(backend, clock):
    backend.login("a1b2c3", "test", ["192.168.1.1"])
    assert backend.periodic() == 0
    clock.advance(seconds=121)
    assert backend.periodic() == 1
    assert backend.ledger.get("a1b2c3") is None


@pytest.mark.parametrize(
    "ttl, max_ttl, want",
    [
        (0, 0, (12 * H, 24 * H)),
        (H, 0, (H, 24 * H)),
        (0, 2 * H, (2 * H, 2 * H)),
        (30 * H, 48 * H, (24 * H, 24 * H)),
        (H, 2 * H, (H, 2 * H)),
    ],
)
def test_cap_lease(ttl, max_ttl, want):
    def as_td(v):
        return v if isinstance(v, dt.timedelta) else dt.timedelta(seconds=v)

    assert cap_lease(as_td(ttl), as_td(max_ttl), SYSTEM) == want


def test_renew(backend):
    auth = backend.login("a1b2c3", "test", ["192.168.1.1"]).auth
    renewed = backend.renew(auth, ["10.0.0.5"])
    assert renewed.alias == "a1b2c3"
    assert renewed.ttl == H
    assert renewed.metadata == {"role": "test"}


def test_renew_ignores_limit_and_deadline(backend, clock):
    auth = backend.login("a1b2c3", "test", ["192.168.1.1"]).auth
    backend.login("a1b2c3", "test", ["192.168.1.1"])
    clock.advance(hours=5)
    backend.renew(auth, ["192.168.1.1"])


def test_renew_rejects_changed_policies(backend):
    auth = backend.login("a1b2c3", "test", ["192.168.1.1"]).auth
    backend.update_role("test", RoleUpdate(policies="dev"))
    with pytest.raises(RenewalDenied, match="have changed"):
        backend.renew(auth, ["192.168.1.1"])


def test_renew_rejects_deleted_role(backend):
    auth = backend.login("a1b2c3", "test", ["192.168.1.1"]).auth
    backend.delete_role("test")
    with pytest.raises(RenewalDenied, match="no longer exists"):
        backend.renew(auth, ["192.168.1.1"])


def test_renew_rechecks_metadata_and_address(backend, inventory, make_snapshot):
    auth = backend.login("a1b2c3", "test", ["192.168.1.1"]).auth
    with pytest.raises(RenewalDenied):
        backend.renew(auth, ["8.8.8.8"])
    inventory.put(make_snapshot(metadata={"vault-role": "other"}))
    with pytest.raises(RenewalDenied):
        backend.renew(auth, ["192.168.1.1"])


def test_renew_requires_alias_and_role(backend):
    auth = backend.login("a1b2c3", "test", ["192.168.1.1"]).auth
    auth.alias = ""
    with pytest.raises(RenewalDenied, match="instance ID"):
        backend.renew(auth, [])
    auth.alias = "a1b2c3"
    auth.metadata = {}
    with pytest.raises(RenewalDenied, match="role name"):
        backend.renew(auth, [])


def test_config_read_hides_secrets():
    b = AuthBackend(InMemoryStorage(), system=SYSTEM)
    assert b.read_config() is None
    b.update_config(ConfigUpdate(auth_url="http://keystone:5000/v3", password="s3cret", token="t",
                                 domain_id="d-1", request_address_headers="X-Forwarded-For, X-Real-IP"))
    cfg = b.read_config()
    assert "password" not in cfg and "token" not in cfg
    assert cfg["domain_id"] == "d-1"
    assert cfg["request_address_headers"] == ["X-Forwarded-For", "X-Real-IP"]

    b.update_config(ConfigUpdate(username="admin"))
    cfg = b.read_config()
    assert cfg["auth_url"] == "http://keystone:5000/v3"
    assert cfg["username"] == "admin"


def test_config_update_invalidates_client(make_snapshot, clock):
    storage = InMemoryStorage()
    built = []

    def factory(cfg):
        built.append(cfg)
        return InMemoryInventory(make_snapshot())

    b = AuthBackend(
        storage, system=SYSTEM, clients=ComputeClientCache(storage, factory=factory), clock=clock
    )
    b.update_role("test", RoleUpdate(auth_limit=5))
    with pytest.raises(InventoryError, match="not configured"):
        b.login("a1b2c3", "test", ["192.168.1.1"])

    b.update_config(ConfigUpdate(auth_url="http://a"))
    b.login("a1b2c3", "test", ["192.168.1.1"])
    b.login("a1b2c3", "test", ["192.168.1.1"])
    assert len(built) == 1

    b.invalidate("role/test")
    b.login("a1b2c3", "test", ["192.168.1.1"])
    assert len(built) == 1

    b.update_config(ConfigUpdate(auth_url="http://b"))
    b.login("a1b2c3", "test", ["192.168.1.1"])
    assert [c.auth_url for c in built] == ["http://a", "http://b"]


def test_inventory_not_found_is_denied(backend, inventory):
    inventory.remove("a1b2c3")
    with pytest.raises(LoginDenied):
        backend.login("a1b2c3", "test", ["192.168.1.1"])
    with pytest.raises(InstanceNotFound):
        inventory.fetch_instance("a1b2c3")
