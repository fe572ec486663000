# osauth/tests/test_roles.py
import datetime as dt

import pytest

from osauth.errors import InvalidRole
from osauth.models import Role, SystemView
from osauth.roles import (
    RoleStore,
    RoleUpdate,
    equivalent_policies,
    parse_policies,
    role_view,
    validate_role,
)

H = dt.timedelta(hours=1)
DEFAULT_TTL = 12 * H
MAX_TTL = 24 * H
SYSTEM = SystemView(default_lease_ttl=DEFAULT_TTL, max_lease_ttl=MAX_TTL)


def _role(**kw):
    return Role(name="test", **kw)


def test_defaults_are_valid():
    r = _role()
    assert r.metadata_key == "vault-role"
    assert r.auth_period == dt.timedelta(seconds=120)
    assert r.auth_limit == 1
    assert validate_role(r, DEFAULT_TTL, MAX_TTL) == []


@pytest.mark.parametrize(
    "fields, message",
    [
        ({"metadata_key": ""}, "metadata_key cannot be empty"),
        ({"auth_period": dt.timedelta(seconds=-1)}, "auth_period cannot be negative"),
        ({"auth_period": dt.timedelta(days=365 * 100 + 1)}, "auth_period of .* exceeds the maximum"),
        ({"auth_limit": -1}, "auth_limit cannot be negative"),
        ({"max_ttl": dt.timedelta(seconds=-1)}, "max_ttl cannot be negative"),
        ({"ttl": 2 * H, "max_ttl": H}, "ttl should be shorter than max_ttl"),
        ({"period": 25 * H}, "'period' of '90000s' is greater than"),
    ],
)
def test_hard_errors(fields, message):
    with pytest.raises(InvalidRole, match=message):
        validate_role(_role(**fields), DEFAULT_TTL, MAX_TTL)


def test_zero_max_ttl_does_not_bound_ttl():
    assert validate_role(_role(ttl=H, max_ttl=dt.timedelta(0)), DEFAULT_TTL, MAX_TTL) == []


def test_period_equal_to_max_is_allowed():
    assert validate_role(_role(period=MAX_TTL), DEFAULT_TTL, MAX_TTL) == []


def test_warnings():
    warnings = validate_role(_role(ttl=13 * H, max_ttl=25 * H), DEFAULT_TTL, MAX_TTL)
    assert warnings == [
        "Given ttl of 46800 seconds greater than current mount/system default of "
        "43200 seconds; ttl will be capped at login time",
        "Given max_ttl of 90000 seconds greater than current mount/system default of "
        "86400 seconds; max_ttl will be capped at login time",
    ]


def test_parse_policies():
    assert parse_policies("b, A ,,a,c") == ["a", "b", "c"]
    assert parse_policies(["dev", "Dev", " ops "]) == ["dev", "ops"]
    assert parse_policies("dev,root") == ["root"]
    assert parse_policies(None) == []
    assert parse_policies("") == []


def test_equivalent_policies():
    assert equivalent_policies(["a", "b"], ["B", "a", "a"])
    assert equivalent_policies(["a", "default"], ["a"])
    assert not equivalent_policies(["a"], ["a", "b"])


def test_store_round_trip(storage):
    store = RoleStore(storage)
    role = Role(
        name="Test",
        policies=["dev"],
        ttl=H,
        max_ttl=2 * H,
        period=dt.timedelta(0),
        metadata_key="vault-role",
        tenant_id="t",
        user_id="u",
        auth_period=dt.timedelta(seconds=300),
        auth_limit=3,
    )
    assert store.write(role, SYSTEM) == []
    got = store.read("TEST")
    assert got == role.model_copy(update={"name": "test"})
    assert store.list() == ["test"]
    store.delete("test")
    assert store.read("test") is None
    assert store.list() == []


def test_store_rejects_invalid_role(storage):
    store = RoleStore(storage)
    with pytest.raises(InvalidRole):
        store.write(_role(auth_limit=-1), SYSTEM)
    assert store.read("test") is None


def test_role_update_applies_only_supplied_fields():
    base = _role(policies=["old"], auth_limit=3)
    upd = RoleUpdate(policies="b,a", ttl=60, auth_period=30)
    out = upd.apply_to(base)
    assert out.policies == ["a", "b"]
    assert out.ttl == dt.timedelta(seconds=60)
    assert out.auth_period == dt.timedelta(seconds=30)
    assert out.auth_limit == 3
    assert out.metadata_key == "vault-role"


def test_role_update_rejects_unrepresentable_duration():
    with pytest.raises(InvalidRole, match="auth_period of .* out of range"):
        RoleUpdate(auth_period=10**15).apply_to(_role())


def test_role_view_uses_seconds():
    view = role_view(_role(ttl=H, auth_limit=2))
    assert view["ttl"] == 3600
    assert view["auth_period"] == 120
    assert view["auth_limit"] == 2
    assert view["metadata_key"] == "vault-role"
