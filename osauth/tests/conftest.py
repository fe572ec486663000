# osauth/tests/conftest.py
import datetime as dt

import pytest

from osauth.models import InstanceSnapshot, InterfaceAddress, Role
from osauth.storage import InMemoryStorage, SQLiteStorage

NOW = dt.datetime(2024, 5, 1, 12, 0, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kw):
        self.now = self.now + dt.timedelta(**kw)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["mem", "sqlite"])
def storage(request, tmp_path):
    if request.param == "mem":
        st = InMemoryStorage()
    else:
        st = SQLiteStorage(str(tmp_path / "osauth.db"))
    yield st
    st.close()


@pytest.fixture
def make_snapshot():
    def _make(**overrides):
        fields = dict(
            id="a1b2c3",
            name="web-01",
            status="ACTIVE",
            tenant_id="fcad67a6189847c4aecfa3c81a05783b",
            user_id="u-1",
            created=NOW,
            access_ipv4="192.168.1.1",
            access_ipv6="",
            addresses={
                "private": (
                    InterfaceAddress(version=4, addr="10.0.0.5"),
                    InterfaceAddress(version=6, addr="fd00::5"),
                ),
            },
            metadata={"vault-role": "test"},
        )
        fields.update(overrides)
        return InstanceSnapshot(**fields)

    return _make


@pytest.fixture
def role():
    return Role(
        name="test",
        policies=["dev"],
        tenant_id="fcad67a6189847c4aecfa3c81a05783b",
        auth_period=dt.timedelta(seconds=120),
        auth_limit=2,
    )
