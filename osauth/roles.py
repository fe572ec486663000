# FILE: osauth/roles.py
"""
Role validation and persistence.

Validation separates hard errors (the write is refused) from warnings (the
write proceeds and the value is capped when a credential is granted):

  errors:
    - metadata_key empty
    - auth_period, auth_limit or max_ttl negative
    - max_ttl set and shorter than ttl
    - period longer than the system maximum lease
  warnings:
    - ttl longer than the system default lease
    - max_ttl longer than the system maximum lease
"""
from __future__ import annotations

import datetime as _dt
import logging
from typing import Any, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator

from .errors import InvalidRole
from .models import Role, SystemView
from .storage import Storage, get_json, put_json

logger = logging.getLogger(__name__)

ROLE_PREFIX = "role/"

# login deadlines are instance creation time plus this; keep them representable
MAX_AUTH_PERIOD = _dt.timedelta(days=365 * 100)


def _secs(d: _dt.timedelta) -> int:
    return int(d.total_seconds())


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


def parse_policies(raw: Union[str, Iterable[str], None]) -> List[str]:
    """
    Normalize a policy list.

    Accepts a comma separated string or a sequence. Names are trimmed and
    lower-cased, empties dropped, duplicates removed and the result sorted.
    "root" swallows every other policy.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        items = raw.split(",")
    else:
        items = [str(p) for p in raw]

    out = set()
    for p in items:
        name = p.strip().lower()
        if not name:
            continue
        if name == "root":
            return ["root"]
        out.add(name)
    return sorted(out)


def equivalent_policies(a: Iterable[str], b: Iterable[str]) -> bool:
    """Compare two policy sets, ignoring order, case, duplicates and "default"."""
    def _norm(ps: Iterable[str]) -> List[str]:
        return [p for p in parse_policies(list(ps)) if p != "default"]

    return _norm(a) == _norm(b)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_role(
    role: Role,
    default_ttl: _dt.timedelta,
    max_ttl: _dt.timedelta,
) -> List[str]:
    """Return warnings for a role, or raise InvalidRole."""
    warnings: List[str] = []

    if not role.metadata_key:
        raise InvalidRole("metadata_key cannot be empty")
    if role.auth_period < _dt.timedelta(0):
        raise InvalidRole("auth_period cannot be negative")
    if role.auth_period > MAX_AUTH_PERIOD:
        raise InvalidRole(
            f"auth_period of {_secs(role.auth_period)} seconds exceeds the maximum "
            f"of {_secs(MAX_AUTH_PERIOD)} seconds"
        )
    if role.auth_limit < 0:
        raise InvalidRole("auth_limit cannot be negative")

    if role.ttl > default_ttl:
        warnings.append(
            f"Given ttl of {_secs(role.ttl)} seconds greater than current mount/system "
            f"default of {_secs(default_ttl)} seconds; ttl will be capped at login time"
        )
    if role.max_ttl > max_ttl:
        warnings.append(
            f"Given max_ttl of {_secs(role.max_ttl)} seconds greater than current mount/system "
            f"default of {_secs(max_ttl)} seconds; max_ttl will be capped at login time"
        )

    if role.max_ttl < _dt.timedelta(0):
        raise InvalidRole("max_ttl cannot be negative")
    if role.max_ttl != _dt.timedelta(0) and role.max_ttl < role.ttl:
        raise InvalidRole("ttl should be shorter than max_ttl")
    if role.period > max_ttl:
        raise InvalidRole(
            f"'period' of '{_secs(role.period)}s' is greater than the backend's "
            f"maximum lease TTL of '{_secs(max_ttl)}s'"
        )

    return warnings


# ---------------------------------------------------------------------------
# Administrative update request
# ---------------------------------------------------------------------------


class RoleUpdate(BaseModel):
    """
    Partial role write. Only fields present in the request are applied;
    durations are given in whole seconds.
    """
    model_config = ConfigDict(extra="forbid")

    policies: Optional[Union[str, List[str]]] = None
    ttl: Optional[int] = None
    max_ttl: Optional[int] = None
    period: Optional[int] = None
    metadata_key: Optional[str] = None
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    auth_period: Optional[int] = None
    auth_limit: Optional[int] = None

    @field_validator("metadata_key", "tenant_id", "user_id")
    @classmethod
    def _strip(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v

    def apply_to(self, role: Role) -> Role:
        fields = self.model_dump(exclude_unset=True)
        update: dict = {}
        for key, val in fields.items():
            if val is None:
                continue
            if key == "policies":
                update[key] = parse_policies(val)
            elif key in ("ttl", "max_ttl", "period", "auth_period"):
                try:
                    update[key] = _dt.timedelta(seconds=int(val))
                except OverflowError as e:
                    raise InvalidRole(f"{key} of {val} seconds is out of range") from e
            else:
                update[key] = val
        return role.model_copy(update=update)


def role_view(role: Role) -> dict:
    """Read representation: durations as integer seconds."""
    return {
        "name": role.name,
        "policies": list(role.policies),
        "ttl": _secs(role.ttl),
        "max_ttl": _secs(role.max_ttl),
        "period": _secs(role.period),
        "metadata_key": role.metadata_key,
        "tenant_id": role.tenant_id,
        "user_id": role.user_id,
        "auth_period": _secs(role.auth_period),
        "auth_limit": role.auth_limit,
    }


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def normalize_role_name(name: Any) -> str:
    return str(name or "").strip().lower()


class RoleStore:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    @staticmethod
    def _key(name: str) -> str:
        return ROLE_PREFIX + normalize_role_name(name)

    def read(self, name: str) -> Optional[Role]:
        if not normalize_role_name(name):
            return None
        return get_json(self._storage, self._key(name), Role)

    def write(self, role: Role, system: SystemView) -> List[str]:
        name = normalize_role_name(role.name)
        if not name:
            raise InvalidRole("role name is required")
        role = role.model_copy(update={"name": name})
        warnings = validate_role(role, system.default_lease_ttl, system.max_lease_ttl)
        put_json(self._storage, self._key(name), role)
        for w in warnings:
            logger.warning("role %s: %s", name, w)
        return warnings

    def delete(self, name: str) -> None:
        self._storage.delete(self._key(name))

    def list(self) -> List[str]:
        return [n for n in self._storage.list(ROLE_PREFIX) if not n.endswith("/")]
