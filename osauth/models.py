# FILE: osauth/models.py
"""
Shared data types.

  - InstanceSnapshot:
      Point-in-time, read-only view of a compute instance as reported by the
      inventory service. Fetched fresh for every login or renewal.

  - Role / AuthAttempt / PluginConfig:
      Records persisted in the key-value store as JSON. Pydantic models so
      that a write followed by a read yields field-for-field equality.

  - SystemView / Auth:
      Lease ceilings supplied by the host, and the credential parameters a
      successful login produces.
"""
from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_METADATA_KEY = "vault-role"
DEFAULT_AUTH_PERIOD = _dt.timedelta(seconds=120)
DEFAULT_AUTH_LIMIT = 1

STATUS_ACTIVE = "ACTIVE"


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def parse_timestamp(raw: Any) -> _dt.datetime:
    """
    Parse an inventory timestamp ("2012-08-20T21:11:09Z" and friends).

    Naive values are taken to be UTC.
    """
    if isinstance(raw, _dt.datetime):
        ts = raw
    else:
        text = str(raw or "").strip()
        if not text:
            raise ValueError("empty timestamp")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = _dt.datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=_dt.timezone.utc)
    return ts


# ---------------------------------------------------------------------------
# Inventory snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class InterfaceAddress:
    version: int
    addr: str


@dataclass(frozen=True, slots=True)
class InstanceSnapshot:
    """
    Authoritative attributes of one compute instance.

    `addresses` maps a network label to the ordered interface addresses
    attached on that network, any IP version.
    """
    id: str
    name: str = ""
    status: str = ""
    tenant_id: str = ""
    user_id: str = ""
    created: _dt.datetime = field(default_factory=utcnow)
    access_ipv4: str = ""
    access_ipv6: str = ""
    addresses: Mapping[str, Tuple[InterfaceAddress, ...]] = field(default_factory=dict)
    metadata: Mapping[str, str] = field(default_factory=dict)

    def all_addresses(self) -> List[str]:
        """Every known address of the instance, access addresses first."""
        out: List[str] = []
        for a in (self.access_ipv4, self.access_ipv6):
            if a:
                out.append(a)
        for entries in self.addresses.values():
            for entry in entries:
                if entry.addr:
                    out.append(entry.addr)
        return out

    @classmethod
    def from_server(cls, doc: Mapping[str, Any]) -> "InstanceSnapshot":
        """
        Build a snapshot from a compute API server document
        (the object under "server" in GET /servers/{id}).
        """
        addresses: Dict[str, Tuple[InterfaceAddress, ...]] = {}
        for label, entries in (doc.get("addresses") or {}).items():
            parsed: List[InterfaceAddress] = []
            for entry in entries or []:
                if not isinstance(entry, Mapping):
                    continue
                try:
                    version = int(entry.get("version", 0) or 0)
                except (TypeError, ValueError):
                    version = 0
                parsed.append(InterfaceAddress(version=version, addr=str(entry.get("addr") or "")))
            addresses[str(label)] = tuple(parsed)

        metadata = {str(k): str(v) for k, v in (doc.get("metadata") or {}).items()}

        return cls(
            id=str(doc.get("id") or ""),
            name=str(doc.get("name") or ""),
            status=str(doc.get("status") or ""),
            tenant_id=str(doc.get("tenant_id") or doc.get("project_id") or ""),
            user_id=str(doc.get("user_id") or ""),
            created=parse_timestamp(doc.get("created")),
            access_ipv4=str(doc.get("accessIPv4") or ""),
            access_ipv6=str(doc.get("accessIPv6") or ""),
            addresses=addresses,
            metadata=metadata,
        )


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class Role(BaseModel):
    """
    Binds instances to token policies and attestation parameters.

    Durations of zero fall back to the system defaults at grant time.
    """
    model_config = ConfigDict(extra="forbid")

    name: str
    policies: List[str] = Field(default_factory=list)
    ttl: _dt.timedelta = _dt.timedelta(0)
    max_ttl: _dt.timedelta = _dt.timedelta(0)
    period: _dt.timedelta = _dt.timedelta(0)
    metadata_key: str = DEFAULT_METADATA_KEY
    tenant_id: str = ""
    user_id: str = ""
    auth_period: _dt.timedelta = DEFAULT_AUTH_PERIOD
    auth_limit: int = DEFAULT_AUTH_LIMIT


class AuthAttempt(BaseModel):
    """Per-instance attempt counter anchored to the first attempt's deadline."""
    model_config = ConfigDict(extra="forbid")

    name: str
    deadline: _dt.datetime
    count: int = Field(default=0, ge=0)


class PluginConfig(BaseModel):
    """
    Connection settings for the inventory (OpenStack identity + compute).

    Stored under the "config" key. `token` and `password` are write-only.
    """
    model_config = ConfigDict(extra="forbid")

    auth_url: str = ""
    token: str = ""
    user_id: str = ""
    username: str = ""
    password: str = ""
    project_id: str = ""
    project_name: str = ""
    tenant_id: str = ""
    tenant_name: str = ""
    user_domain_id: str = ""
    user_domain_name: str = ""
    project_domain_id: str = ""
    project_domain_name: str = ""
    domain_id: str = ""
    domain_name: str = ""
    region: str = ""
    request_address_headers: List[str] = Field(default_factory=list)

    def public_view(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"token", "password"})


# ---------------------------------------------------------------------------
# Host-facing types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SystemView:
    default_lease_ttl: _dt.timedelta
    max_lease_ttl: _dt.timedelta


@dataclass
class Auth:
    """
    Credential parameters produced by a successful login or renewal.

    `alias` is the instance id; `metadata["role"]` names the role used, which
    is what renewal looks up again.
    """
    policies: List[str]
    alias: str
    display_name: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    renewable: bool = True
    period: _dt.timedelta = _dt.timedelta(0)
    ttl: _dt.timedelta = _dt.timedelta(0)
    max_ttl: _dt.timedelta = _dt.timedelta(0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policies": list(self.policies),
            "alias": self.alias,
            "display_name": self.display_name,
            "metadata": dict(self.metadata),
            "renewable": self.renewable,
            "period": int(self.period.total_seconds()),
            "ttl": int(self.ttl.total_seconds()),
            "max_ttl": int(self.max_ttl.total_seconds()),
        }


@dataclass
class LoginResult:
    auth: Auth
    instance_id: str
    role: str
    attempt: int = 0
