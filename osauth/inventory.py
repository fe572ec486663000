# FILE: osauth/inventory.py
"""
Inventory collaborators: where instance snapshots come from.

  - InventoryClient: the one call the login path needs.
  - OpenStackInventory: Keystone v3 authentication + Nova server lookup over
    plain urllib.
  - InMemoryInventory: fixed snapshots, for tests and local development.
  - ComputeClientCache: lazily builds the OpenStack client from the stored
    "config" record and drops it when that record changes.
"""
from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request as UrlReq
from urllib.request import urlopen

from .errors import InstanceNotFound, InventoryError
from .models import InstanceSnapshot, PluginConfig
from .storage import Storage, get_json

logger = logging.getLogger(__name__)

CONFIG_KEY = "config"

_USER_AGENT = "osauth/1.0"


class InventoryClient(ABC):
    @abstractmethod
    def fetch_instance(self, instance_id: str) -> InstanceSnapshot:
        """Return the current snapshot, or raise InstanceNotFound / InventoryError."""


# ---------------------------------------------------------------------------
# In-memory inventory
# ---------------------------------------------------------------------------


class InMemoryInventory(InventoryClient):
    def __init__(self, *snapshots: InstanceSnapshot) -> None:
        self._g = threading.RLock()
        self._items: Dict[str, InstanceSnapshot] = {s.id: s for s in snapshots}

    def put(self, snapshot: InstanceSnapshot) -> None:
        with self._g:
            self._items[snapshot.id] = snapshot

    def remove(self, instance_id: str) -> None:
        with self._g:
            self._items.pop(instance_id, None)

    def fetch_instance(self, instance_id: str) -> InstanceSnapshot:
        with self._g:
            snap = self._items.get(instance_id)
        if snap is None:
            raise InstanceNotFound(f"instance {instance_id!r} not found")
        return snap


# ---------------------------------------------------------------------------
# OpenStack (Keystone v3 + Nova)
# ---------------------------------------------------------------------------


def _scope_domain(domain_id: str, domain_name: str) -> Optional[Dict[str, str]]:
    if domain_id:
        return {"id": domain_id}
    if domain_name:
        return {"name": domain_name}
    return None


def build_auth_request(cfg: PluginConfig) -> Dict[str, Any]:
    """
    Keystone v3 POST /auth/tokens body for the configured credentials.

    tenant_id / tenant_name take precedence over project_id / project_name.
    """
    if cfg.token:
        identity: Dict[str, Any] = {"methods": ["token"], "token": {"id": cfg.token}}
    else:
        user: Dict[str, Any] = {"password": cfg.password}
        if cfg.user_id:
            user["id"] = cfg.user_id
        elif cfg.username:
            user["name"] = cfg.username
            dom = _scope_domain(cfg.user_domain_id, cfg.user_domain_name) or _scope_domain(
                cfg.domain_id, cfg.domain_name
            )
            if dom is not None:
                user["domain"] = dom
        else:
            raise InventoryError("config requires token, user_id or username")
        identity = {"methods": ["password"], "password": {"user": user}}

    project_id = cfg.tenant_id or cfg.project_id
    project_name = cfg.tenant_name or cfg.project_name

    scope: Optional[Dict[str, Any]] = None
    if project_id:
        scope = {"project": {"id": project_id}}
    elif project_name:
        project: Dict[str, Any] = {"name": project_name}
        dom = _scope_domain(cfg.project_domain_id, cfg.project_domain_name) or _scope_domain(
            cfg.domain_id, cfg.domain_name
        )
        if dom is not None:
            project["domain"] = dom
        scope = {"project": project}
    else:
        dom = _scope_domain(cfg.domain_id, cfg.domain_name)
        if dom is not None:
            scope = {"domain": dom}

    auth: Dict[str, Any] = {"identity": identity}
    if scope is not None:
        auth["scope"] = scope
    return {"auth": auth}


def _identity_base(auth_url: str) -> str:
    base = (auth_url or "").strip().rstrip("/")
    if not base:
        raise InventoryError("config requires auth_url")
    if not base.endswith("/v3"):
        base += "/v3"
    return base


def find_compute_endpoint(catalog: Any, region: str = "") -> str:
    """Public compute endpoint from a Keystone v3 catalog."""
    for svc in catalog or []:
        if not isinstance(svc, dict) or svc.get("type") != "compute":
            continue
        for ep in svc.get("endpoints") or []:
            if ep.get("interface") != "public":
                continue
            if region and region not in (ep.get("region_id"), ep.get("region")):
                continue
            url = str(ep.get("url") or "").rstrip("/")
            if url:
                return url
    raise InventoryError("no public compute endpoint in service catalog")


class OpenStackInventory(InventoryClient):
    """
    Fetches servers from Nova with a Keystone v3 token.

    The token and compute endpoint are obtained on first use and refreshed
    once when Nova answers 401. Only the refresh is serialized; server
    requests run concurrently.
    """

    def __init__(
        self,
        cfg: PluginConfig,
        *,
        timeout_s: float = 10.0,
        opener: Callable[..., Any] = urlopen,
    ) -> None:
        self._cfg = cfg
        self._timeout = float(timeout_s)
        self._open = opener
        self._lock = threading.RLock()
        self._token: Optional[str] = None
        self._compute_url: Optional[str] = None

    def _send(self, req: UrlReq) -> Tuple[int, Dict[str, str], bytes]:
        try:
            with self._open(req, timeout=self._timeout) as resp:
                status = int(getattr(resp, "status", 200))
                headers = {k.lower(): v for k, v in resp.headers.items()}
                return status, headers, resp.read()
        except HTTPError as e:
            return e.code, {k.lower(): v for k, v in (e.headers or {}).items()}, b""
        except (URLError, OSError) as e:
            raise InventoryError(f"inventory request failed: {e}") from e

    def _authenticate(self) -> None:
        url = _identity_base(self._cfg.auth_url) + "/auth/tokens"
        body = json.dumps(build_auth_request(self._cfg)).encode("utf-8")
        req = UrlReq(
            url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json", "User-Agent": _USER_AGENT},
        )
        status, headers, raw = self._send(req)
        if status not in (200, 201):
            raise InventoryError(f"identity service returned {status}")
        token = headers.get("x-subject-token")
        if not token:
            raise InventoryError("identity service returned no token")
        try:
            doc = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise InventoryError("identity service returned invalid JSON") from e
        self._compute_url = find_compute_endpoint(
            (doc.get("token") or {}).get("catalog"), self._cfg.region
        )
        self._token = token
        logger.info("authenticated to identity service at %s", url)

    def _credentials(self, rejected: Optional[str] = None) -> Tuple[str, str]:
        """Current token and compute URL; re-authenticates when missing or rejected."""
        with self._lock:
            if self._token is None or self._token == rejected:
                self._authenticate()
            return self._token or "", self._compute_url or ""

    def fetch_instance(self, instance_id: str) -> InstanceSnapshot:
        rejected: Optional[str] = None
        for attempt in range(2):
            token, compute_url = self._credentials(rejected)
            req = UrlReq(
                f"{compute_url}/servers/{quote(instance_id, safe='')}",
                method="GET",
                headers={
                    "Accept": "application/json",
                    "User-Agent": _USER_AGENT,
                    "X-Auth-Token": token,
                },
            )
            status, _, raw = self._send(req)
            if status == 401 and attempt == 0:
                logger.info("compute token rejected; re-authenticating")
                rejected = token
                continue
            break

        if status == 404:
            raise InstanceNotFound(f"instance {instance_id!r} not found")
        if status != 200:
            raise InventoryError(f"compute service returned {status}")
        try:
            doc = json.loads(raw.decode("utf-8"))
            return InstanceSnapshot.from_server(doc["server"])
        except (ValueError, KeyError, TypeError) as e:
            raise InventoryError("compute service returned an unreadable server") from e


# ---------------------------------------------------------------------------
# Client cache
# ---------------------------------------------------------------------------


class ComputeClientCache:
    """
    Owns the process's inventory client.

    Built on first use from the stored config; invalidate() forces the next
    caller to rebuild it.
    """

    def __init__(
        self,
        storage: Storage,
        *,
        timeout_s: float = 10.0,
        factory: Optional[Callable[[PluginConfig], InventoryClient]] = None,
    ) -> None:
        self._storage = storage
        self._timeout = timeout_s
        self._factory = factory or (lambda cfg: OpenStackInventory(cfg, timeout_s=self._timeout))
        self._lock = threading.Lock()
        self._client: Optional[InventoryClient] = None

    def get(self) -> InventoryClient:
        with self._lock:
            if self._client is not None:
                return self._client
            cfg = get_json(self._storage, CONFIG_KEY, PluginConfig)
            if cfg is None:
                raise InventoryError("backend is not configured")
            self._client = self._factory(cfg)
            return self._client

    def invalidate(self) -> None:
        with self._lock:
            self._client = None
