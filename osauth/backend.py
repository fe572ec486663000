# FILE: osauth/backend.py
"""
Auth backend: the operations a host exposes.

  - login / renew            : instance authentication and token renewal
  - periodic                 : expired attempt sweep, driven by the host tick
  - invalidate               : storage change notification from the host
  - read_config / update_config
  - read_role / update_role / delete_role / list_roles

Login failures are collapsed into LoginDenied. The specific reason goes to
the structured log and the osauth_attest_fail_total{reason} counter only.
"""
from __future__ import annotations

import datetime as _dt
import logging
import time
from typing import Callable, Iterable, List, Optional, Tuple, Union

from prometheus_client import Counter, Histogram
from pydantic import BaseModel, ConfigDict

from .attestor import Attestor
from .config import Settings
from .errors import (
    AttestationError,
    InstanceNotFound,
    InvalidRequest,
    LoginDenied,
    RenewalDenied,
)
from .inventory import CONFIG_KEY, ComputeClientCache, InventoryClient
from .ledger import AttemptLedger
from .logging import log_attestation
from .models import Auth, LoginResult, PluginConfig, Role, SystemView, utcnow
from .roles import RoleStore, RoleUpdate, equivalent_policies, normalize_role_name
from .storage import Storage, get_json, make_storage, put_json

logger = logging.getLogger(__name__)

_LOGIN_TOTAL = Counter("osauth_login_total", "Login outcomes", ["result"])
_ATTEST_FAIL = Counter("osauth_attest_fail_total", "Attestation failures", ["reason"])
_ATTEST_LAT = Histogram(
    "osauth_attest_latency_seconds",
    "Login attestation latency (s)",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)


def cap_lease(
    ttl: _dt.timedelta,
    max_ttl: _dt.timedelta,
    system: SystemView,
) -> Tuple[_dt.timedelta, _dt.timedelta]:
    """
    Effective (ttl, max_ttl) for a grant.

    Zero means "system value"; both end up within the system maximum and
    ttl never exceeds max_ttl.
    """
    zero = _dt.timedelta(0)
    eff_max = max_ttl if max_ttl > zero else system.max_lease_ttl
    eff_max = min(eff_max, system.max_lease_ttl)
    eff_ttl = ttl if ttl > zero else system.default_lease_ttl
    eff_ttl = min(eff_ttl, eff_max)
    return eff_ttl, eff_max


class ConfigUpdate(BaseModel):
    """Partial config write; only fields present in the request are applied."""
    model_config = ConfigDict(extra="forbid")

    auth_url: Optional[str] = None
    token: Optional[str] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    user_domain_id: Optional[str] = None
    user_domain_name: Optional[str] = None
    project_domain_id: Optional[str] = None
    project_domain_name: Optional[str] = None
    domain_id: Optional[str] = None
    domain_name: Optional[str] = None
    region: Optional[str] = None
    request_address_headers: Optional[Union[str, List[str]]] = None

    def apply_to(self, cfg: PluginConfig) -> PluginConfig:
        update = {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}
        hdrs = update.get("request_address_headers")
        if hdrs is not None:
            items = hdrs.split(",") if isinstance(hdrs, str) else hdrs
            update["request_address_headers"] = [h.strip() for h in items if h.strip()]
        return cfg.model_copy(update=update)


class AuthBackend:
    def __init__(
        self,
        storage: Storage,
        *,
        system: SystemView,
        inventory: Optional[InventoryClient] = None,
        clients: Optional[ComputeClientCache] = None,
        clock: Callable[[], _dt.datetime] = utcnow,
        cas_max_retries: int = 16,
    ) -> None:
        self.storage = storage
        self.system = system
        self._clock = clock
        self._inventory = inventory
        self._clients = clients or ComputeClientCache(storage)
        self.roles = RoleStore(storage)
        self.ledger = AttemptLedger(storage, max_retries=cas_max_retries, clock=clock)
        self.attestor = Attestor(self.ledger, clock=clock)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        storage: Optional[Storage] = None,
        inventory: Optional[InventoryClient] = None,
    ) -> "AuthBackend":
        st = storage or make_storage(settings.storage_dsn)
        return cls(
            st,
            system=settings.system_view(),
            inventory=inventory,
            clients=ComputeClientCache(st, timeout_s=settings.inventory_timeout_s),
            cas_max_retries=settings.cas_max_retries,
        )

    def _client(self) -> InventoryClient:
        if self._inventory is not None:
            return self._inventory
        return self._clients.get()

    # ------------------------------------------------------------------ #
    # Login / renewal
    # ------------------------------------------------------------------ #

    def _deny(
        self, instance_id: str, role: str, reason: str, exc: Optional[Exception] = None
    ) -> LoginDenied:
        _LOGIN_TOTAL.labels("denied").inc()
        _ATTEST_FAIL.labels(reason).inc()
        log_attestation(logger, instance_id=instance_id, role=role, result="denied", reason=reason)
        if exc is not None:
            logger.debug("login denied for %s: %s", instance_id, exc)
        return LoginDenied(reason)

    def login(
        self,
        instance_id: Optional[str],
        role_name: Optional[str],
        claimed_addresses: Iterable[str],
    ) -> LoginResult:
        if not instance_id:
            raise InvalidRequest("instance_id required")
        if not role_name:
            raise InvalidRequest("role required")
        role_name = normalize_role_name(role_name)

        logger.info("login attempt", extra={"instance_id": instance_id, "role": role_name})
        t0 = time.perf_counter()
        try:
            role = self.roles.read(role_name)
            if role is None:
                raise self._deny(instance_id, role_name, "role")

            try:
                snapshot = self._client().fetch_instance(instance_id)
            except InstanceNotFound as e:
                raise self._deny(instance_id, role_name, "instance", e) from e

            try:
                count = self.attestor.attest(snapshot, role, list(claimed_addresses))
            except AttestationError as e:
                raise self._deny(instance_id, role_name, e.reason, e) from e
        finally:
            _ATTEST_LAT.observe(time.perf_counter() - t0)

        ttl, max_ttl = cap_lease(role.ttl, role.max_ttl, self.system)
        auth = Auth(
            policies=list(role.policies),
            alias=snapshot.id,
            display_name=snapshot.name,
            metadata={"role": role.name},
            renewable=True,
            period=min(role.period, self.system.max_lease_ttl),
            ttl=ttl,
            max_ttl=max_ttl,
        )
        _LOGIN_TOTAL.labels("ok").inc()
        log_attestation(logger, instance_id=instance_id, role=role.name, result="ok", attempt=count)
        return LoginResult(auth=auth, instance_id=snapshot.id, role=role.name, attempt=count)

    def renew(self, auth: Auth, claimed_addresses: Iterable[str]) -> Auth:
        """
        Re-check a live token's instance before extending it.

        Only metadata and address are re-attested; the original grant
        stands for everything else.
        """
        instance_id = auth.alias
        if not instance_id:
            raise RenewalDenied("instance ID associated with token is invalid")
        role_name = (auth.metadata or {}).get("role", "")
        if not role_name:
            raise RenewalDenied("role name associated with token is invalid")

        role = self.roles.read(role_name)
        if role is None:
            raise RenewalDenied(f"role '{role_name}' no longer exists")
        if not equivalent_policies(role.policies, auth.policies):
            raise RenewalDenied(f"policies on role '{role_name}' have changed, cannot renew")

        try:
            snapshot = self._client().fetch_instance(instance_id)
        except InstanceNotFound as e:
            raise RenewalDenied(f"failed to find instance: {e}") from e

        try:
            self.attestor.attest_metadata(snapshot, role)
            self.attestor.attest_addr(snapshot, claimed_addresses)
        except AttestationError as e:
            logger.info(
                "renewal denied",
                extra={"instance_id": instance_id, "role": role_name, "reason": e.reason},
            )
            raise RenewalDenied(f"failed to renew: {e}") from e

        ttl, max_ttl = cap_lease(role.ttl, role.max_ttl, self.system)
        return Auth(
            policies=list(auth.policies),
            alias=auth.alias,
            display_name=auth.display_name,
            metadata=dict(auth.metadata),
            renewable=auth.renewable,
            period=min(role.period, self.system.max_lease_ttl),
            ttl=ttl,
            max_ttl=max_ttl,
        )

    # ------------------------------------------------------------------ #
    # Host hooks
    # ------------------------------------------------------------------ #

    def periodic(self, now: Optional[_dt.datetime] = None) -> int:
        count = self.ledger.sweep_expired(now or self._clock())
        logger.info("%d expired auth attempts removed", count)
        return count

    def invalidate(self, key: str) -> None:
        if key == CONFIG_KEY:
            self._clients.invalidate()

    def close(self) -> None:
        self._clients.invalidate()
        self.storage.close()

    # ------------------------------------------------------------------ #
    # Config
    # ------------------------------------------------------------------ #

    def read_config(self) -> Optional[dict]:
        cfg = get_json(self.storage, CONFIG_KEY, PluginConfig)
        return cfg.public_view() if cfg is not None else None

    def update_config(self, update: ConfigUpdate) -> None:
        cfg = get_json(self.storage, CONFIG_KEY, PluginConfig) or PluginConfig()
        put_json(self.storage, CONFIG_KEY, update.apply_to(cfg))
        self.invalidate(CONFIG_KEY)
        logger.info("inventory config updated")

    def address_headers(self) -> List[str]:
        cfg = get_json(self.storage, CONFIG_KEY, PluginConfig)
        return list(cfg.request_address_headers) if cfg is not None else []

    # ------------------------------------------------------------------ #
    # Roles
    # ------------------------------------------------------------------ #

    def read_role(self, name: str) -> Optional[Role]:
        return self.roles.read(name)

    def update_role(self, name: str, update: RoleUpdate) -> List[str]:
        role_name = normalize_role_name(name)
        if not role_name:
            raise InvalidRequest("role name is required")
        current = self.roles.read(role_name) or Role(name=role_name)
        return self.roles.write(update.apply_to(current), self.system)

    def delete_role(self, name: str) -> None:
        role_name = normalize_role_name(name)
        if not role_name:
            raise InvalidRequest("role name is required")
        self.roles.delete(role_name)

    def list_roles(self) -> List[str]:
        return self.roles.list()
