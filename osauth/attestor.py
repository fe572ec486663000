# FILE: osauth/attestor.py
"""
Instance attestation.

Attestor.attest() runs the identity checks against a freshly fetched
InstanceSnapshot in a fixed order and stops at the first failure:

  1. auth period  : now must not be past created + role.auth_period
  2. auth limit   : the attempt is recorded, then the count is bounded
  3. address      : one claimed address must belong to the instance
  4. status       : the instance must be ACTIVE
  5. metadata     : metadata[role.metadata_key] must name the role
  6. tenant       : optional binding to the owning project
  7. user         : optional binding to the owning user

The attempt is recorded even when the auth period check failed, so a late
caller still burns its budget; the deadline failure is what gets reported.

Each check is a public method so the renewal path can re-run a subset.
"""
from __future__ import annotations

import datetime as _dt
import ipaddress
from typing import Callable, Iterable, List, Optional

from .errors import (
    AddressMismatch,
    DeadlineExceeded,
    InstanceNotActive,
    MetadataKeyMissing,
    MetadataMismatch,
    TenantMismatch,
    UserMismatch,
)
from .ledger import AttemptLedger
from .models import STATUS_ACTIVE, InstanceSnapshot, Role, utcnow


def _normalize_addr(raw: str) -> str:
    """Canonical text form of an IP address; non-IP strings are kept as-is."""
    text = (raw or "").strip()
    if not text:
        return ""
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return text
    # dual-stack listeners report IPv4 peers as ::ffff:a.b.c.d
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        ip = mapped
    return ip.compressed


def attest_deadline(snapshot: InstanceSnapshot, role: Role) -> _dt.datetime:
    try:
        return snapshot.created + role.auth_period
    except OverflowError:
        return _dt.datetime.max.replace(tzinfo=_dt.timezone.utc)


class Attestor:
    def __init__(
        self,
        ledger: AttemptLedger,
        *,
        clock: Callable[[], _dt.datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._clock = clock

    @property
    def ledger(self) -> AttemptLedger:
        return self._ledger

    # ------------------------------------------------------------------ #
    # Full protocol
    # ------------------------------------------------------------------ #

    def attest(
        self,
        snapshot: InstanceSnapshot,
        role: Role,
        claimed_addresses: Iterable[str],
    ) -> int:
        """
        Run every check; return the attempt count on success.

        Raises the AttestationError subclass of the first failing check.
        Storage failures from the ledger propagate unchanged.
        """
        deadline = attest_deadline(snapshot, role)
        deadline_err: Optional[DeadlineExceeded] = None
        try:
            self.verify_auth_period(snapshot, role)
        except DeadlineExceeded as exc:
            deadline_err = exc

        count = self._ledger.record_attempt(snapshot.id, deadline)
        if deadline_err is not None:
            raise deadline_err
        self.verify_auth_limit(count, role)

        self.attest_addr(snapshot, claimed_addresses)
        self.attest_status(snapshot)
        self.attest_metadata(snapshot, role)
        self.attest_tenant_id(snapshot, role)
        self.attest_user_id(snapshot, role)
        return count

    # ------------------------------------------------------------------ #
    # Individual checks
    # ------------------------------------------------------------------ #

    def verify_auth_period(self, snapshot: InstanceSnapshot, role: Role) -> None:
        deadline = attest_deadline(snapshot, role)
        if self._clock() > deadline:
            raise DeadlineExceeded(
                f"authentication deadline exceeded (deadline {deadline.isoformat()})"
            )

    def verify_auth_limit(self, count: int, role: Role) -> None:
        self._ledger.check_limit(count, role.auth_limit)

    def attest_addr(self, snapshot: InstanceSnapshot, claimed_addresses: Iterable[str]) -> None:
        known = {_normalize_addr(a) for a in snapshot.all_addresses()}
        known.discard("")
        claimed: List[str] = [c for c in (_normalize_addr(a) for a in claimed_addresses) if c]
        for addr in claimed:
            if addr in known:
                return
        raise AddressMismatch()

    def attest_status(self, snapshot: InstanceSnapshot) -> None:
        if snapshot.status != STATUS_ACTIVE:
            raise InstanceNotActive(f"instance is not active (status {snapshot.status!r})")

    def attest_metadata(self, snapshot: InstanceSnapshot, role: Role) -> None:
        if role.metadata_key not in snapshot.metadata:
            raise MetadataKeyMissing(f"metadata key {role.metadata_key!r} not found")
        if snapshot.metadata[role.metadata_key] != role.name:
            raise MetadataMismatch()

    def attest_tenant_id(self, snapshot: InstanceSnapshot, role: Role) -> None:
        if role.tenant_id and role.tenant_id != snapshot.tenant_id:
            raise TenantMismatch()

    def attest_user_id(self, snapshot: InstanceSnapshot, role: Role) -> None:
        if role.user_id and role.user_id != snapshot.user_id:
            raise UserMismatch()
