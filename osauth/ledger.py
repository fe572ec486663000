# FILE: osauth/ledger.py
"""
Persisted per-instance login attempt counters.

One AuthAttempt record per instance id, stored at "auth_attempt/<id>":

  - created lazily on the first attempt with count=0 and the supplied
    deadline, then incremented;
  - incremented on every attempt regardless of its outcome;
  - deadline fixed by the first attempt and never moved afterwards;
  - removed by sweep_expired() once the deadline has passed.

Increments are serialized by a per-key in-process lock and committed with a
versioned compare-and-swap, so concurrent attempts against one instance are
never lost, whether they race in this process or in another process sharing
the same store.
"""
from __future__ import annotations

import datetime as _dt
import logging
import threading
from typing import Callable, Dict, Optional

from prometheus_client import Counter

from .errors import AttemptConflict, AttemptLimitExceeded, StorageUnavailable
from .models import AuthAttempt, utcnow
from .storage import MUST_NOT_EXIST, Storage

logger = logging.getLogger(__name__)

ATTEMPT_PREFIX = "auth_attempt/"

_CAS_CONFLICT = Counter(
    "osauth_attempt_cas_conflict_total",
    "Attempt counter compare-and-swap conflicts",
)
_SWEEP_REMOVED = Counter(
    "osauth_sweep_removed_total",
    "Expired attempt records removed by the sweep",
)


def attempt_key(instance_id: str) -> str:
    return ATTEMPT_PREFIX + instance_id


def check_limit(count: int, limit: int) -> None:
    """Raise AttemptLimitExceeded when count has gone past limit."""
    if count > limit:
        raise AttemptLimitExceeded(f"too many authentication attempts ({count} > {limit})")


class AttemptLedger:
    def __init__(
        self,
        storage: Storage,
        *,
        max_retries: int = 16,
        clock: Callable[[], _dt.datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._max_retries = max(1, int(max_retries))
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def storage(self) -> Storage:
        return self._storage

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lk = self._locks.get(key)
            if lk is None:
                lk = threading.Lock()
                self._locks[key] = lk
            return lk

    def _decode(self, raw: bytes, key: str) -> AuthAttempt:
        try:
            return AuthAttempt.model_validate_json(raw)
        except ValueError as exc:
            raise StorageUnavailable(f"corrupt attempt record at {key!r}") from exc

    def get(self, instance_id: str) -> Optional[AuthAttempt]:
        entry = self._storage.get_entry(attempt_key(instance_id))
        if entry is None:
            return None
        return self._decode(entry.value, entry.key)

    def record_attempt(self, instance_id: str, deadline: _dt.datetime) -> int:
        """
        Count one attempt for instance_id and return the new count.

        `deadline` is only used when no record exists yet.
        """
        key = attempt_key(instance_id)
        with self._lock_for(key):
            for _ in range(self._max_retries):
                entry = self._storage.get_entry(key)
                if entry is None:
                    attempt = AuthAttempt(name=instance_id, deadline=deadline, count=0)
                    expected = MUST_NOT_EXIST
                else:
                    attempt = self._decode(entry.value, key)
                    expected = entry.version

                attempt = attempt.model_copy(update={"count": attempt.count + 1})
                payload = attempt.model_dump_json().encode("utf-8")
                if self._storage.put_if(key, payload, expected) is not None:
                    return attempt.count

                _CAS_CONFLICT.inc()
                logger.debug("attempt counter conflict for %s, retrying", instance_id)

        raise AttemptConflict(
            f"could not record attempt for {instance_id!r} after {self._max_retries} tries"
        )

    def check_limit(self, count: int, limit: int) -> None:
        check_limit(count, limit)

    def sweep_expired(self, now: Optional[_dt.datetime] = None) -> int:
        """
        Delete every attempt record whose deadline is strictly before `now`.

        Each record is re-read before deletion and removed only if its
        version is unchanged, so an attempt recorded (or a record recreated)
        after the listing survives the sweep.
        """
        now = now or self._clock()
        removed = 0
        removed_keys = []
        for name in self._storage.list(ATTEMPT_PREFIX):
            if name.endswith("/"):
                continue
            key = attempt_key(name)
            entry = self._storage.get_entry(key)
            if entry is None:
                continue
            attempt = self._decode(entry.value, key)
            if not attempt.deadline < now:
                continue
            if self._storage.delete_if(key, entry.version):
                removed += 1
                removed_keys.append(key)
            else:
                logger.debug("attempt record %s changed during sweep; kept", name)

        # A lock dropped while another thread still holds a reference only
        # weakens serialization; put_if still rejects the losing write.
        with self._locks_guard:
            for key in removed_keys:
                lk = self._locks.get(key)
                if lk is not None and not lk.locked():
                    del self._locks[key]

        if removed:
            _SWEEP_REMOVED.inc(removed)
        return removed
