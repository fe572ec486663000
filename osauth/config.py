# osauth/config.py
from __future__ import annotations

import datetime as _dt
import hashlib
import json
import logging
import os
import threading
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict

from .models import SystemView


_log = logging.getLogger(__name__)

ADMIN_TOKEN_ENV = "OSAUTH_ADMIN_TOKEN"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path is empty or missing.
      - Only accept dict at top-level.
      - Coerce non-scalar values via str() to avoid arbitrary structures.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


def admin_token() -> str:
    """Admin token for the management routes; empty disables them."""
    return os.environ.get(ADMIN_TOKEN_ENV, "").strip()


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Identity ---------------------------------------------------------

    version: str = "dev"
    app_name: str = "osauth"

    # Indicates how this config reached the process (defaults/yaml).
    config_origin: str = "defaults"

    # --- Storage ----------------------------------------------------------

    storage_dsn: str = "mem://"
    # Bounded retries for attempt counter compare-and-swap.
    cas_max_retries: int = 16

    # --- Lease ceilings (seconds) -----------------------------------------

    default_lease_ttl_s: int = 2764800
    max_lease_ttl_s: int = 2764800

    # --- Background work --------------------------------------------------

    # 0 disables the host's periodic sweep; POST /v1/tidy still works.
    sweep_interval_s: float = 60.0

    # --- Inventory --------------------------------------------------------

    inventory_timeout_s: float = 10.0

    # --- HTTP / logging ---------------------------------------------------

    http_host: str = "127.0.0.1"
    http_port: int = 8200
    enable_docs: bool = False
    log_level: str = "INFO"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def system_view(self) -> SystemView:
        return SystemView(
            default_lease_ttl=_dt.timedelta(seconds=self.default_lease_ttl_s),
            max_lease_ttl=_dt.timedelta(seconds=self.max_lease_ttl_s),
        )

    def config_hash(self) -> str:
        """
        Stable hash of the current settings.

        Safe to embed in logs and response headers; secrets are never kept
        in Settings.
        """
        payload = self.model_dump(mode="json")
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
        return hashlib.blake2s(blob, person=b"osauthcf").hexdigest()[:16]


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by OSAUTH_CONFIG_PATH.
      3. Environment variables (OSAUTH_*), with bounds checks.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get("OSAUTH_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # enforces extra="forbid"
        origin = "yaml"

    # 2) Environment overrides
    merged["version"] = os.environ.get("OSAUTH_VERSION", merged["version"])
    merged["storage_dsn"] = os.environ.get("OSAUTH_STORAGE_DSN", merged["storage_dsn"])

    retries = _env_int("OSAUTH_CAS_MAX_RETRIES", merged["cas_max_retries"])
    if 1 <= retries <= 1000:
        merged["cas_max_retries"] = retries

    default_ttl = _env_int("OSAUTH_DEFAULT_LEASE_TTL_S", merged["default_lease_ttl_s"])
    if default_ttl > 0:
        merged["default_lease_ttl_s"] = default_ttl
    max_ttl = _env_int("OSAUTH_MAX_LEASE_TTL_S", merged["max_lease_ttl_s"])
    if max_ttl > 0:
        merged["max_lease_ttl_s"] = max_ttl
    # The default lease can never exceed the ceiling.
    if merged["default_lease_ttl_s"] > merged["max_lease_ttl_s"]:
        merged["default_lease_ttl_s"] = merged["max_lease_ttl_s"]

    sweep = _env_float("OSAUTH_SWEEP_INTERVAL_S", merged["sweep_interval_s"])
    if 0.0 <= sweep <= 86_400.0:
        merged["sweep_interval_s"] = sweep

    inv_timeout = _env_float("OSAUTH_INVENTORY_TIMEOUT_S", merged["inventory_timeout_s"])
    if 0.1 <= inv_timeout <= 300.0:
        merged["inventory_timeout_s"] = inv_timeout

    merged["http_host"] = os.environ.get("OSAUTH_HTTP_HOST", merged["http_host"])
    port = _env_int("OSAUTH_HTTP_PORT", merged["http_port"])
    if 0 < port < 65536:
        merged["http_port"] = port
    merged["enable_docs"] = _env_bool("OSAUTH_ENABLE_DOCS", merged["enable_docs"])
    merged["log_level"] = os.environ.get("OSAUTH_LOG_LEVEL", merged["log_level"]).upper()

    merged["config_origin"] = origin
    return Settings(**merged)


# ---------------------------------------------------------------------------
# Process-wide snapshot
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe holder for the current Settings snapshot.

      - get(): returns the immutable snapshot.
      - refresh(): reloads from file and environment.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            self._settings = _load_settings()
            return self._settings


def make_reloadable_settings() -> ReloadableSettings:
    return ReloadableSettings(_load_settings())
