# FILE: osauth/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import traceback
import uuid
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("OSAUTH_LOG_SCHEMA", "osauth.log.v1")
_LOG_SERVICE = os.environ.get("OSAUTH_SERVICE", "osauth")

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = max(256, int(os.environ.get("OSAUTH_LOG_MAX_FIELD", "4096")))
except ValueError:
    _MAX_FIELD = 4096

_INCLUDE_STACK = os.environ.get("OSAUTH_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys (case-insensitive, for headers / obvious secrets)
_DEFAULT_REDACT = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-auth-token",
    "x-subject-token",
    "x-osauth-admin-token",
    "password",
    "token",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("OSAUTH_LOG_REDACT", "").split(",")
    if k.strip()
} or _DEFAULT_REDACT

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}

# Envelope fields picked from the bound context or the record's extras
_ENVELOPE_FIELDS = (
    "req_id",
    "instance_id",
    "role",
    "result",
    "reason",
    "attempt",
    "path",
    "method",
    "status",
    "latency_ms",
)

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "osauth_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "")
    return f"{base}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Scrub obvious secrets from a dict (typically HTTP headers or a config
    payload).

    Keys listed in `_REDACT_KEYS` get replaced by "***". Nested dictionaries
    are scrubbed recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if _redact_key(str(k)):
            out[k] = "***"
        else:
            out[k] = v if not isinstance(v, dict) else scrub_dict(v)
    return out


def _meta_from_record(record: logging.LogRecord, evt_keys: Set[str]) -> Optional[Dict[str, Any]]:
    """
    Collect extras passed via `extra=` that are not envelope fields.

    Secret-looking keys are redacted; strings are truncated.
    """
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if v is None:
            continue
        if _redact_key(k):
            meta[k] = "***"
        elif isinstance(v, dict):
            meta[k] = scrub_dict(v)
        else:
            meta[k] = _truncate(v)
    return meta or None


# ---------- JSON formatter ----------
class JSONFormatter(logging.Formatter):
    """
    Compact JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, version
      - ts, lvl, logger, msg
      - req_id, path, method, status, latency_ms
      - instance_id, role, result, reason, attempt

    Everything else passed through `extra=` lands under "meta".
    """

    def __init__(self, *, include_stack: bool = True, version: str = "dev"):
        super().__init__()
        self.include_stack = include_stack
        self.version = version

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": self.version,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
        }

        # Context picks (record extras win over bound ctx)
        for name in _ENVELOPE_FIELDS:
            v = getattr(record, name, None)
            if v is None:
                v = ctx.get(name)
            if v is not None:
                evt[name] = _truncate(v)

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Uvicorn/Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
    version: str = "dev",
) -> logging.Logger:
    """Configure root (+ optionally uvicorn) for JSON output."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack, version=version))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """
    Get or create a request id; bind into context immediately.

    Header values are used only as opaque ids.
    """
    rid = None
    if headers:
        for k in ("x-request-id", "x-osauth-request-id"):
            for cand in (k, k.title()):
                if cand in headers and headers[cand]:
                    rid = str(headers[cand])[:64]
                    break
            if rid:
                break
    if not rid:
        rid = uuid.uuid4().hex[:16]
    bind(req_id=rid)
    return rid


def log_attestation(
    logger: logging.Logger,
    *,
    instance_id: str,
    role: str,
    result: str,
    reason: Optional[str] = None,
    attempt: Optional[int] = None,
    level: int = logging.INFO,
) -> None:
    """
    Log the outcome of one login attempt.

    Only identifiers and short reason codes are logged, never credentials.
    """
    logger.log(
        level,
        "login %s",
        result,
        extra={
            "instance_id": instance_id,
            "role": role,
            "result": result,
            "reason": reason,
            "attempt": attempt,
        },
    )


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "ensure_request_id",
    "log_attestation",
    "JSONFormatter",
    "scrub_dict",
]
