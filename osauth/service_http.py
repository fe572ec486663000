# FILE: osauth/service_http.py
"""
HTTP surface.

Public:
  POST /v1/login            instance login (generic denial on failure)
  GET  /healthz, /metrics

Admin (X-OSAuth-Admin-Token):
  POST   /v1/renew
  GET    /v1/role/{name}, POST /v1/role/{name}, DELETE /v1/role/{name}
  GET    /v1/roles
  GET    /v1/config, POST /v1/config
  POST   /v1/tidy
"""
from __future__ import annotations

import asyncio
import contextlib
import datetime as _dt
import hmac
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.routing import APIRouter
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import JSONResponse

from .backend import AuthBackend, ConfigUpdate
from .config import Settings, admin_token, make_reloadable_settings
from .errors import (
    InvalidRequest,
    InvalidRole,
    InventoryError,
    LoginDenied,
    RenewalDenied,
    StorageError,
)
from .logging import bind, ensure_request_id, unbind
from .models import Auth
from .roles import RoleUpdate, role_view

logger = logging.getLogger(__name__)

_HTTP_REQ_TOTAL = Counter(
    "osauth_http_request_total",
    "HTTP requests",
    ["path", "method", "status"],
)
_HTTP_REQ_LATENCY = Histogram(
    "osauth_http_request_latency_seconds",
    "HTTP request latency (s)",
    ["path"],
)


# -----------------------------------------------------------------------------
# Schemas
# -----------------------------------------------------------------------------


class LoginIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    instance_id: Optional[str] = None
    role: Optional[str] = None


class AuthIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    policies: List[str] = Field(default_factory=list)
    alias: str = ""
    display_name: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)
    renewable: bool = True

    def to_auth(self) -> Auth:
        return Auth(
            policies=list(self.policies),
            alias=self.alias,
            display_name=self.display_name,
            metadata=dict(self.metadata),
            renewable=self.renewable,
        )


class RenewIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    auth: AuthIn
    # Addresses the token holder connected from, as seen by the caller.
    addresses: List[str] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Guards & helpers
# -----------------------------------------------------------------------------


def _make_admin_guard(want: str) -> Callable[..., None]:
    def _require_admin(
        token: Optional[str] = Header(default=None, alias="X-OSAuth-Admin-Token"),
    ) -> None:
        """Header token auth; with no token configured the admin routes are closed."""
        if not want:
            raise HTTPException(status_code=401, detail="admin token required")
        if not token or len(token) != len(want):
            raise HTTPException(status_code=403, detail="forbidden")
        if not hmac.compare_digest(token, want):
            raise HTTPException(status_code=403, detail="forbidden")

    return _require_admin


def claimed_addresses(request: Request, header_names: List[str]) -> List[str]:
    """Direct peer address plus comma-split values of the configured headers."""
    out: List[str] = []
    if request.client is not None and request.client.host:
        out.append(request.client.host)
    for name in header_names:
        raw = request.headers.get(name)
        if not raw:
            continue
        for part in raw.split(","):
            part = part.strip()
            if part:
                out.append(part)
    return out


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------


def create_app(
    backend: Optional[AuthBackend] = None,
    settings: Optional[Settings] = None,
    *,
    admin_token_value: Optional[str] = None,
) -> FastAPI:
    """
    Build the FastAPI app around an AuthBackend.

    Without explicit arguments, settings come from the environment and the
    backend is built from them.
    """
    settings = settings or make_reloadable_settings().get()
    backend = backend or AuthBackend.from_settings(settings)
    want_token = admin_token() if admin_token_value is None else admin_token_value
    cfg_hash = settings.config_hash()

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI):
        task: Optional[asyncio.Task] = None
        if settings.sweep_interval_s > 0:
            task = asyncio.create_task(_sweep_loop(backend, settings.sweep_interval_s))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    openapi_url = "/openapi.json" if settings.enable_docs else None
    docs_url = "/docs" if settings.enable_docs else None
    redoc_url = "/redoc" if settings.enable_docs else None

    app = FastAPI(
        title="osauth",
        version=settings.version,
        openapi_url=openapi_url,
        docs_url=docs_url,
        redoc_url=redoc_url,
        lifespan=lifespan,
    )
    app.state.backend = backend
    app.state.settings = settings

    # Middleware: request id, context, metrics, headers
    @app.middleware("http")
    async def request_context(request: Request, call_next):
        rid = ensure_request_id({k.lower(): v for k, v in request.headers.items()})
        bind(path=request.url.path, method=request.method)
        t0 = time.perf_counter()
        status_str = "500"
        try:
            response = await call_next(request)
            status_str = str(response.status_code)
        except Exception:
            logger.exception("request failed: path=%s method=%s", request.url.path, request.method)
            raise
        finally:
            elapsed = max(0.0, time.perf_counter() - t0)
            label = _route_label(request)
            _HTTP_REQ_TOTAL.labels(label, request.method, status_str).inc()
            _HTTP_REQ_LATENCY.labels(label).observe(elapsed)
            logger.info(
                "http.finish",
                extra={"status": status_str, "latency_ms": round(elapsed * 1000.0, 3)},
            )
            unbind("path", "method", "req_id")
        response.headers["X-OSAuth-Request-Id"] = rid
        response.headers["X-OSAuth-Config-Hash"] = cfg_hash
        return response

    # Error mapping
    @app.exception_handler(LoginDenied)
    async def _login_denied(_req: Request, _exc: LoginDenied):
        return JSONResponse(status_code=400, content={"detail": "login denied"})

    @app.exception_handler(InvalidRequest)
    @app.exception_handler(InvalidRole)
    @app.exception_handler(RenewalDenied)
    async def _bad_request(_req: Request, exc: Exception):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def _storage_error(_req: Request, exc: StorageError):
        logger.error("storage error: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "storage unavailable"})

    @app.exception_handler(InventoryError)
    async def _inventory_error(_req: Request, exc: InventoryError):
        logger.error("inventory error: %s", exc)
        return JSONResponse(status_code=502, content={"detail": "inventory unavailable"})

    # -------------------------------------------------------------------------
    # Public routes
    # -------------------------------------------------------------------------

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True, "config_hash": cfg_hash, "version": settings.version}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/v1/login")
    def login(body: LoginIn, request: Request) -> Dict[str, Any]:
        addrs = claimed_addresses(request, backend.address_headers())
        result = backend.login(body.instance_id, body.role, addrs)
        return {"auth": result.auth.to_dict()}

    # -------------------------------------------------------------------------
    # Admin routes
    # -------------------------------------------------------------------------

    router = APIRouter(prefix="/v1", dependencies=[Depends(_make_admin_guard(want_token))])

    @router.post("/renew")
    def renew(body: RenewIn, request: Request) -> Dict[str, Any]:
        addrs = list(body.addresses) or claimed_addresses(request, backend.address_headers())
        auth = backend.renew(body.auth.to_auth(), addrs)
        return {"auth": auth.to_dict()}

    @router.get("/role/{name}")
    def role_get(name: str) -> Dict[str, Any]:
        role = backend.read_role(name)
        if role is None:
            raise HTTPException(status_code=404, detail="role not found")
        return role_view(role)

    @router.post("/role/{name}")
    def role_put(name: str, body: RoleUpdate) -> Dict[str, Any]:
        warnings = backend.update_role(name, body)
        return {"ok": True, "warnings": warnings}

    @router.delete("/role/{name}")
    def role_delete(name: str) -> Dict[str, Any]:
        backend.delete_role(name)
        return {"ok": True}

    @router.get("/roles")
    def roles_list() -> Dict[str, Any]:
        return {"keys": backend.list_roles()}

    @router.get("/config")
    def config_get() -> Dict[str, Any]:
        cfg = backend.read_config()
        if cfg is None:
            raise HTTPException(status_code=404, detail="config not set")
        return cfg

    @router.post("/config")
    def config_put(body: ConfigUpdate) -> Dict[str, Any]:
        backend.update_config(body)
        return {"ok": True}

    @router.post("/tidy")
    def tidy() -> Dict[str, Any]:
        return {"removed": backend.periodic()}

    app.include_router(router)
    return app


async def _sweep_loop(backend: AuthBackend, interval_s: float) -> None:
    """Host tick driving AuthBackend.periodic(); errors are logged and retried next tick."""
    while True:
        await asyncio.sleep(interval_s)
        try:
            await asyncio.to_thread(backend.periodic, _dt.datetime.now(_dt.timezone.utc))
        except Exception:
            logger.exception("periodic sweep failed")
