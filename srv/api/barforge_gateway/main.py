from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import auth, csrf
from .admin_proxy import admin_router
from .audit import AuditLog
from .auth import AuthConfig, Gateway, load_config
from .github import GithubClient, IdentityProvider
from .guard import guard_request
from .identity import IdentityResolver
from .pages import page_router
from .registry import RegistryApi, RegistryClient, RegistryError
from .session_db import SessionDatabase
from .sessions import (
    SessionStore,
    SessionStoreUnavailable,
    SqliteSessionStore,
    apply_session_cookie,
    get_session_context,
    load_session_context,
)
from .token_cipher import TokenCipher
from .utils import to_iso, utc_now


logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.getenv("BARFORGE_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def error_response(request: Request, status_code: int, code: str, message: str, details: Dict[str, Any] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "details": details or {},
                "request_id": getattr(request.state, "request_id", None),
            }
        },
    )


def build_gateway(
    config: AuthConfig,
    *,
    store: Optional[SessionStore] = None,
    provider: Optional[IdentityProvider] = None,
    registry: Optional[RegistryApi] = None,
) -> Gateway:
    database = SessionDatabase(config.session_db_url)
    database.initialize()
    if store is None:
        store = SqliteSessionStore(database)
    if provider is None:
        provider = GithubClient(
            client_id=config.client_id,
            client_secret=config.client_secret,
            redirect_uri=config.redirect_uri,
            http=config.http_client,
            auth_url=config.auth_url,
            token_url=config.token_url,
            api_base_url=config.github_api_base_url,
            timeout=config.http_timeout,
        )
    if registry is None:
        registry = RegistryClient(base_url=config.api_base_url, http=config.http_client, timeout=config.http_timeout)
    cipher = TokenCipher(config.token_key)
    resolver = IdentityResolver(admin_logins=config.admin_logins, registry=registry, cipher=cipher)
    return Gateway(
        config=config,
        store=store,
        provider=provider,
        registry=registry,
        resolver=resolver,
        cipher=cipher,
        audit=AuditLog(database),
    )


def create_app(
    config: Optional[AuthConfig] = None,
    *,
    store: Optional[SessionStore] = None,
    provider: Optional[IdentityProvider] = None,
    registry: Optional[RegistryApi] = None,
) -> FastAPI:
    configure_logging()
    cfg = config or load_config()
    gateway = build_gateway(cfg, store=store, provider=provider, registry=registry)

    app = FastAPI(title="Barforge Gateway", version="0.1")
    app.state.gateway = gateway

    # Registered innermost first: request id -> session -> csrf -> route guard -> handler.
    @app.middleware("http")
    async def route_guard(request: Request, call_next):
        blocked = await guard_request(gateway, request)
        if blocked is not None:
            return blocked
        return await call_next(request)

    @app.middleware("http")
    async def csrf_protect(request: Request, call_next):
        context = get_session_context(request)
        reason = csrf.check_request(request, context)
        if reason is not None:
            await run_in_threadpool(
                gateway.audit.record,
                request,
                event_type="auth.csrf.denied",
                result="deny",
                actor_login=context.session.login if context.session is not None else None,
                details={"reason": reason},
            )
            return error_response(request, 403, "csrf_failed", "Missing or invalid CSRF token")
        return await call_next(request)

    @app.middleware("http")
    async def attach_session(request: Request, call_next):
        try:
            context = await run_in_threadpool(
                load_session_context, request, gateway.store, cfg.session_secret
            )
            request.state.session_ctx = context
            response = await call_next(request)
        except SessionStoreUnavailable as exc:
            logger.error("session store unavailable: %s", exc)
            return error_response(request, 503, "session_store_unavailable", "Session store unavailable")
        apply_session_cookie(response, context, secret=cfg.session_secret, secure=cfg.cookie_secure)
        return response

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, dict):
            code = exc.detail.get("code", "bad_request")
            message = exc.detail.get("message", "Bad request")
            details = exc.detail.get("details", {})
        else:
            code = exc.detail if isinstance(exc.detail, str) else "bad_request"
            message = exc.detail if isinstance(exc.detail, str) else "Bad request"
            details = {}
        return error_response(request, exc.status_code, code, message, details)

    @app.exception_handler(SessionStoreUnavailable)
    async def session_store_unavailable_handler(request: Request, exc: SessionStoreUnavailable):
        logger.error("session store unavailable: %s", exc)
        return error_response(request, 503, "session_store_unavailable", "Session store unavailable")

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        return error_response(request, 502, "bad_gateway", "Registry unavailable", {"reason": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return error_response(request, 500, "internal_error", "Internal server error")

    if cfg.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(cfg.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/auth/github")
    def auth_github(
        request: Request,
        redirect_to: Optional[str] = Query(default=None),
        redirect_to_camel: Optional[str] = Query(default=None, alias="redirectTo"),
    ):
        return auth.login_redirect(gateway, request, redirect_to=redirect_to if redirect_to is not None else redirect_to_camel)

    @app.get("/auth/github/callback")
    def auth_github_callback(
        request: Request,
        code: Optional[str] = Query(default=None),
        state: Optional[str] = Query(default=None),
        error: Optional[str] = Query(default=None),
    ):
        return auth.auth_callback(gateway, request, code=code, state=state, provider_error=error)

    @app.post("/auth/logout")
    def auth_logout(request: Request):
        return auth.logout(gateway, request)

    @app.get("/api/csrf-token")
    def csrf_token(request: Request):
        return auth.csrf_token(gateway, request)

    @app.get("/api/session")
    def session_status(request: Request):
        return auth.session_status(gateway, request)

    @app.get("/api/health")
    def health():
        return {"status": "ok", "time_utc": to_iso(utc_now())}

    app.include_router(admin_router)
    app.include_router(page_router)
    return app
