from __future__ import annotations

import hmac
import logging
import os
import secrets
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import requests
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from . import csrf
from .audit import AuditLog
from .github import (
    DEFAULT_GITHUB_API_BASE_URL,
    DEFAULT_GITHUB_AUTH_URL,
    DEFAULT_GITHUB_TOKEN_URL,
    IdentityProvider,
    UpstreamAuthFailure,
    ensure_trailing_slash,
)
from .identity import IdentityResolver
from .registry import DEFAULT_API_BASE_URL, RegistryApi, RegistryError
from .session_db import DEFAULT_SESSION_DB_URL, parse_csv, parse_env_bool, parse_env_int
from .sessions import PendingLogin, SessionContext, SessionStore, get_session_context
from .token_cipher import TokenCipher, token_key_from_secret
from .utils import resolve_redirect_target, utc_now


DEFAULT_PUBLIC_BASE_URL = "http://127.0.0.1:8080"
CALLBACK_PATH = "auth/github/callback"
PROFILE_CACHE_COOKIE = "profile_cache"
LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class AuthConfig:
    client_id: str
    client_secret: str = field(repr=False)
    public_base_url: str
    redirect_uri: str
    auth_url: str
    token_url: str
    github_api_base_url: str
    api_base_url: str
    admin_logins: Tuple[str, ...]
    session_secret: str = field(repr=False)
    token_key: bytes = field(repr=False)
    session_db_url: str
    cookie_secure: bool
    http_timeout: int
    http_client: requests.Session = field(repr=False, compare=False)
    cors_origins: Tuple[str, ...] = ()


def app_base_url(value: Optional[str]) -> str:
    base = (value or "").strip() or DEFAULT_PUBLIC_BASE_URL
    return base.rstrip("/")


def github_redirect_url(base: str) -> str:
    return urllib.parse.urljoin(ensure_trailing_slash(base), CALLBACK_PATH)


def default_cookie_secure(public_base_url: str) -> bool:
    parsed = urllib.parse.urlparse(public_base_url)
    if parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS:
        return False
    return True


def build_http_client() -> requests.Session:
    http = requests.Session()
    http.max_redirects = 0
    http.headers["User-Agent"] = "barforge-gateway"
    return http


def load_config(env: Optional[Mapping[str, str]] = None) -> AuthConfig:
    if env is None:
        env = os.environ

    def _get(name: str) -> str:
        return (env.get(name) or "").strip()

    client_id = _get("AUTH_GITHUB_ID")
    client_secret = _get("AUTH_GITHUB_SECRET")
    missing = [
        name
        for name, value in {"AUTH_GITHUB_ID": client_id, "AUTH_GITHUB_SECRET": client_secret}.items()
        if not value
    ]
    if missing:
        raise ConfigError(f"missing required env vars: {', '.join(missing)}")

    public_base_url = app_base_url(_get("BARFORGE_PUBLIC_BASE_URL"))
    token_secret = _get("BARFORGE_TOKEN_SECRET") or client_secret
    session_secret = _get("BARFORGE_SESSION_SECRET") or token_secret
    secure_raw = env.get("BARFORGE_SESSION_SECURE")
    cookie_secure = parse_env_bool(secure_raw, default=default_cookie_secure(public_base_url))
    api_base_url = _get("BARFORGE_API_BASE_URL") or _get("PUBLIC_API_BASE_URL") or DEFAULT_API_BASE_URL

    return AuthConfig(
        client_id=client_id,
        client_secret=client_secret,
        public_base_url=public_base_url,
        redirect_uri=github_redirect_url(public_base_url),
        auth_url=_get("BARFORGE_GITHUB_AUTH_URL") or DEFAULT_GITHUB_AUTH_URL,
        token_url=_get("BARFORGE_GITHUB_TOKEN_URL") or DEFAULT_GITHUB_TOKEN_URL,
        github_api_base_url=ensure_trailing_slash(_get("BARFORGE_GITHUB_API_BASE_URL") or DEFAULT_GITHUB_API_BASE_URL),
        api_base_url=api_base_url.rstrip("/"),
        admin_logins=tuple(parse_csv(env.get("BARFORGE_ADMIN_LOGINS"))),
        session_secret=session_secret,
        token_key=token_key_from_secret(token_secret),
        session_db_url=_get("BARFORGE_SESSION_DB_URL") or DEFAULT_SESSION_DB_URL,
        cookie_secure=cookie_secure,
        http_timeout=parse_env_int(env.get("BARFORGE_HTTP_TIMEOUT_SECONDS"), 15),
        http_client=build_http_client(),
        cors_origins=tuple(parse_csv(env.get("BARFORGE_CORS_ORIGINS"))),
    )


@dataclass(frozen=True)
class Gateway:
    """Everything a request handler needs, built once per app."""

    config: AuthConfig
    store: SessionStore
    provider: IdentityProvider
    registry: RegistryApi
    resolver: IdentityResolver
    cipher: TokenCipher
    audit: AuditLog


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def _error(status_code: int, code: str, message: str, details: Dict[str, Any] | None = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"code": code, "message": message, "details": details or {}},
    )


def login_redirect(gateway: Gateway, request: Request, redirect_to: Optional[str] = None) -> RedirectResponse:
    target = resolve_redirect_target(redirect_to)
    context = get_session_context(request)
    session = context.ensure()
    state_token = secrets.token_urlsafe(32)
    session.pending_oauth = PendingLogin(state_token=state_token, redirect_target=target)
    context.save()
    gateway.audit.record(
        request,
        event_type="auth.login.start",
        result="success",
        details={"provider": "github", "redirect_target": target},
    )
    return RedirectResponse(url=gateway.provider.authorize_url(state_token), status_code=303)


def _state_matches(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def auth_callback(
    gateway: Gateway,
    request: Request,
    code: Optional[str],
    state: Optional[str],
    provider_error: Optional[str] = None,
) -> RedirectResponse:
    context = get_session_context(request)
    session = context.session
    pending = session.pending_oauth if session is not None else None
    if pending is None or not _state_matches(pending.state_token, state):
        reason = "missing_pending_login" if pending is None else "state_mismatch"
        gateway.audit.record(request, event_type="auth.login.denied", result="deny", details={"reason": reason})
        raise _error(403, "invalid_state", "Auth state mismatch")

    # The pending login is single use, even when the exchange below fails.
    session.pending_oauth = None
    context.save()

    try:
        if provider_error or not code:
            raise UpstreamAuthFailure(f"provider_error_{provider_error or 'missing_code'}")
        access_token = gateway.provider.exchange_code(code)
        identity = gateway.provider.fetch_identity(access_token)
    except UpstreamAuthFailure as exc:
        logger.warning("github login failed: %s", exc)
        gateway.audit.record(request, event_type="auth.login.error", result="error", details={"reason": str(exc)})
        raise _error(502, "auth_failed", "Authentication failed")

    session.login = identity.login
    session.email = identity.email
    session.name = identity.name
    session.avatar_url = identity.avatar_url
    session.access_token = gateway.cipher.seal(access_token)
    session.identity_synced_at = None
    decision = gateway.resolver.refresh(session)
    if decision.error:
        gateway.audit.record(
            request,
            event_type="auth.admin.lookup_failed",
            result="error",
            actor_login=identity.login,
            details={"reason": decision.error},
        )
    context.rotate()

    gateway.audit.record(
        request,
        event_type="auth.login.success",
        result="success",
        actor_login=identity.login,
        details={"is_admin": decision.is_admin, "admin_source": decision.source},
    )
    return RedirectResponse(url=resolve_redirect_target(pending.redirect_target), status_code=303)


def logout(gateway: Gateway, request: Request) -> Dict[str, Any]:
    context = get_session_context(request)
    login = context.session.login if context.session is not None else None
    context.end()
    gateway.audit.record(request, event_type="auth.logout", result="success", actor_login=login)
    return {"authenticated": False}


def csrf_token(gateway: Gateway, request: Request) -> Dict[str, str]:
    context = get_session_context(request)
    session = context.ensure()
    previous = session.csrf_secret
    token = csrf.issue(session)
    if token != previous:
        context.save()
    return {"token": token}


def _sync_identity_once(gateway: Gateway, context: SessionContext) -> bool:
    session = context.session
    if session is None or session.identity_synced_at is not None:
        return False
    token = gateway.resolver.access_token(session)
    if token is not None:
        try:
            gateway.registry.sync_user(token)
        except RegistryError as exc:
            logger.warning("registry identity sync failed for %s: %s", session.login, exc)
    session.identity_synced_at = utc_now()
    return True


def session_status(gateway: Gateway, request: Request):
    context = get_session_context(request)
    session = context.session
    if session is None or not session.authenticated:
        response = JSONResponse({"authenticated": False, "is_admin": False, "user": None})
        response.delete_cookie(key=PROFILE_CACHE_COOKIE, path="/")
        return response

    changed = _sync_identity_once(gateway, context)
    checked_at = session.admin_checked_at
    decision = gateway.resolver.check(session)
    if decision.error:
        gateway.audit.record(
            request,
            event_type="auth.admin.lookup_failed",
            result="error",
            actor_login=session.login,
            details={"reason": decision.error},
        )
    if changed or session.admin_checked_at != checked_at:
        context.save()
    return {
        "authenticated": True,
        "is_admin": decision.is_admin,
        "user": {"login": session.login, "email": session.email},
    }


def require_admin(gateway: Gateway, request: Request) -> Tuple[str, str]:
    """Return ``(login, access_token)`` for an admin caller or raise."""
    context = get_session_context(request)
    session = context.session
    if session is None or not session.authenticated:
        gateway.audit.record(request, event_type="auth.access.denied", result="deny", details={"reason": "unauthenticated"})
        raise _error(401, "unauthorized", "Authentication required")
    checked_at = session.admin_checked_at
    decision = gateway.resolver.check(session)
    if session.admin_checked_at != checked_at:
        context.save()
    if not decision.is_admin:
        gateway.audit.record(
            request,
            event_type="auth.access.denied",
            result="deny",
            actor_login=session.login,
            details={"reason": "missing_admin_role", "lookup_error": decision.error},
        )
        raise _error(403, "forbidden", "Admin access required")
    token = gateway.resolver.access_token(session)
    if token is None:
        raise _error(401, "unauthorized", "Session has no access token")
    return str(session.login), token


def auth_runtime_status(gateway: Gateway) -> Dict[str, Any]:
    cfg = gateway.config
    return {
        "provider": "github",
        "redirect_uri": cfg.redirect_uri,
        "api_base_url": cfg.api_base_url,
        "session_db_url": cfg.session_db_url,
        "cookie_secure": cfg.cookie_secure,
        "admin_allowlist_size": len(cfg.admin_logins),
    }
