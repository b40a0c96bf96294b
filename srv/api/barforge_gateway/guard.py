from __future__ import annotations

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from .auth import Gateway
from .sessions import get_session_context
from .utils import login_redirect_url, request_target


PROTECTED_PATHS = {"/dashboard", "/upload", "/admin", "/settings"}


def is_protected_path(path: str) -> bool:
    return path in PROTECTED_PATHS or path.startswith("/settings/")


def is_admin_path(path: str) -> bool:
    return path == "/admin" or path.startswith("/admin/")


def raw_request_target(request: Request) -> str:
    """Path and query exactly as the client sent them, percent escapes intact."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return request_target(path, query)


def _forbidden(request: Request) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content={
            "error": {
                "code": "forbidden",
                "message": "Admin access required",
                "details": {},
                "request_id": getattr(request.state, "request_id", None),
            }
        },
    )


async def guard_request(gateway: Gateway, request: Request) -> Optional[Response]:
    """Return a response that stops the request, or ``None`` to let it through.

    The login redirect carries the path and query exactly as requested; it is
    produced by the server, so it does not go through the redirect sanitizer.
    """
    path = request.url.path
    admin_path = is_admin_path(path)
    if not admin_path and not is_protected_path(path):
        return None

    context = get_session_context(request)
    session = context.session
    if session is None or not session.authenticated:
        return RedirectResponse(url=login_redirect_url(raw_request_target(request)), status_code=303)

    if not admin_path:
        return None

    checked_at = session.admin_checked_at
    decision = await run_in_threadpool(gateway.resolver.check, session)
    if session.admin_checked_at != checked_at:
        await run_in_threadpool(context.save)
    if decision.is_admin:
        return None
    await run_in_threadpool(
        gateway.audit.record,
        request,
        event_type="auth.access.denied",
        result="deny",
        actor_login=session.login,
        details={"reason": "missing_admin_role", "lookup_error": decision.error},
    )
    return _forbidden(request)
