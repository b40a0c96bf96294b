from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Request

from .sessions import Session, SessionContext, new_csrf_secret


CSRF_HEADER_NAME = "x-csrf-token"
CSRF_PROTECTED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def issue(session: Session) -> str:
    if not session.csrf_secret:
        session.csrf_secret = new_csrf_secret()
    return session.csrf_secret


def verify(session: Optional[Session], header_value: Optional[str]) -> bool:
    if session is None or not session.csrf_secret:
        return False
    if not header_value:
        return False
    return hmac.compare_digest(header_value.encode("utf-8"), session.csrf_secret.encode("utf-8"))


def requires_csrf(method: str) -> bool:
    return method.upper() in CSRF_PROTECTED_METHODS


def check_request(request: Request, context: SessionContext) -> Optional[str]:
    """Return a rejection reason for a mutating request, or ``None`` to let it through."""
    if not requires_csrf(request.method):
        return None
    header_value = request.headers.get(CSRF_HEADER_NAME)
    if context.session is None:
        return "missing_session"
    if not header_value:
        return "missing_token"
    if not verify(context.session, header_value):
        return "token_mismatch"
    return None
