from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

from .registry import RegistryApi, RegistryError, role_grants_admin
from .sessions import Session
from .token_cipher import TokenCipher, TokenCipherError
from .utils import utc_now


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdminDecision:
    is_admin: bool
    source: str  # allowlist | role | cache | anonymous | lookup_failed
    error: Optional[str] = None


class IdentityResolver:
    """Decides whether a logged-in user is an admin.

    A login is an admin when it is on the static allow-list or when the
    registry reports a Moderator/Admin role for the user's own profile. The
    answer is cached on the session. A failed lookup is cached as non-admin
    until the next login.
    """

    def __init__(
        self,
        *,
        admin_logins: Iterable[str],
        registry: RegistryApi,
        cipher: TokenCipher,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.admin_logins: Tuple[str, ...] = tuple(admin_logins)
        self.registry = registry
        self.cipher = cipher
        self._clock = clock

    def is_static_admin(self, login: str) -> bool:
        return any(value == login for value in self.admin_logins)

    def access_token(self, session: Session) -> Optional[str]:
        if not session.access_token:
            return None
        try:
            return self.cipher.open(session.access_token)
        except TokenCipherError:
            logger.warning("discarding unreadable access token for %s", session.login)
            session.access_token = None
            return None

    def _lookup_role(self, session: Session) -> Tuple[Optional[bool], Optional[str]]:
        token = self.access_token(session)
        if token is None:
            return None, "missing_access_token"
        try:
            profile = self.registry.fetch_user_profile(token)
        except RegistryError as exc:
            logger.warning("admin role lookup failed for %s: %s", session.login, exc)
            return None, str(exc)
        if profile is None:
            logger.warning("admin role lookup returned no profile for %s", session.login)
            return None, "profile_unavailable"
        return role_grants_admin(profile), None

    def refresh(self, session: Session) -> AdminDecision:
        if not session.login:
            session.is_admin = False
            session.admin_checked_at = None
            return AdminDecision(is_admin=False, source="anonymous")
        if self.is_static_admin(session.login):
            session.is_admin = True
            session.admin_checked_at = self._clock()
            return AdminDecision(is_admin=True, source="allowlist")
        role_admin, error = self._lookup_role(session)
        if role_admin is None:
            session.is_admin = False
            session.admin_checked_at = self._clock()
            return AdminDecision(is_admin=False, source="lookup_failed", error=error)
        session.is_admin = role_admin
        session.admin_checked_at = self._clock()
        return AdminDecision(is_admin=role_admin, source="role")

    def check(self, session: Session) -> AdminDecision:
        if not session.login:
            return AdminDecision(is_admin=False, source="anonymous")
        if session.admin_checked_at is not None:
            return AdminDecision(is_admin=session.is_admin, source="cache")
        return self.refresh(session)

    def resolve(self, session: Session) -> bool:
        return self.check(session).is_admin
