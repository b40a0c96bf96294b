"""Thin client for the upstream module registry API.

The gateway treats the registry as an opaque JSON backend. It only needs to
announce a freshly authenticated user (``auth/sync``), read the caller's own
profile to learn their role, and forward admin calls with the caller's
bearer token.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests


DEFAULT_API_BASE_URL = "https://api.barforge.dev"
API_ACCEPT = "application/json"
ADMIN_ROLES = {"admin", "moderator"}


class RegistryError(RuntimeError):
    pass


@dataclass(frozen=True)
class RegistryResponse:
    status_code: int
    content: bytes
    content_type: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class RegistryApi(Protocol):
    def sync_user(self, access_token: str) -> None: ...

    def fetch_user_profile(self, access_token: str) -> Optional[Dict[str, Any]]: ...

    def forward(
        self,
        method: str,
        path: str,
        access_token: str,
        json_body: Any = None,
    ) -> RegistryResponse: ...


def role_grants_admin(profile: Optional[Dict[str, Any]]) -> bool:
    if not profile:
        return False
    role = profile.get("role")
    if not isinstance(role, str):
        return False
    return role.strip().lower() in ADMIN_ROLES


def map_upstream_status(status_code: int, has_body: bool) -> int:
    if status_code in {401, 403}:
        return status_code
    if not (200 <= status_code < 300) and has_body:
        return status_code
    return 502


def api_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/api/v1/{path.lstrip('/')}"


class RegistryClient:
    def __init__(self, *, base_url: str, http: requests.Session, timeout: float = 15) -> None:
        self.base_url = base_url
        self.http = http
        self.timeout = timeout

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": API_ACCEPT}

    def sync_user(self, access_token: str) -> None:
        try:
            resp = self.http.post(
                api_url(self.base_url, "auth/sync"),
                headers=self._headers(access_token),
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise RegistryError("sync_transport") from exc
        if not resp.ok:
            raise RegistryError(f"sync_status_{resp.status_code}")

    def fetch_user_profile(self, access_token: str) -> Optional[Dict[str, Any]]:
        try:
            resp = self.http.get(
                api_url(self.base_url, "users/me"),
                headers=self._headers(access_token),
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise RegistryError("profile_transport") from exc
        if not resp.ok:
            return None
        try:
            payload = resp.json()
        except ValueError as exc:
            raise RegistryError("profile_invalid_json") from exc
        if not isinstance(payload, dict):
            raise RegistryError("profile_invalid_payload")
        return payload

    def forward(
        self,
        method: str,
        path: str,
        access_token: str,
        json_body: Any = None,
    ) -> RegistryResponse:
        try:
            resp = self.http.request(
                method,
                api_url(self.base_url, path),
                headers=self._headers(access_token),
                json=json_body,
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise RegistryError(f"{path}_transport") from exc
        return RegistryResponse(
            status_code=resp.status_code,
            content=resp.content,
            content_type=resp.headers.get("content-type", API_ACCEPT),
        )
