from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import requests


DEFAULT_GITHUB_AUTH_URL = "https://github.com/login/oauth/authorize"
DEFAULT_GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
DEFAULT_GITHUB_API_BASE_URL = "https://api.github.com/"
GITHUB_SCOPES = ("read:user", "user:email")
GITHUB_API_ACCEPT = "application/vnd.github+json"
GITHUB_USER_AGENT = "barforge"

logger = logging.getLogger(__name__)


class UpstreamAuthFailure(RuntimeError):
    """Token exchange or identity fetch against the provider did not succeed."""


@dataclass(frozen=True)
class GithubIdentity:
    login: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    email: Optional[str] = None


class IdentityProvider(Protocol):
    def authorize_url(self, state: str) -> str: ...

    def exchange_code(self, code: str) -> str: ...

    def fetch_identity(self, access_token: str) -> GithubIdentity: ...


def select_primary_email(emails: List[Dict[str, Any]]) -> Optional[str]:
    verified = [item for item in emails if isinstance(item, dict) and item.get("verified") and item.get("email")]
    for item in verified:
        if item.get("primary"):
            return str(item["email"])
    if verified:
        return str(verified[0]["email"])
    return None


def ensure_trailing_slash(value: str) -> str:
    return value if value.endswith("/") else f"{value}/"


class GithubClient:
    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http: requests.Session,
        auth_url: str = DEFAULT_GITHUB_AUTH_URL,
        token_url: str = DEFAULT_GITHUB_TOKEN_URL,
        api_base_url: str = DEFAULT_GITHUB_API_BASE_URL,
        timeout: float = 15,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.http = http
        self.auth_url = auth_url
        self.token_url = token_url
        self.api_base_url = ensure_trailing_slash(api_base_url)
        self.timeout = timeout

    def authorize_url(self, state: str) -> str:
        query = urllib.parse.urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": " ".join(GITHUB_SCOPES),
                "state": state,
            }
        )
        return f"{self.auth_url}?{query}"

    def exchange_code(self, code: str) -> str:
        try:
            resp = self.http.post(
                self.token_url,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                },
                headers={"Accept": "application/json"},
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise UpstreamAuthFailure("token_exchange_transport") from exc
        if not resp.ok:
            raise UpstreamAuthFailure(f"token_exchange_status_{resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamAuthFailure("invalid_token_response") from exc
        if not isinstance(payload, dict):
            raise UpstreamAuthFailure("invalid_token_response")
        # GitHub reports bad codes as 200 with an "error" field.
        if payload.get("error"):
            raise UpstreamAuthFailure(f"token_exchange_error_{payload['error']}")
        access_token = payload.get("access_token")
        if not access_token:
            raise UpstreamAuthFailure("missing_access_token")
        return str(access_token)

    def _get_json(self, path: str, access_token: str) -> Any:
        url = urllib.parse.urljoin(self.api_base_url, path)
        try:
            resp = self.http.get(
                url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": GITHUB_API_ACCEPT,
                    "User-Agent": GITHUB_USER_AGENT,
                },
                timeout=self.timeout,
                allow_redirects=False,
            )
        except requests.RequestException as exc:
            raise UpstreamAuthFailure(f"{path}_transport") from exc
        if not resp.ok:
            raise UpstreamAuthFailure(f"{path}_status_{resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamAuthFailure(f"{path}_invalid_json") from exc

    def fetch_identity(self, access_token: str) -> GithubIdentity:
        user = self._get_json("user", access_token)
        if not isinstance(user, dict) or not user.get("login"):
            raise UpstreamAuthFailure("user_missing_login")
        emails = self._get_json("user/emails", access_token)
        if not isinstance(emails, list):
            raise UpstreamAuthFailure("user/emails_invalid_payload")
        identity = GithubIdentity(
            login=str(user["login"]),
            name=user.get("name"),
            avatar_url=user.get("avatar_url"),
            email=select_primary_email(emails),
        )
        logger.debug("fetched github identity for %s", identity.login)
        return identity
