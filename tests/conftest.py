import datetime as dt
import urllib.parse
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from barforge_gateway.auth import load_config
from barforge_gateway.github import GithubIdentity, UpstreamAuthFailure
from barforge_gateway.main import create_app
from barforge_gateway.registry import RegistryError, RegistryResponse
from barforge_gateway.sessions import SESSION_COOKIE_NAME, Session, decode_session_cookie


SESSION_SECRET = "test-session-secret"


class FakeClock:
    def __init__(self, start: Optional[dt.datetime] = None) -> None:
        self.now = start or dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.timezone.utc)

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + dt.timedelta(**kwargs)


class FakeProvider:
    """In-process stand-in for GitHub: every code maps to ``gho-<code>``."""

    def __init__(self) -> None:
        self.identities: Dict[str, GithubIdentity] = {}
        self.default_login = "octo"
        self.fail_exchange = False
        self.exchanged: List[str] = []

    def authorize_url(self, state: str) -> str:
        return "https://github.test/login/oauth/authorize?" + urllib.parse.urlencode({"state": state})

    def exchange_code(self, code: str) -> str:
        self.exchanged.append(code)
        if self.fail_exchange:
            raise UpstreamAuthFailure("token_exchange_status_500")
        return f"gho-{code}"

    def fetch_identity(self, access_token: str) -> GithubIdentity:
        code = access_token[len("gho-") :]
        return self.identities.get(
            code,
            GithubIdentity(login=self.default_login, email=f"{self.default_login}@example.com"),
        )


class FakeRegistry:
    def __init__(self) -> None:
        self.roles: Dict[str, str] = {}
        self.fail_profile = False
        self.sync_calls: List[str] = []
        self.profile_calls: List[str] = []
        self.forwarded: List[Tuple[str, str, str, Any]] = []
        self.forward_response = RegistryResponse(200, b'{"ok":true}', "application/json")
        self.fail_forward = False

    def sync_user(self, access_token: str) -> None:
        self.sync_calls.append(access_token)

    def fetch_user_profile(self, access_token: str) -> Optional[Dict[str, Any]]:
        self.profile_calls.append(access_token)
        if self.fail_profile:
            raise RegistryError("profile_transport")
        return {"role": self.roles.get(access_token, "User")}

    def forward(self, method: str, path: str, access_token: str, json_body: Any = None) -> RegistryResponse:
        self.forwarded.append((method, path, access_token, json_body))
        if self.fail_forward:
            raise RegistryError(f"{path}_transport")
        return self.forward_response


def base_env(tmp_path, **overrides: str) -> Dict[str, str]:
    env = {
        "AUTH_GITHUB_ID": "client-id",
        "AUTH_GITHUB_SECRET": "client-secret",
        "BARFORGE_PUBLIC_BASE_URL": "http://127.0.0.1:8080",
        "BARFORGE_SESSION_SECRET": SESSION_SECRET,
        "BARFORGE_TOKEN_SECRET": "test-token-secret",
        "BARFORGE_SESSION_DB_URL": f"sqlite://{tmp_path / 'sessions.db'}",
        "BARFORGE_SESSION_SECURE": "false",
        "BARFORGE_ADMIN_LOGINS": "root-admin",
    }
    env.update(overrides)
    return env


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture()
def make_client(tmp_path, provider, registry):
    def _make(store=None, **env: str) -> TestClient:
        app = create_app(load_config(base_env(tmp_path, **env)), store=store, provider=provider, registry=registry)
        return TestClient(app, follow_redirects=False)

    return _make


@pytest.fixture()
def client(make_client) -> TestClient:
    return make_client()


def start_login(client: TestClient, redirect_to: Optional[str] = "/dashboard") -> str:
    params = {"redirect_to": redirect_to} if redirect_to is not None else {}
    resp = client.get("/auth/github", params=params)
    assert resp.status_code == 303
    query = urllib.parse.urlparse(resp.headers["location"]).query
    return urllib.parse.parse_qs(query)["state"][0]


def login(client: TestClient, code: str = "abc", redirect_to: Optional[str] = "/dashboard"):
    state = start_login(client, redirect_to)
    return client.get("/auth/github/callback", params={"code": code, "state": state})


def current_session(client: TestClient) -> Optional[Session]:
    raw = client.cookies.get(SESSION_COOKIE_NAME)
    if not raw:
        return None
    session_id = decode_session_cookie(raw, SESSION_SECRET)
    if session_id is None:
        return None
    return client.app.state.gateway.store.load(session_id)


def csrf_headers(client: TestClient) -> Dict[str, str]:
    token = client.get("/api/csrf-token").json()["token"]
    return {"x-csrf-token": token}
