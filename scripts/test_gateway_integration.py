#!/usr/bin/env python3
"""Smoke test against a running gateway (no GitHub round trip).

Usage: test_gateway_integration.py [base_url]
"""
import sys
import urllib.parse
from typing import Any, Dict, Iterable, Optional

import requests


def require_keys(obj: Dict[str, Any], keys, label: str):
    missing = [key for key in keys if key not in obj]
    if missing:
        raise AssertionError(f"{label} missing keys: {missing}")


def assert_status(
    response: requests.Response,
    expected: int | Iterable[int],
    label: str,
) -> None:
    if isinstance(expected, int):
        expected_set = {expected}
    else:
        expected_set = set(expected)
    if response.status_code not in expected_set:
        snippet = response.text[:500]
        raise AssertionError(
            f"{label} expected status {sorted(expected_set)}, got {response.status_code}. Body: {snippet}"
        )


def get_json(
    http: requests.Session,
    base_url: str,
    path: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    expected_status: int | Iterable[int] = 200,
    timeout: int = 10,
    label: Optional[str] = None,
) -> tuple[requests.Response, Dict[str, Any]]:
    final_label = label or path
    response = http.get(f"{base_url}{path}", params=params, timeout=timeout, allow_redirects=False)
    assert_status(response, expected_status, final_label)
    try:
        payload = response.json()
    except ValueError as exc:
        raise AssertionError(f"{final_label} did not return JSON") from exc
    if not isinstance(payload, dict):
        raise AssertionError(f"{final_label} returned non-object JSON")
    return response, payload


def assert_redirect(response: requests.Response, expected_location: str, label: str) -> None:
    assert_status(response, 303, label)
    location = response.headers.get("location")
    if location != expected_location:
        raise AssertionError(f"{label} expected Location {expected_location!r}, got {location!r}")


def main():
    base_url = (sys.argv[1] if len(sys.argv) > 1 else "http://127.0.0.1:8080").rstrip("/")
    http = requests.Session()

    health_resp, health_json = get_json(http, base_url, "/api/health", label="health")
    require_keys(health_json, ["status", "time_utc"], "health")
    if not health_resp.headers.get("x-request-id", "").startswith("req_"):
        raise AssertionError("health response missing X-Request-Id")

    _, session_json = get_json(http, base_url, "/api/session", label="anonymous session")
    if session_json != {"authenticated": False, "is_admin": False, "user": None}:
        raise AssertionError(f"anonymous session unexpected payload: {session_json}")

    guard_cases = [
        ("/dashboard", "/login?redirect_to=/dashboard"),
        ("/settings/profile?tab=keys", "/login?redirect_to=/settings/profile%3Ftab%3Dkeys"),
        ("/admin", "/login?redirect_to=/admin"),
    ]
    for path, expected in guard_cases:
        response = http.get(f"{base_url}{path}", timeout=10, allow_redirects=False)
        assert_redirect(response, expected, f"guard {path}")

    response = http.post(f"{base_url}/auth/logout", timeout=10, allow_redirects=False)
    assert_status(response, 403, "logout without csrf token")

    _, token_json = get_json(http, base_url, "/api/csrf-token", label="csrf token")
    require_keys(token_json, ["token"], "csrf token")
    if "barforge_session" not in http.cookies:
        raise AssertionError("csrf token did not establish a session cookie")

    response = http.post(
        f"{base_url}/auth/logout",
        headers={"x-csrf-token": "not-the-token"},
        timeout=10,
        allow_redirects=False,
    )
    assert_status(response, 403, "logout with wrong csrf token")

    response = http.get(
        f"{base_url}/auth/github",
        params={"redirect_to": "https://evil.example/x"},
        timeout=10,
        allow_redirects=False,
    )
    assert_status(response, 303, "login start")
    location = urllib.parse.urlparse(response.headers["location"])
    query = urllib.parse.parse_qs(location.query)
    require_keys(query, ["client_id", "redirect_uri", "scope", "state"], "authorize url")

    response = http.get(
        f"{base_url}/auth/github/callback",
        params={"code": "bogus", "state": "not-the-state"},
        timeout=10,
        allow_redirects=False,
    )
    assert_status(response, 403, "callback with wrong state")

    response = http.post(
        f"{base_url}/auth/logout",
        headers={"x-csrf-token": token_json["token"]},
        timeout=10,
        allow_redirects=False,
    )
    assert_status(response, 200, "logout with csrf token")

    response = http.get(f"{base_url}/api/admin/stats", timeout=10, allow_redirects=False)
    assert_status(response, 401, "admin api anonymous")

    print("Gateway integration test passed.")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:
        print(f"Gateway integration test failed: {exc}")
        sys.exit(1)
