import datetime as dt
import hashlib
import hmac
import re
import urllib.parse
from typing import Optional


DEFAULT_REDIRECT_TARGET = "/"
LOGIN_PATH = "/login"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime) -> str:
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> dt.datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return dt.datetime.fromisoformat(value)


def sign_value(value: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def is_safe_redirect(value: str) -> bool:
    if not value or value != value.strip():
        return False
    if not value.startswith("/") or value.startswith("//"):
        return False
    if "://" in value or "\\" in value:
        return False
    # Browsers drop tabs and newlines, which turns "/\t/evil" into "//evil".
    return _CONTROL_CHARS.search(value) is None


def sanitize_redirect_target(candidate: Optional[str]) -> Optional[str]:
    """Return ``candidate`` if it is a same-origin relative path, else ``None``.

    Absolute URLs, protocol-relative URLs (``//host``), blank values and
    anything with control characters are rejected. Callers fall back to
    :data:`DEFAULT_REDIRECT_TARGET`.
    """
    if candidate is None:
        return None
    if not is_safe_redirect(candidate):
        return None
    return candidate


def resolve_redirect_target(candidate: Optional[str]) -> str:
    return sanitize_redirect_target(candidate) or DEFAULT_REDIRECT_TARGET


def encode_query_value(value: str) -> str:
    return urllib.parse.quote_plus(value, safe="/")


def login_redirect_url(target: str) -> str:
    return f"{LOGIN_PATH}?redirect_to={encode_query_value(target)}"


def request_target(path: str, query: str) -> str:
    if query:
        return f"{path}?{query}"
    return path
