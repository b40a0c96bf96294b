import pytest

from barforge_gateway.identity import IdentityResolver
from barforge_gateway.sessions import Session
from barforge_gateway.token_cipher import TokenCipher, token_key_from_secret

from conftest import FakeClock, FakeRegistry


@pytest.fixture()
def cipher() -> TokenCipher:
    return TokenCipher(token_key_from_secret("k"))


@pytest.fixture()
def resolver(registry: FakeRegistry, cipher: TokenCipher) -> IdentityResolver:
    return IdentityResolver(admin_logins=["root-admin"], registry=registry, cipher=cipher, clock=FakeClock())


def _session(cipher: TokenCipher, login: str = "octo", token: str = "gho-octo") -> Session:
    return Session(login=login, access_token=cipher.seal(token))


def test_anonymous_is_never_admin(resolver, registry) -> None:
    decision = resolver.check(Session())

    assert decision.is_admin is False
    assert decision.source == "anonymous"
    assert registry.profile_calls == []


def test_allowlist_skips_registry(resolver, registry, cipher) -> None:
    session = _session(cipher, login="root-admin")

    decision = resolver.refresh(session)

    assert decision.is_admin is True
    assert decision.source == "allowlist"
    assert session.admin_checked_at is not None
    assert registry.profile_calls == []


def test_role_lookup_sets_cache(resolver, registry, cipher) -> None:
    registry.roles["gho-octo"] = "Admin"
    session = _session(cipher)

    first = resolver.check(session)
    second = resolver.check(session)

    assert first.source == "role"
    assert second.source == "cache"
    assert session.is_admin is True
    assert registry.profile_calls == ["gho-octo"]


def test_plain_user_is_cached_as_non_admin(resolver, registry, cipher) -> None:
    session = _session(cipher)

    assert resolver.resolve(session) is False
    assert resolver.resolve(session) is False
    assert len(registry.profile_calls) == 1


def test_lookup_failure_is_cached_as_non_admin(resolver, registry, cipher) -> None:
    registry.roles["gho-octo"] = "Admin"
    registry.fail_profile = True
    session = _session(cipher)
    session.is_admin = True

    decision = resolver.check(session)

    assert decision.is_admin is False
    assert decision.source == "lookup_failed"
    assert decision.error == "profile_transport"
    assert session.is_admin is False
    assert session.admin_checked_at is not None

    registry.fail_profile = False
    again = resolver.check(session)

    assert again.is_admin is False
    assert again.source == "cache"
    assert len(registry.profile_calls) == 1


def test_missing_token_fails_closed(resolver, registry) -> None:
    decision = resolver.check(Session(login="octo"))

    assert decision.is_admin is False
    assert decision.error == "missing_access_token"
    assert registry.profile_calls == []


def test_unreadable_token_is_dropped(resolver, registry) -> None:
    session = Session(login="octo", access_token="garbage")

    decision = resolver.check(session)

    assert decision.is_admin is False
    assert session.access_token is None
    assert registry.profile_calls == []


def test_static_admin_match_is_exact(resolver) -> None:
    assert resolver.is_static_admin("root-admin") is True
    assert resolver.is_static_admin("Root-Admin") is False
    assert resolver.is_static_admin("root-admin ") is False
