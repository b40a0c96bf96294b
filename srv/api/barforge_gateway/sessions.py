from __future__ import annotations

import contextlib
import datetime as dt
import hmac
import secrets
import sqlite3
from typing import Callable, Dict, Iterator, Optional, Protocol, Tuple

from fastapi import Request
from fastapi.responses import Response
from pydantic import BaseModel, Field, ValidationError

from .session_db import SessionDatabase
from .utils import parse_iso, sign_value, to_iso, utc_now


SESSION_COOKIE_NAME = "barforge_session"
SESSION_TTL = dt.timedelta(days=30)


def new_session_id() -> str:
    return secrets.token_urlsafe(48)


def new_csrf_secret() -> str:
    return secrets.token_urlsafe(32)


class PendingLogin(BaseModel):
    state_token: str
    redirect_target: str = "/"


class Session(BaseModel):
    login: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    csrf_secret: str = Field(default_factory=new_csrf_secret)
    pending_oauth: Optional[PendingLogin] = None
    admin_checked_at: Optional[dt.datetime] = None
    access_token: Optional[str] = None
    identity_synced_at: Optional[dt.datetime] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.login)


class SessionStoreUnavailable(RuntimeError):
    pass


class SessionStore(Protocol):
    def create(self) -> Tuple[str, Session]: ...

    def load(self, session_id: str) -> Optional[Session]: ...

    def save(self, session_id: str, session: Session) -> None: ...

    def touch(self, session_id: str) -> None: ...

    def delete(self, session_id: str) -> None: ...


@contextlib.contextmanager
def _store_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise SessionStoreUnavailable(str(exc)) from exc


class SqliteSessionStore:
    """Session rows in SQLite with a sliding inactivity window.

    Expiry is enforced when a row is loaded; there is no sweeper.
    """

    def __init__(
        self,
        database: SessionDatabase,
        *,
        ttl: dt.timedelta = SESSION_TTL,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.database = database
        self.ttl = ttl
        self._clock = clock

    def create(self) -> Tuple[str, Session]:
        session_id = new_session_id()
        session = Session()
        self.save(session_id, session)
        return session_id, session

    def load(self, session_id: str) -> Optional[Session]:
        now = self._clock()
        with _store_errors(), self.database.connection_scope() as con:
            row = con.execute(
                "SELECT data_json, expires_at FROM sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if row is None:
                return None
            if now >= parse_iso(str(row["expires_at"])):
                con.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
                con.commit()
                return None
            try:
                return Session.model_validate_json(str(row["data_json"]))
            except ValidationError:
                con.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
                con.commit()
                return None

    def save(self, session_id: str, session: Session) -> None:
        now = self._clock()
        now_iso = to_iso(now)
        with _store_errors(), self.database.connection_scope() as con:
            con.execute(
                """
INSERT INTO sessions(session_id, data_json, created_at, last_seen_at, expires_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(session_id) DO UPDATE SET
  data_json = excluded.data_json,
  last_seen_at = excluded.last_seen_at,
  expires_at = excluded.expires_at
                """,
                (session_id, session.model_dump_json(), now_iso, now_iso, to_iso(now + self.ttl)),
            )
            con.commit()

    def touch(self, session_id: str) -> None:
        now = self._clock()
        with _store_errors(), self.database.connection_scope() as con:
            con.execute(
                "UPDATE sessions SET last_seen_at = ?, expires_at = ? WHERE session_id = ?",
                (to_iso(now), to_iso(now + self.ttl), session_id),
            )
            con.commit()

    def delete(self, session_id: str) -> None:
        with _store_errors(), self.database.connection_scope() as con:
            con.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            con.commit()


class MemorySessionStore:
    def __init__(
        self,
        *,
        ttl: dt.timedelta = SESSION_TTL,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._rows: Dict[str, Tuple[str, dt.datetime]] = {}

    def create(self) -> Tuple[str, Session]:
        session_id = new_session_id()
        session = Session()
        self.save(session_id, session)
        return session_id, session

    def load(self, session_id: str) -> Optional[Session]:
        row = self._rows.get(session_id)
        if row is None:
            return None
        data_json, expires_at = row
        if self._clock() >= expires_at:
            self._rows.pop(session_id, None)
            return None
        return Session.model_validate_json(data_json)

    def save(self, session_id: str, session: Session) -> None:
        self._rows[session_id] = (session.model_dump_json(), self._clock() + self.ttl)

    def touch(self, session_id: str) -> None:
        row = self._rows.get(session_id)
        if row is not None:
            self._rows[session_id] = (row[0], self._clock() + self.ttl)

    def delete(self, session_id: str) -> None:
        self._rows.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._rows)


def encode_session_cookie(session_id: str, secret: str) -> str:
    return f"{session_id}.{sign_value(session_id, secret)}"


def decode_session_cookie(cookie_value: str, secret: str) -> Optional[str]:
    if "." not in cookie_value:
        return None
    session_id, sig = cookie_value.rsplit(".", 1)
    if not session_id:
        return None
    expected = sign_value(session_id, secret)
    if not hmac.compare_digest(sig, expected):
        return None
    return session_id


def set_session_cookie(response: Response, cookie_value: str, *, secure: bool) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=cookie_value,
        max_age=int(SESSION_TTL.total_seconds()),
        secure=secure,
        httponly=True,
        samesite="lax",
        path="/",
    )


def clear_session_cookie(response: Response, *, secure: bool) -> None:
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


class SessionContext:
    """Per-request view of the caller's session.

    Handlers mutate ``session`` and call :meth:`save`; the session middleware
    turns the outcome into a ``Set-Cookie`` header.
    """

    def __init__(
        self,
        store: SessionStore,
        session_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self.session = session
        self.clear_cookie = False
        self.ended = False

    def ensure(self) -> Session:
        if self.session_id is None or self.session is None:
            self.session_id, self.session = self.store.create()
            self.ended = False
        return self.session

    def save(self) -> None:
        if self.session_id is None or self.session is None:
            raise RuntimeError("no session to save")
        self.store.save(self.session_id, self.session)

    def rotate(self) -> None:
        if self.session_id is None or self.session is None:
            raise RuntimeError("no session to rotate")
        old_id = self.session_id
        self.session_id = new_session_id()
        self.store.save(self.session_id, self.session)
        self.store.delete(old_id)

    def end(self) -> None:
        if self.session_id is not None:
            self.store.delete(self.session_id)
        self.session_id = None
        self.session = None
        self.ended = True
        self.clear_cookie = True


def load_session_context(request: Request, store: SessionStore, secret: str) -> SessionContext:
    context = SessionContext(store)
    raw = request.cookies.get(SESSION_COOKIE_NAME)
    if not raw:
        return context
    session_id = decode_session_cookie(raw, secret)
    if session_id is None:
        context.clear_cookie = True
        return context
    session = store.load(session_id)
    if session is None:
        context.clear_cookie = True
        return context
    store.touch(session_id)
    context.session_id = session_id
    context.session = session
    return context


def get_session_context(request: Request) -> SessionContext:
    context = getattr(request.state, "session_ctx", None)
    if context is None:
        raise RuntimeError("session middleware is not installed")
    return context


def apply_session_cookie(response: Response, context: SessionContext, *, secret: str, secure: bool) -> None:
    if context.session_id is not None and not context.ended:
        set_session_cookie(response, encode_session_cookie(context.session_id, secret), secure=secure)
    elif context.clear_cookie:
        clear_session_cookie(response, secure=secure)
