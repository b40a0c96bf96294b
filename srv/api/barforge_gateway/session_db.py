from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from typing import Iterator, List, Optional


DEFAULT_SESSION_DB_URL = "sqlite://.barforge/sessions.db"
MEMORY_DB_URLS = {"sqlite::memory:", "sqlite://:memory:"}


def parse_env_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if lowered in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def parse_env_int(raw: str | None, default: int) -> int:
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def parse_csv(raw: str | None) -> List[str]:
    if not raw:
        return []
    values = []
    for part in raw.split(","):
        item = part.strip()
        if item:
            values.append(item)
    return values


def sqlite_path_from_url(db_url: str) -> Optional[Path]:
    if db_url in MEMORY_DB_URLS:
        return None
    if not db_url.startswith("sqlite://"):
        raise ValueError(f"Unsupported session database URL: {db_url}")
    path = db_url[len("sqlite://") :]
    if not path:
        return None
    return Path(path).expanduser()


def ensure_sqlite_dir(db_url: str) -> None:
    path = sqlite_path_from_url(db_url)
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)


class SessionDatabase:
    """SQLite file (or shared in-memory database) holding sessions and the audit log."""

    def __init__(self, db_url: str = DEFAULT_SESSION_DB_URL) -> None:
        self.db_url = db_url
        self._path = sqlite_path_from_url(db_url)
        self._memory_name = f"file:barforge-{id(self)}?mode=memory&cache=shared"
        # An in-memory database lives only as long as one connection holds it open.
        self._keepalive: sqlite3.Connection | None = None
        if self._path is None:
            self._keepalive = self._connect()

    def _connect(self) -> sqlite3.Connection:
        if self._path is None:
            con = sqlite3.connect(self._memory_name, uri=True, check_same_thread=False)
        else:
            con = sqlite3.connect(str(self._path))
            con.execute("PRAGMA journal_mode = WAL")
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA busy_timeout = 5000")
        return con

    def get_connection(self) -> sqlite3.Connection:
        return self._connect()

    @contextlib.contextmanager
    def connection_scope(self) -> Iterator[sqlite3.Connection]:
        con = self.get_connection()
        try:
            yield con
        finally:
            con.close()

    def initialize(self) -> None:
        ensure_sqlite_dir(self.db_url)
        with self.connection_scope() as con:
            con.executescript(
                """
CREATE TABLE IF NOT EXISTS sessions (
  session_id TEXT PRIMARY KEY,
  data_json TEXT NOT NULL,
  created_at TEXT NOT NULL,
  last_seen_at TEXT NOT NULL,
  expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
  audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
  actor_login TEXT,
  event_type TEXT NOT NULL,
  result TEXT NOT NULL,
  request_id TEXT,
  route TEXT,
  method TEXT,
  details_json TEXT,
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at);
CREATE INDEX IF NOT EXISTS idx_audit_created_at ON audit_log(created_at);
CREATE INDEX IF NOT EXISTS idx_audit_event_type ON audit_log(event_type);
                """
            )
            con.commit()

    def close(self) -> None:
        if self._keepalive is not None:
            self._keepalive.close()
            self._keepalive = None
