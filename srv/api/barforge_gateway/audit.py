from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import Request

from .session_db import SessionDatabase
from .sessions import SessionStoreUnavailable
from .utils import to_iso, utc_now


logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only ``auth.*`` event trail stored next to the sessions.

    Writing an audit row must never change the outcome of a request, so
    storage errors are logged and dropped.
    """

    def __init__(self, database: Optional[SessionDatabase] = None) -> None:
        self.database = database

    def record(
        self,
        request: Request,
        *,
        event_type: str,
        result: str,
        actor_login: str | None = None,
        details: Dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        request_id = getattr(request.state, "request_id", None)
        logger.info(
            "audit %s result=%s actor=%s route=%s details=%s",
            event_type,
            result,
            actor_login,
            request.url.path,
            details,
        )
        if self.database is None:
            return
        try:
            with self.database.connection_scope() as con:
                con.execute(
                    """
INSERT INTO audit_log(actor_login, event_type, result, request_id, route, method, details_json, created_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        actor_login,
                        event_type,
                        result,
                        request_id,
                        str(request.url.path),
                        request.method,
                        json.dumps(details, separators=(",", ":"), sort_keys=True),
                        to_iso(utc_now()),
                    ),
                )
                con.commit()
        except sqlite3.Error:
            logger.warning("failed to write audit event %s", event_type, exc_info=True)

    def recent(self, *, event_prefix: str = "", limit: int = 50) -> List[Dict[str, Any]]:
        if self.database is None:
            return []
        try:
            with self.database.connection_scope() as con:
                rows = con.execute(
                    """
SELECT audit_id, actor_login, event_type, result, request_id, route, method, details_json, created_at
FROM audit_log
WHERE event_type LIKE ?
ORDER BY audit_id DESC
LIMIT ?
                    """,
                    (f"{event_prefix}%", int(limit)),
                ).fetchall()
        except sqlite3.Error as exc:
            raise SessionStoreUnavailable(str(exc)) from exc
        items = []
        for row in rows:
            items.append(
                {
                    "audit_id": int(row["audit_id"]),
                    "actor_login": row["actor_login"],
                    "event_type": row["event_type"],
                    "result": row["result"],
                    "request_id": row["request_id"],
                    "route": row["route"],
                    "method": row["method"],
                    "details": json.loads(row["details_json"] or "{}"),
                    "created_at": row["created_at"],
                }
            )
        return items
