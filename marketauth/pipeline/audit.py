"""Append-only security audit log."""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock

from pydantic import BaseModel

from marketauth.core.clock import Clock, SystemClock
from marketauth.core.logging import CORRELATION_ID_CTX
from marketauth.core.state_db import connect_state_db, store_errors

LOGGER = logging.getLogger(__name__)

_ENTRY_COLUMNS = (
    "entry_id, recorded_at, actor_id, actor_role, action, resource_type, resource_id, "
    "outcome, stage, reason, client_ip, method, path, correlation_id"
)


class AuditEntry(BaseModel):
    """One security decision: who tried what, and how it ended."""

    entry_id: int = 0
    recorded_at: int = 0
    actor_id: str = ""
    actor_role: str = ""
    action: str
    resource_type: str
    resource_id: str = ""
    outcome: str
    stage: str = ""
    reason: str = ""
    client_ip: str = ""
    method: str = ""
    path: str = ""
    correlation_id: str = ""


class SecurityAuditLog:
    """SQLite audit table; rows are only ever inserted."""

    def __init__(
        self, *, database_path: Path, clock: Clock | None = None, timeout_seconds: float = 5.0
    ) -> None:
        self._connection = connect_state_db(database_path, timeout_seconds=timeout_seconds)
        self._lock = Lock()
        self._clock = clock or SystemClock()

    def record(self, entry: AuditEntry) -> AuditEntry:
        """Persist ``entry`` and mirror it to the application log."""
        stored = entry.model_copy(
            update={
                "recorded_at": entry.recorded_at or self._clock.now(),
                "correlation_id": entry.correlation_id or CORRELATION_ID_CTX.get(),
            }
        )
        values = stored.model_dump(exclude={"entry_id"})
        with self._lock, store_errors():
            cursor = self._connection.execute(
                """
                INSERT INTO security_audit_log(
                  recorded_at, actor_id, actor_role, action, resource_type, resource_id,
                  outcome, stage, reason, client_ip, method, path, correlation_id
                ) VALUES (
                  :recorded_at, :actor_id, :actor_role, :action, :resource_type, :resource_id,
                  :outcome, :stage, :reason, :client_ip, :method, :path, :correlation_id
                )
                """,
                values,
            )
            self._connection.commit()
            stored = stored.model_copy(update={"entry_id": int(cursor.lastrowid or 0)})

        log = LOGGER.info if stored.outcome == "allowed" else LOGGER.warning
        log(
            "security_audit",
            extra={
                "actor_id": stored.actor_id,
                "action": stored.action,
                "resource_type": stored.resource_type,
                "resource_id": stored.resource_id,
                "outcome": stored.outcome,
                "reason": stored.reason,
                "client_ip": stored.client_ip,
                "path": stored.path,
                "method": stored.method,
            },
        )
        return stored

    def export(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        actor_id: str = "",
        outcome: str = "",
    ) -> tuple[list[AuditEntry], int]:
        """Return a newest-first page of entries plus the total matching count."""
        clauses: list[str] = []
        params: dict[str, object] = {"limit": limit, "offset": offset}
        if actor_id:
            clauses.append("actor_id = :actor_id")
            params["actor_id"] = actor_id
        if outcome:
            clauses.append("outcome = :outcome")
            params["outcome"] = outcome
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock, store_errors():
            rows = self._connection.execute(
                f"""
                SELECT {_ENTRY_COLUMNS} FROM security_audit_log
                {where}
                ORDER BY entry_id DESC
                LIMIT :limit OFFSET :offset
                """,
                params,
            ).fetchall()
            total = self._connection.execute(
                f"SELECT COUNT(*) AS total FROM security_audit_log {where}", params
            ).fetchone()
        return [AuditEntry.model_validate(dict(row)) for row in rows], int(total["total"])

    def close(self) -> None:
        with self._lock:
            self._connection.close()
