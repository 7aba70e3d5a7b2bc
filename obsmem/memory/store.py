"""Scoped persistence for memory documents: host session log plus optional SQLite."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from obsmem.logging import get_logger
from obsmem.memory.document import MemoryDocument, StorageScope
from obsmem.utils.helpers import ensure_dir, utc_now_iso

if TYPE_CHECKING:
    from obsmem.agent.host import HostContext, SessionEntry

logger = get_logger(__name__)

STATE_ENTRY_TYPE = "observational-memory-state"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS om_state (
    scope_key TEXT PRIMARY KEY,
    scope TEXT NOT NULL,
    state_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


def build_scope_key(scope: StorageScope, *, session_id: str | None, cwd: Path, resource_id: str | None) -> str:
    """``thread:<session id or cwd>`` or ``resource:<resource id or cwd>``."""
    if scope == "resource":
        return f"resource:{resource_id or cwd}"
    return f"thread:{session_id or cwd}"


class SqliteStateStore:
    """
    One row per scope key in ``om_state``.

    Any SQLite error disables the store for the rest of the process; callers
    keep working from in-memory state.
    """

    def __init__(self, enabled: bool, path: Path) -> None:
        self.enabled = enabled
        self.path = path
        self._conn: sqlite3.Connection | None = None

    def _connect(self) -> sqlite3.Connection | None:
        if not self.enabled:
            return None
        if self._conn is None:
            try:
                ensure_dir(self.path.parent)
                conn = sqlite3.connect(str(self.path))
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(_SCHEMA)
                conn.commit()
            except (sqlite3.Error, OSError) as e:
                self._disable("open", e)
                return None
            self._conn = conn
        return self._conn

    def _disable(self, op: str, error: Exception) -> None:
        logger.warning("SQLite state store disabled", op=op, path=str(self.path), error=str(error))
        self.enabled = False
        self.close()

    def load(self, scope_key: str) -> dict[str, Any] | None:
        conn = self._connect()
        if conn is None:
            return None
        try:
            row = conn.execute("SELECT state_json FROM om_state WHERE scope_key = ?", (scope_key,)).fetchone()
        except sqlite3.Error as e:
            self._disable("load", e)
            return None
        if not row:
            return None
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Ignoring corrupt SQLite state row", scope_key=scope_key)
            return None
        return data if isinstance(data, dict) else None

    def save(self, scope_key: str, scope: StorageScope, state: dict[str, Any]) -> None:
        conn = self._connect()
        if conn is None:
            return
        try:
            conn.execute(
                """
                INSERT INTO om_state(scope_key, scope, state_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(scope_key) DO UPDATE SET
                    scope = excluded.scope,
                    state_json = excluded.state_json,
                    updated_at = excluded.updated_at
                """,
                (scope_key, scope, json.dumps(state, ensure_ascii=False), utc_now_iso()),
            )
            conn.commit()
        except sqlite3.Error as e:
            self._disable("save", e)

    def clear(self, scope_key: str) -> None:
        conn = self._connect()
        if conn is None:
            return
        try:
            conn.execute("DELETE FROM om_state WHERE scope_key = ?", (scope_key,))
            conn.commit()
        except sqlite3.Error as e:
            self._disable("clear", e)

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                pass
            self._conn = None


def latest_state_from_branch(entries: Iterable[SessionEntry]) -> dict[str, Any] | None:
    """The data of the last state record in the session branch, if any."""
    latest: dict[str, Any] | None = None
    for entry in entries:
        if entry.get("type") == "custom" and entry.get("custom_type") == STATE_ENTRY_TYPE:
            data = entry.get("data")
            if isinstance(data, dict):
                latest = data
    return latest


class StateStore:
    """Write-through persistence of one document per scope key.

    Saving appends a state record to the host session log and, when enabled,
    upserts the SQLite row. Persistence failures are logged and swallowed.
    Loading prefers SQLite and falls back to the newest record in the branch.
    """

    def __init__(self, sqlite_store: SqliteStateStore) -> None:
        self.sqlite = sqlite_store

    def load(self, ctx: HostContext, scope_key: str, scope: StorageScope) -> MemoryDocument:
        raw = self.sqlite.load(scope_key)
        source = "sqlite"
        if raw is None:
            try:
                raw = latest_state_from_branch(ctx.get_branch())
            except Exception as e:
                logger.warning("Failed to read session branch", scope_key=scope_key, error=str(e))
                raw = None
            source = "session"
        doc = MemoryDocument.from_dict(raw, scope) if raw is not None else MemoryDocument(scope=scope)
        logger.debug(
            "Memory state loaded",
            scope_key=scope_key,
            source=source if raw is not None else "new",
            observation_runs=doc.observation_runs,
            pending_segments=len(doc.pending),
        )
        return doc

    def save(self, ctx: HostContext, scope_key: str, doc: MemoryDocument) -> None:
        data = doc.to_dict()
        try:
            ctx.append_entry(STATE_ENTRY_TYPE, data)
        except Exception as e:
            logger.warning("Failed to append state to session log", scope_key=scope_key, error=str(e))
        self.sqlite.save(scope_key, doc.scope, data)

    def clear(self, scope_key: str) -> None:
        self.sqlite.clear(scope_key)
