"""Tests for scoped persistence: SQLite rows, session-log records and scope keys."""

import sqlite3
from pathlib import Path
from unittest.mock import MagicMock

from obsmem.memory.document import MemoryDocument
from obsmem.memory.store import (
    STATE_ENTRY_TYPE,
    SqliteStateStore,
    StateStore,
    build_scope_key,
    latest_state_from_branch,
)


class FakeBranchContext:
    def __init__(self) -> None:
        self.entries: list[dict] = []

    def get_branch(self) -> list[dict]:
        return list(self.entries)

    def append_entry(self, custom_type: str, data: dict) -> None:
        self.entries.append({"id": f"e{len(self.entries)}", "type": "custom", "custom_type": custom_type, "data": data})


def _doc(observations: str = "- fact") -> MemoryDocument:
    doc = MemoryDocument()
    doc.set_observations(observations)
    doc.observation_runs = 2
    doc.pending.append("pending turn", tokens=3)
    return doc


# ---------------------------------------------------------------------------
# Scope keys
# ---------------------------------------------------------------------------

def test_build_scope_key() -> None:
    cwd = Path("/work/repo")
    assert build_scope_key("thread", session_id="s1", cwd=cwd, resource_id=None) == "thread:s1"
    assert build_scope_key("thread", session_id=None, cwd=cwd, resource_id="r") == "thread:/work/repo"
    assert build_scope_key("resource", session_id="s1", cwd=cwd, resource_id="r1") == "resource:r1"
    assert build_scope_key("resource", session_id="s1", cwd=cwd, resource_id=None) == "resource:/work/repo"


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

class TestSqliteStateStore:
    def test_round_trip_and_upsert(self, tmp_path: Path) -> None:
        store = SqliteStateStore(True, tmp_path / "db" / "om.sqlite")
        assert store.load("thread:a") is None

        store.save("thread:a", "thread", {"observations": "v1"})
        store.save("thread:a", "thread", {"observations": "v2"})
        assert store.load("thread:a") == {"observations": "v2"}
        assert store.load("thread:b") is None

        conn = sqlite3.connect(str(tmp_path / "db" / "om.sqlite"))
        assert conn.execute("SELECT COUNT(*) FROM om_state").fetchone()[0] == 1
        conn.close()
        store.close()

    def test_clear(self, tmp_path: Path) -> None:
        store = SqliteStateStore(True, tmp_path / "om.sqlite")
        store.save("thread:a", "thread", {"x": 1})
        store.clear("thread:a")
        assert store.load("thread:a") is None
        store.close()

    def test_disabled_store_is_noop(self, tmp_path: Path) -> None:
        store = SqliteStateStore(False, tmp_path / "om.sqlite")
        store.save("k", "thread", {"x": 1})
        assert store.load("k") is None
        assert not (tmp_path / "om.sqlite").exists()

    def test_open_error_disables_store(self, tmp_path: Path) -> None:
        store = SqliteStateStore(True, tmp_path)
        store.save("k", "thread", {"x": 1})
        assert store.enabled is False
        assert store.load("k") is None

    def test_corrupt_row_is_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / "om.sqlite"
        store = SqliteStateStore(True, path)
        store.save("k", "thread", {"x": 1})
        store.close()
        conn = sqlite3.connect(str(path))
        conn.execute("UPDATE om_state SET state_json = '{broken' WHERE scope_key = 'k'")
        conn.commit()
        conn.close()

        assert store.load("k") is None
        assert store.enabled is True
        store.close()


# ---------------------------------------------------------------------------
# Branch records
# ---------------------------------------------------------------------------

def test_latest_state_from_branch_picks_last_state_record() -> None:
    entries = [
        {"id": "1", "type": "custom", "custom_type": STATE_ENTRY_TYPE, "data": {"observations": "old"}},
        {"id": "2", "type": "message", "message": {"role": "user", "content": "hi"}},
        {"id": "3", "type": "custom", "custom_type": STATE_ENTRY_TYPE, "data": {"observations": "new"}},
        {"id": "4", "type": "custom", "custom_type": "other", "data": {"observations": "ignored"}},
        {"id": "5", "type": "custom", "custom_type": STATE_ENTRY_TYPE, "data": "not a dict"},
    ]
    assert latest_state_from_branch(entries) == {"observations": "new"}
    assert latest_state_from_branch([]) is None


# ---------------------------------------------------------------------------
# StateStore
# ---------------------------------------------------------------------------

class TestStateStore:
    def test_save_appends_branch_record_and_sqlite_row(self, tmp_path: Path) -> None:
        sqlite_store = SqliteStateStore(True, tmp_path / "om.sqlite")
        store = StateStore(sqlite_store)
        ctx = FakeBranchContext()

        store.save(ctx, "thread:s1", _doc())

        assert ctx.entries[-1]["custom_type"] == STATE_ENTRY_TYPE
        assert ctx.entries[-1]["data"]["observations"] == "- fact"
        assert sqlite_store.load("thread:s1")["observationRuns"] == 2
        sqlite_store.close()

    def test_load_prefers_sqlite(self, tmp_path: Path) -> None:
        sqlite_store = SqliteStateStore(True, tmp_path / "om.sqlite")
        store = StateStore(sqlite_store)
        ctx = FakeBranchContext()
        store.save(ctx, "thread:s1", _doc("- from sqlite"))
        ctx.entries[-1]["data"] = {"observations": "- from branch"}

        doc = store.load(ctx, "thread:s1", "thread")

        assert doc.observations == "- from sqlite"
        assert len(doc.pending) == 1
        sqlite_store.close()

    def test_load_falls_back_to_branch(self) -> None:
        store = StateStore(SqliteStateStore(False, Path("unused.sqlite")))
        ctx = FakeBranchContext()
        store.save(ctx, "thread:s1", _doc("- first"))
        store.save(ctx, "thread:s1", _doc("- second"))

        doc = store.load(ctx, "thread:s1", "thread")

        assert doc.observations == "- second"
        assert doc.observation_runs == 2
        assert [s.text for s in doc.pending.segments] == ["pending turn"]

    def test_load_without_any_state_is_fresh(self) -> None:
        store = StateStore(SqliteStateStore(False, Path("unused.sqlite")))
        doc = store.load(FakeBranchContext(), "resource:r", "resource")
        assert doc.scope == "resource"
        assert not doc.has_observations
        assert doc.observation_runs == 0

    def test_persistence_errors_are_swallowed(self) -> None:
        store = StateStore(SqliteStateStore(False, Path("unused.sqlite")))
        ctx = MagicMock()
        ctx.append_entry.side_effect = OSError("disk full")
        ctx.get_branch.side_effect = RuntimeError("host gone")

        store.save(ctx, "thread:s1", _doc())
        doc = store.load(ctx, "thread:s1", "thread")

        assert not doc.has_observations
