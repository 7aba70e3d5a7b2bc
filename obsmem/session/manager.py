"""Local session log and host context for running the engine outside an agent host."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from obsmem.agent.host import (
    BeforeCompactEvent,
    CompactionPreparation,
    CompactionResult,
    Message,
    NotifyLevel,
    SessionEntry,
)
from obsmem.logging import get_logger
from obsmem.memory.retrieval import message_token_estimate
from obsmem.utils.helpers import atomic_append_text, random_id

logger = get_logger(__name__)

CompactHandler = Callable[[BeforeCompactEvent, "LocalHostContext"], Awaitable[CompactionResult | None]]


class SessionLog:
    """
    Append-only JSONL log of session entries.

    The first line is a metadata record; every later line is one entry
    (message, custom record, or compaction). Entries are never rewritten.
    """

    def __init__(self, path: Path, session_id: str | None = None) -> None:
        self.path = path
        self.entries: list[SessionEntry] = []
        self.session_id = session_id
        self.created_at = datetime.now()
        self._load()
        if self.session_id is None:
            self.session_id = random_id("session")

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("_type") == "metadata":
                        self.session_id = self.session_id or data.get("session_id")
                        if data.get("created_at"):
                            self.created_at = datetime.fromisoformat(data["created_at"])
                    elif isinstance(data, dict) and data.get("id"):
                        self.entries.append(data)
        except (OSError, json.JSONDecodeError, ValueError) as e:
            logger.warning("Failed to load session log", path=str(self.path), error=str(e))

    def _write(self, record: dict[str, Any]) -> None:
        if not self.path.exists():
            meta = {
                "_type": "metadata",
                "session_id": self.session_id,
                "created_at": self.created_at.isoformat(),
            }
            atomic_append_text(self.path, json.dumps(meta, ensure_ascii=False) + "\n")
        atomic_append_text(self.path, json.dumps(record, ensure_ascii=False) + "\n")

    def _append(self, entry: SessionEntry) -> SessionEntry:
        entry.setdefault("timestamp", datetime.now().isoformat())
        self._write(dict(entry))
        self.entries.append(entry)
        return entry

    def append_message(self, role: str, content: Any, **kwargs: Any) -> SessionEntry:
        message = Message(role=role, content=content, timestamp=datetime.now().isoformat(), **kwargs)
        return self._append(SessionEntry(id=random_id("msg"), type="message", message=message))

    def append_custom(self, custom_type: str, data: dict[str, Any]) -> SessionEntry:
        return self._append(SessionEntry(id=random_id("custom"), type="custom", custom_type=custom_type, data=data))

    def append_compaction(self, result: CompactionResult) -> SessionEntry:
        return self._append(SessionEntry(
            id=random_id("compact"),
            type="compaction",
            summary=result["summary"],
            first_kept_entry_id=result["first_kept_entry_id"],
            tokens_before=result["tokens_before"],
            details=result.get("details", {}),
        ))

    def messages(self) -> list[Message]:
        """The live message list: the latest compaction summary, then messages it kept."""
        start = 0
        prefix: list[Message] = []
        for i, entry in enumerate(self.entries):
            if entry.get("type") != "compaction":
                continue
            prefix = [Message(role="compactionSummary", content=entry.get("summary", ""))]
            kept_id = entry.get("first_kept_entry_id")
            start = next((j for j, e in enumerate(self.entries) if e.get("id") == kept_id), i)
            start = min(start, i)
        out = list(prefix)
        for entry in self.entries[start:]:
            if entry.get("type") == "message" and "message" in entry:
                out.append(entry["message"])
        return out

    def message_entries(self) -> list[SessionEntry]:
        return [e for e in self.entries if e.get("type") == "message"]


@dataclass
class LocalUI:
    """Collects notifications and status; optionally echoes them and edits text."""

    echo: Callable[[str, NotifyLevel], None] | None = None
    edit: Callable[[str], str | None] | None = None
    notifications: list[tuple[str, NotifyLevel]] = field(default_factory=list)
    status: dict[str, str | None] = field(default_factory=dict)

    def notify(self, message: str, level: NotifyLevel = "info") -> None:
        self.notifications.append((message, level))
        if self.echo is not None:
            self.echo(message, level)

    def set_status(self, key: str, text: str | None) -> None:
        self.status[key] = text

    async def editor(self, title: str, initial: str) -> str | None:
        if self.edit is None:
            return None
        return self.edit(initial)


class LocalHostContext:
    """
    Host context backed by a :class:`SessionLog`.

    ``compact`` runs the registered before-compact handler in a background
    task; ``drain`` waits for it.
    """

    def __init__(self, log: SessionLog, *, cwd: Path | None = None, ui: LocalUI | None = None) -> None:
        self.log = log
        self.cwd = cwd or Path.cwd()
        self.ui = ui or LocalUI()
        self.before_compact: CompactHandler | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def session_id(self) -> str | None:
        return self.log.session_id

    def get_branch(self) -> list[SessionEntry]:
        return list(self.log.entries)

    def append_entry(self, custom_type: str, data: dict[str, Any]) -> None:
        self.log.append_custom(custom_type, data)

    async def wait_for_idle(self) -> None:
        return None

    def compact(
        self,
        *,
        custom_instructions: str,
        on_complete: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None:
        task = asyncio.create_task(self._run_compaction(on_complete, on_error))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def build_preparation(self) -> CompactionPreparation:
        messages = self.log.messages()
        entries = self.log.message_entries()
        return CompactionPreparation(
            messages_to_summarize=[m for m in messages if m.get("role") != "compactionSummary"],
            turn_prefix_messages=[],
            first_kept_entry_id=entries[-1]["id"] if entries else "",
            tokens_before=sum(message_token_estimate(m) for m in messages),
        )

    async def _run_compaction(self, on_complete: Callable[[], None], on_error: Callable[[Exception], None]) -> None:
        try:
            if self.before_compact is None:
                raise RuntimeError("no compaction handler registered")
            event = BeforeCompactEvent(
                type="session_before_compact",
                preparation=self.build_preparation(),
                branch_entries=self.get_branch(),
            )
            result = await self.before_compact(event, self)
            if result is None:
                raise RuntimeError("no compaction summary produced")
            self.log.append_compaction(result)
        except Exception as e:
            logger.warning("Local compaction failed", error=str(e))
            on_error(e)
            return
        on_complete()

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
