"""Typed host collaborator interfaces and event payloads consumed by the engine."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Literal, NotRequired, Protocol, TypeAlias, TypedDict

NotifyLevel: TypeAlias = Literal["info", "warning", "error"]
EntryType: TypeAlias = Literal["message", "custom", "compaction"]

STATUS_KEY = "observational-memory"


class Message(TypedDict):
    role: str
    content: Any
    custom_type: NotRequired[str]
    display: NotRequired[bool]
    name: NotRequired[str]
    tool_calls: NotRequired[list[dict[str, Any]]]
    timestamp: NotRequired[str]


class SessionEntry(TypedDict):
    id: str
    type: EntryType
    timestamp: NotRequired[str]
    message: NotRequired[Message]
    custom_type: NotRequired[str]
    data: NotRequired[dict[str, Any]]
    summary: NotRequired[str]
    first_kept_entry_id: NotRequired[str]
    tokens_before: NotRequired[int]
    details: NotRequired[dict[str, Any]]


class TurnEndEvent(TypedDict):
    type: Literal["turn_end"]
    turn_index: int
    message: Message
    tool_results: NotRequired[list[Message]]


class CompactionPreparation(TypedDict):
    messages_to_summarize: list[Message]
    turn_prefix_messages: list[Message]
    first_kept_entry_id: str
    tokens_before: int


class BeforeCompactEvent(TypedDict):
    type: Literal["session_before_compact"]
    preparation: CompactionPreparation
    branch_entries: list[SessionEntry]
    signal: NotRequired[asyncio.Event]


class CompactionResult(TypedDict):
    summary: str
    first_kept_entry_id: str
    tokens_before: int
    details: dict[str, Any]


class ContextEvent(TypedDict):
    type: Literal["context"]
    messages: list[Message]
    signal: NotRequired[asyncio.Event]


class HostUI(Protocol):
    def notify(self, message: str, level: NotifyLevel = "info") -> None: ...

    def set_status(self, key: str, text: str | None) -> None: ...

    async def editor(self, title: str, initial: str) -> str | None: ...


class HostContext(Protocol):
    """What the engine needs from the host for one event or command."""

    ui: HostUI
    cwd: Path
    session_id: str | None

    def get_branch(self) -> list[SessionEntry]: ...

    def append_entry(self, custom_type: str, data: dict[str, Any]) -> None: ...

    async def wait_for_idle(self) -> None: ...

    def compact(
        self,
        *,
        custom_instructions: str,
        on_complete: Callable[[], None],
        on_error: Callable[[Exception], None],
    ) -> None: ...
