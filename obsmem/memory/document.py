"""The per-scope memory document and its merge rules."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Literal

from obsmem.memory.pending import PendingBuffer
from obsmem.memory.sections import OMSections
from obsmem.memory.tokens import estimate_tokens
from obsmem.utils.helpers import utc_now_iso

StorageScope = Literal["thread", "resource"]

STATE_VERSION = 2
MAX_REFLECTION_HISTORY = 15


def split_observation_lines(text: str) -> list[str]:
    return [line.strip() for line in (text or "").split("\n") if line.strip()]


def merge_observation_items(existing: str, incoming: str, max_items: int) -> str:
    """Append *incoming* lines after *existing* ones and keep only the newest *max_items*."""
    merged = split_observation_lines(existing) + split_observation_lines(incoming)
    return "\n".join(merged[-max(1, max_items):])


def lines_added_since(before: list[str], after: list[str]) -> list[str]:
    """Lines merged onto *after* since it was *before*.

    Merges only append at the tail and cap from the head, so *after* starts
    with some suffix of *before*; everything past that overlap is new.
    """
    if after == before:
        return []
    for start in range(len(before)):
        kept = before[start:]
        if after[:len(kept)] == kept:
            return after[len(kept):]
    return after


@dataclass
class ReflectionSnapshot:
    at: str
    before_tokens: int
    after_tokens: int
    preview: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at,
            "beforeTokens": self.before_tokens,
            "afterTokens": self.after_tokens,
            "preview": self.preview,
        }

    @classmethod
    def from_raw(cls, raw: Any) -> ReflectionSnapshot | None:
        if not isinstance(raw, dict):
            return None
        return cls(
            at=str(raw.get("at") or ""),
            before_tokens=_int_or(raw.get("beforeTokens"), 0),
            after_tokens=_int_or(raw.get("afterTokens"), 0),
            preview=str(raw.get("preview") or ""),
        )


@dataclass
class MemoryDocument:
    """
    One evolving memory document per scope.

    ``observations`` is newline-delimited; line order is recency order.
    ``reflections`` is newest first; the oldest entry drops off the end.
    ``is_observing`` / ``is_reflecting`` are in-process single-flight flags and
    are never persisted.
    """

    scope: StorageScope = "thread"
    observations: str = ""
    observation_tokens: int = 0
    current_task: str | None = None
    suggested_response: str | None = None
    observation_runs: int = 0
    reflection_runs: int = 0
    last_observed_at: str | None = None
    last_compression_ratio: float | None = None
    reflections: deque[ReflectionSnapshot] = field(default_factory=lambda: deque(maxlen=MAX_REFLECTION_HISTORY))
    pending: PendingBuffer = field(default_factory=PendingBuffer)
    is_observing: bool = False
    is_reflecting: bool = False

    @property
    def has_observations(self) -> bool:
        return bool(self.observations.strip())

    def observation_lines(self) -> list[str]:
        return split_observation_lines(self.observations)

    def set_observations(self, text: str) -> None:
        self.observations = text
        self.recompute()

    def recompute(self) -> None:
        self.observation_tokens = estimate_tokens(self.observations)

    def apply_fields(self, sections: OMSections) -> None:
        """Last-write-wins update of the optional task / response fields."""
        if sections.current_task:
            self.current_task = sections.current_task
        if sections.suggested_response:
            self.suggested_response = sections.suggested_response

    def record_reflection(self, before_tokens: int, preview: str) -> None:
        self.reflections.appendleft(ReflectionSnapshot(
            at=utc_now_iso(),
            before_tokens=before_tokens,
            after_tokens=self.observation_tokens,
            preview=preview,
        ))

    def to_dict(self) -> dict[str, Any]:
        self.recompute()
        return {
            "version": STATE_VERSION,
            "storageScope": self.scope,
            "observations": self.observations,
            "observationTokens": self.observation_tokens,
            "currentTask": self.current_task,
            "suggestedResponse": self.suggested_response,
            "observationRuns": self.observation_runs,
            "reflectionRuns": self.reflection_runs,
            "lastObservedAt": self.last_observed_at,
            "lastCompressionRatio": self.last_compression_ratio,
            "reflections": [r.to_dict() for r in self.reflections],
            "pendingSegments": self.pending.to_list(),
            "pendingTokens": self.pending.tokens,
        }

    @classmethod
    def from_dict(cls, raw: Any, scope: StorageScope = "thread") -> MemoryDocument:
        """Rebuild a document from persisted data, defaulting anything malformed."""
        if not isinstance(raw, dict):
            return cls(scope=scope)
        reflections = [r for r in (ReflectionSnapshot.from_raw(x) for x in _list(raw.get("reflections"))) if r]
        ratio = raw.get("lastCompressionRatio")
        doc = cls(
            scope="resource" if raw.get("storageScope") == "resource" else scope,
            observations=raw.get("observations") if isinstance(raw.get("observations"), str) else "",
            current_task=_str_or_none(raw.get("currentTask")),
            suggested_response=_str_or_none(raw.get("suggestedResponse")),
            observation_runs=_int_or(raw.get("observationRuns"), 0),
            reflection_runs=_int_or(raw.get("reflectionRuns"), 0),
            last_observed_at=_str_or_none(raw.get("lastObservedAt")),
            last_compression_ratio=float(ratio) if _is_number(ratio) else None,
            reflections=deque(reflections[:MAX_REFLECTION_HISTORY], maxlen=MAX_REFLECTION_HISTORY),
            pending=PendingBuffer.from_raw(raw.get("pendingSegments")),
        )
        doc.recompute()
        return doc


def _is_number(value: Any) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float)) and math.isfinite(value)


def _int_or(value: Any, default: int) -> int:
    return int(value) if _is_number(value) else default


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []
