"""Ordered buffer of transcript segments not yet observed."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from obsmem.memory.tokens import estimate_tokens
from obsmem.utils.helpers import random_id, utc_now_iso

SEGMENT_DELIMITER = "\n\n---\n\n"


@dataclass
class PendingSegment:
    """One unobserved unit of transcript (a turn, or messages about to be compacted away)."""

    id: str
    text: str
    tokens: int
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "createdAt": self.created_at, "text": self.text, "tokens": self.tokens}

    @classmethod
    def from_raw(cls, raw: Any) -> PendingSegment | None:
        if not isinstance(raw, dict):
            return None
        text = raw.get("text")
        if not isinstance(text, str):
            return None
        tokens = raw.get("tokens")
        if isinstance(tokens, bool) or not isinstance(tokens, (int, float)) or tokens < 0:
            tokens = estimate_tokens(text)
        seg_id = raw.get("id")
        created_at = raw.get("createdAt")
        return cls(
            id=seg_id if isinstance(seg_id, str) and seg_id else random_id("seg"),
            text=text,
            tokens=int(tokens),
            created_at=created_at if isinstance(created_at, str) else utc_now_iso(),
        )


@dataclass(frozen=True)
class PendingSnapshot:
    """The exact segments handed to one observer run."""

    segment_ids: tuple[str, ...]
    text: str
    tokens: int


class PendingBuffer:
    """
    FIFO of :class:`PendingSegment` with a running token total.

    Segments are only ever removed whole: either all of them (``clear``) or
    exactly the ids a finished observer run consumed (``remove``), so
    segments appended while a run is in flight stay pending.
    """

    def __init__(self, segments: Iterable[PendingSegment] | None = None) -> None:
        self._segments: list[PendingSegment] = list(segments or [])

    def __len__(self) -> int:
        return len(self._segments)

    @property
    def segments(self) -> tuple[PendingSegment, ...]:
        return tuple(self._segments)

    @property
    def tokens(self) -> int:
        return sum(s.tokens for s in self._segments)

    def append(self, text: str, tokens: int | None = None, *, prefix: str = "seg") -> PendingSegment:
        segment = PendingSegment(
            id=random_id(prefix),
            text=text,
            tokens=estimate_tokens(text) if tokens is None else max(0, int(tokens)),
        )
        self._segments.append(segment)
        return segment

    def snapshot(self) -> PendingSnapshot:
        return PendingSnapshot(
            segment_ids=tuple(s.id for s in self._segments),
            text=SEGMENT_DELIMITER.join(s.text for s in self._segments),
            tokens=self.tokens,
        )

    def remove(self, segment_ids: Iterable[str]) -> int:
        """Drop the given segments; returns how many were removed."""
        consumed = set(segment_ids)
        before = len(self._segments)
        self._segments = [s for s in self._segments if s.id not in consumed]
        return before - len(self._segments)

    def clear(self) -> None:
        self._segments = []

    def to_list(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self._segments]

    @classmethod
    def from_raw(cls, raw: Any) -> PendingBuffer:
        if not isinstance(raw, list):
            return cls()
        return cls(seg for seg in (PendingSegment.from_raw(item) for item in raw) if seg is not None)
