"""Extract observation / task / response fields from free-form model output."""

from __future__ import annotations

import re
from dataclasses import dataclass

_SINGLE_FENCE_RE = re.compile(r"^```[A-Za-z0-9_-]*\n(.*?)\n```$", re.DOTALL)
_KNOWN_HEADINGS = r"(?:observations|current\s*task|suggested\s*(?:response|next\s*step))"


@dataclass(frozen=True)
class OMSections:
    observations: str
    current_task: str | None = None
    suggested_response: str | None = None

    @property
    def ok(self) -> bool:
        return bool(self.observations.strip())


def strip_single_code_fence(text: str) -> str:
    """Unwrap text that is entirely enclosed in one fenced code block."""
    m = _SINGLE_FENCE_RE.match(text.strip())
    return (m.group(1) if m else text).strip()


def extract_tagged_block(text: str, tag: str) -> str:
    m = re.search(rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", text, re.IGNORECASE | re.DOTALL)
    return m.group(1).strip() if m else ""


def extract_heading_section(text: str, heading: str) -> str:
    """Body under a markdown heading named *heading*, up to the next known heading."""
    name = r"\s*".join(re.escape(part) for part in heading.split())
    pattern = re.compile(
        rf"(?:^|\n)\s*#{{1,6}}\s*{name}\s*\n(.*?)(?=\n\s*#{{1,6}}\s*{_KNOWN_HEADINGS}\b|$)",
        re.IGNORECASE | re.DOTALL,
    )
    m = pattern.search(text)
    return m.group(1).strip() if m else ""


def parse_om_sections(raw: str | None) -> OMSections:
    """
    Parse model output into an :class:`OMSections` record.

    Tagged blocks (``<observations>``, ``<current-task>``, ``<suggested-response>``)
    win; a missing tag falls back to a markdown heading of the same name.
    An empty ``observations`` field means the caller should treat the run as failed.
    """
    text = strip_single_code_fence(raw or "")

    observations = extract_tagged_block(text, "observations") or extract_heading_section(text, "observations")
    current_task = extract_tagged_block(text, "current-task") or extract_heading_section(text, "current task")
    suggested = (
        extract_tagged_block(text, "suggested-response")
        or extract_heading_section(text, "suggested response")
    )
    return OMSections(
        observations=observations.strip(),
        current_task=current_task.strip() or None,
        suggested_response=suggested.strip() or None,
    )
