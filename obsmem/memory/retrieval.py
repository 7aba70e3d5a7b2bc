"""Build the memory payload injected into every prompt."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from obsmem.memory.document import MemoryDocument, split_observation_lines
from obsmem.memory.temporal import TemporalAnnotator
from obsmem.memory.tokens import estimate_tokens

OM_MARKER = "<observational-memory>"
OM_MARKER_END = "</observational-memory>"
MEMORY_CONTEXT_TYPE = "observational-memory-context"
CONTINUATION_HINT_TYPE = "observational-memory-continuation"

CONTINUATION_HINT = (
    "Earlier turns of this conversation were trimmed from the live history. "
    "Continue from the observational memory above and the recent messages below; "
    "do not restart the task."
)

_PREAMBLE = (
    "The observations below are your compressed memory of earlier turns in this conversation.\n"
    "If they conflict with the live chat history, trust the observations.\n"
    "Prefer the most recent information when observations disagree with each other.\n"
    "Facts the user stated about themselves or their project are authoritative."
)
_TRAILER_ALL = "Always use this memory when answering what happened previously in this session."
_TRAILER_CORE_RELEVANT = "Use core memory first, then the relevant observations for this turn."

STOPWORDS = frozenset({
    "the", "a", "an", "to", "for", "of", "and", "or", "in", "on", "with", "by",
    "is", "are", "was", "were", "be", "been", "it", "that", "this", "as", "from",
    "at", "user", "assistant", "agent", "tool", "task",
})
QUERY_MESSAGE_COUNT = 6

# Roles at which a recent-message window may start.
TURN_BOUNDARY_ROLES = frozenset({"user", "custom", "branchSummary", "compactionSummary", "bashExecution"})

_KEYWORD_SPLIT_RE = re.compile(r"[^\w-]+")
_LOW_PRIORITY_GLYPH_RE = re.compile(r"[🟡🟢]️?\s?")
# Single-token semantic tags such as [decision] or [file:src/app.py]; "[3 items collapsed]" never matches.
# A tag never follows a word or bracket directly, so subscripts like Optional[str] stay intact.
_SEMANTIC_TAG_RE = re.compile(r"(?<![\w\]])\[[A-Za-z][\w:./-]*\](?!\()\s?")
_INNER_SPACES_RE = re.compile(r"(?<=\S)[ \t]{2,}")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


# ---------------------------------------------------------------------------
# Message text
# ---------------------------------------------------------------------------

def message_text_for_relevance(message: dict[str, Any] | None) -> str:
    """Plain text of a message: the string content, or its joined text blocks."""
    if not message:
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(block.get("text") or "") for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ).strip()
    return ""


def message_token_estimate(message: dict[str, Any], model_hint: str | None = None) -> int:
    content = message.get("content")
    text = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False, default=str)
    return estimate_tokens(text, model_hint)


# ---------------------------------------------------------------------------
# Core + relevant selection
# ---------------------------------------------------------------------------

def keyword_set(texts: Iterable[str]) -> frozenset[str]:
    words: set[str] = set()
    for text in texts:
        for word in _KEYWORD_SPLIT_RE.split((text or "").lower()):
            word = word.strip()
            if len(word) >= 3 and word not in STOPWORDS:
                words.add(word)
    return frozenset(words)


def trim_lines_to_token_budget(lines: Sequence[str], max_tokens: int) -> list[str]:
    """Keep leading lines while under *max_tokens*; the first line is always kept."""
    out: list[str] = []
    used = 0
    for line in lines:
        tokens = estimate_tokens(line)
        if out and used + tokens > max_tokens:
            break
        out.append(line)
        used += tokens
    return out


@dataclass
class CoreRelevant:
    core: list[str] = field(default_factory=list)
    relevant: list[str] = field(default_factory=list)


def build_core_and_relevant(
    lines: Sequence[str],
    query_texts: Iterable[str],
    *,
    core_max_tokens: int,
    relevant_max_items: int,
    relevant_max_tokens: int,
) -> CoreRelevant:
    """
    Split observation lines into a recency-bounded core and a query-ranked relevant set.

    Core is the newest tail under ``core_max_tokens``. Relevant lines are scored
    by how many query keywords they contain; with no keywords they are ranked
    by recency alone. Ties go to the more recent line. The two sets never share
    a line.
    """
    if not lines:
        return CoreRelevant()

    core = trim_lines_to_token_budget(list(reversed(lines)), core_max_tokens)
    core.reverse()

    keys = keyword_set(query_texts)
    scored = []
    for index, line in enumerate(lines):
        lowered = line.lower()
        score = sum(1 for key in keys if key in lowered) if keys else 0
        scored.append((score, index, line))

    if keys:
        ranked = sorted((item for item in scored if item[0] > 0), key=lambda item: (-item[0], -item[1]))
    else:
        ranked = sorted(scored, key=lambda item: -item[1])

    seen = set(core)
    picked: list[str] = []
    for _, _, line in ranked:
        if line in seen:
            continue
        seen.add(line)
        picked.append(line)
        if len(picked) >= max(1, relevant_max_items):
            break
    return CoreRelevant(core=core, relevant=trim_lines_to_token_budget(picked, relevant_max_tokens))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def optimize_observation_text(text: str) -> str:
    """Token-saving pass: keep only the 🔴 marker, drop one-word tags, squeeze whitespace."""
    text = _LOW_PRIORITY_GLYPH_RE.sub("", text)
    text = _SEMANTIC_TAG_RE.sub("", text)
    lines = [_INNER_SPACES_RE.sub(" ", line).rstrip() for line in text.split("\n")]
    return _BLANK_RUN_RE.sub("\n\n", "\n".join(lines)).strip()


def render_observations(text: str, annotator: TemporalAnnotator | None = None) -> str:
    optimized = optimize_observation_text(text)
    return (annotator or TemporalAnnotator()).annotate(optimized)


def _task_blocks(doc: MemoryDocument) -> list[str]:
    blocks: list[str] = []
    if doc.current_task and doc.current_task.strip():
        blocks += [f"<current-task>\n{doc.current_task.strip()}\n</current-task>", ""]
    if doc.suggested_response and doc.suggested_response.strip():
        blocks += [f"<suggested-response>\n{doc.suggested_response.strip()}\n</suggested-response>", ""]
    return blocks


def format_full_payload(doc: MemoryDocument, annotator: TemporalAnnotator | None = None) -> str:
    blocks = [OM_MARKER, _PREAMBLE, ""]
    if doc.has_observations:
        blocks += ["<observations>", render_observations(doc.observations, annotator), "</observations>", ""]
    blocks += _task_blocks(doc)
    blocks += [_TRAILER_ALL, OM_MARKER_END]
    return "\n".join(blocks)


def format_core_relevant_payload(
    doc: MemoryDocument,
    recent_messages: Sequence[dict[str, Any]],
    *,
    core_max_tokens: int,
    relevant_max_items: int,
    relevant_max_tokens: int,
    annotator: TemporalAnnotator | None = None,
) -> str:
    query = [message_text_for_relevance(m) for m in recent_messages[-QUERY_MESSAGE_COUNT:]]
    parts = build_core_and_relevant(
        split_observation_lines(doc.observations),
        [q for q in query if q],
        core_max_tokens=core_max_tokens,
        relevant_max_items=relevant_max_items,
        relevant_max_tokens=relevant_max_tokens,
    )
    annotator = annotator or TemporalAnnotator()
    blocks = [OM_MARKER, _PREAMBLE, ""]
    if parts.core or parts.relevant:
        blocks.append("<observations>")
        if parts.core:
            blocks += ["<core>", render_observations("\n".join(parts.core), annotator), "</core>"]
        if parts.relevant:
            blocks += ["<relevant>", render_observations("\n".join(parts.relevant), annotator), "</relevant>"]
        blocks += ["</observations>", ""]
    blocks += _task_blocks(doc)
    blocks += [_TRAILER_CORE_RELEVANT, OM_MARKER_END]
    return "\n".join(blocks)


# ---------------------------------------------------------------------------
# Live history window and compaction summary
# ---------------------------------------------------------------------------

def is_memory_message(message: dict[str, Any]) -> bool:
    if message.get("role") == "custom" and message.get("custom_type") in (MEMORY_CONTEXT_TYPE, CONTINUATION_HINT_TYPE):
        return True
    content = message.get("content")
    return message.get("role") == "system" and isinstance(content, str) and OM_MARKER in content


def select_recent_turns_by_token_budget(
    messages: Sequence[dict[str, Any]],
    budget_tokens: int,
    model_hint: str | None = None,
) -> list[dict[str, Any]]:
    """
    Newest messages within *budget_tokens* (at least the newest one), with the
    start moved back to the nearest turn boundary so no turn is cut in half.
    """
    if not messages:
        return []
    start = len(messages)
    used = 0
    for i in range(len(messages) - 1, -1, -1):
        tokens = message_token_estimate(messages[i], model_hint)
        if start < len(messages) and used + tokens > budget_tokens:
            break
        start = i
        used += tokens
    while start > 0 and messages[start].get("role") not in TURN_BOUNDARY_ROLES:
        start -= 1
    return list(messages[start:])


def format_compaction_summary(doc: MemoryDocument) -> str:
    task = (doc.current_task or "").strip()
    sections = [
        "## Goal",
        task or "Continue the coding task using compressed observational memory.",
        "",
        "## Constraints & Preferences",
        "- This summary was generated from observational memory.",
        "- Prefer this summary over dropped conversation turns.",
        "",
        "## Progress",
        "### Done",
        "- [x] Observations were generated from prior turns.",
        "",
        "### In Progress",
        f"- [ ] {task}" if task else "- [ ] Continue implementation from observational memory.",
        "",
        "## Critical Context",
        doc.observations.strip() or "- (No observations available yet)",
    ]
    if doc.suggested_response and doc.suggested_response.strip():
        sections += ["", "## Next Steps", f"1. {doc.suggested_response.strip()}"]
    return "\n".join(sections)
