"""Prompt construction for the observer and reflector passes."""

from __future__ import annotations

from obsmem.utils.helpers import truncate_text

TRUNCATION_MARKER = "\n\n[...truncated...]"

_OUTPUT_FORMAT = """Output strictly as:
<observations>
Date: YYYY-MM-DD
- 🔴 HH:MM Critical observation (decision, constraint, requirement, exact identifier)
- 🟡 HH:MM Important observation (preference, open question, partial progress)
- 🟢 HH:MM Informational observation
</observations>
<current-task>One line: what is being worked on right now.</current-task>
<suggested-response>One line: the obvious next reply or action, if any.</suggested-response>

One observation per line. Start a new "Date:" line only when the day changes.
When an observation refers to another point in time, annotate it inline as
"(meaning <date>)" or "(estimated <date>)", e.g. "(meaning Feb 28, 2026)"."""

_OBSERVER_INSTRUCTIONS = """You are an Observer agent for long coding sessions.

Compress the transcript into durable, high-signal observations.

Rules:
- Keep key decisions, constraints, file changes, errors, and outcomes.
- Keep exact technical anchors (paths, APIs, commands, identifiers, line refs if present).
- Record facts the user states about themselves or their project verbatim in meaning.
- Capture changes explicitly ("switched from X to Y"), not just the end state.
- Deduplicate against previous observations; only output NEW observations.
- Keep concise and dense.
- If work is ongoing, set <current-task>.
- If there is an obvious next agent reply, set <suggested-response>."""

_REFLECTOR_INSTRUCTIONS = """You are a Reflector agent for coding memory.

Rewrite the observation log below into a denser log. Your output REPLACES the
log entirely: anything you omit is permanently lost.

Rules:
- Preserve every decision, constraint, blocker, outcome, and user-stated fact.
- Preserve exact technical identifiers (paths, commands, APIs, names, versions, numbers).
- Merge repeated debugging/tool activity and superseded states into current state.
- Compress older material more than recent material; keep the newest entries nearly intact.
- Keep chronological order and the "Date:" lines."""

_MODERATE_TARGET = "- Target a moderate size reduction of roughly 20-40%."
_AGGRESSIVE_TARGET = "- Target an aggressive size reduction of roughly 40-60%; drop low-priority (🟢) detail first."


def build_observer_prompt(existing_observations: str, transcript: str, *, max_transcript_chars: int) -> str:
    """Single prompt: instructions, output format, prior observations (for dedup), transcript."""
    clipped = truncate_text(transcript, max_transcript_chars, TRUNCATION_MARKER)
    existing = existing_observations.strip()
    prior = f"Existing observations:\n{existing}" if existing else "No previous observations."
    return f"""{_OBSERVER_INSTRUCTIONS}

{_OUTPUT_FORMAT}

{prior}

Transcript to observe:
{clipped}"""


def build_reflector_prompt(observations: str, *, aggressive: bool = False, max_observation_chars: int) -> str:
    clipped = truncate_text(observations, max_observation_chars, TRUNCATION_MARKER)
    target = _AGGRESSIVE_TARGET if aggressive else _MODERATE_TARGET
    return f"""{_REFLECTOR_INSTRUCTIONS}
{target}

{_OUTPUT_FORMAT}

Observations:
{clipped}"""
