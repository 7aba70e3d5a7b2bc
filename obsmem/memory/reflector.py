"""Reflector pass: destructively rewrite the whole observation log into a denser one."""

from __future__ import annotations

import asyncio

from obsmem.config.schema import OMConfig
from obsmem.logging import get_logger
from obsmem.memory.document import MemoryDocument, lines_added_since, merge_observation_items
from obsmem.memory.pipeline import RunResult, SummaryPipeline
from obsmem.memory.prompts import build_reflector_prompt
from obsmem.utils.helpers import trim_preview

logger = get_logger(__name__)


class ReflectorPipeline(SummaryPipeline):
    """
    Replace ``doc.observations`` with the model's condensed rewrite.

    The replacement only commits after a full successful parse; any failure
    leaves the document exactly as it was. Lines an observer merges while the
    model is busy are kept after the rewrite. The pending buffer is never read
    or modified here.
    """

    kind = "reflector"

    async def run(
        self,
        doc: MemoryDocument,
        config: OMConfig,
        *,
        aggressive: bool = False,
        reason: str = "manual",
        abort: asyncio.Event | None = None,
    ) -> RunResult:
        if not config.enable_reflection:
            return RunResult.skipped("disabled")
        if not doc.has_observations:
            return RunResult.skipped("empty")
        if doc.is_reflecting:
            return RunResult.skipped("already_running")

        doc.is_reflecting = True
        try:
            doc.recompute()
            before_tokens = doc.observation_tokens
            sent_lines = doc.observation_lines()
            prompt = build_reflector_prompt(
                "\n".join(sent_lines),
                aggressive=aggressive,
                max_observation_chars=config.max_reflector_observations_chars,
            )
            outcome = await self._summarize(prompt, abort)
            if outcome.sections is None:
                return outcome.failure or RunResult.skipped("parse_failed")

            sections = outcome.sections
            # Lines an observer merged while the model was busy were never sent; keep them after the rewrite.
            carried = lines_added_since(sent_lines, doc.observation_lines())
            if carried:
                logger.info("Carrying observations merged during reflection", count=len(carried))
            doc.set_observations(
                merge_observation_items(sections.observations, "\n".join(carried), config.max_observation_items)
            )
            doc.apply_fields(sections)
            doc.reflection_runs += 1
            label = f"{reason} (aggressive)" if aggressive else reason
            doc.record_reflection(before_tokens, trim_preview(f"{label}: {doc.observations}", 320))
        finally:
            doc.is_reflecting = False

        logger.info(
            "Reflection complete",
            reason=reason,
            aggressive=aggressive,
            before_tokens=before_tokens,
            after_tokens=doc.observation_tokens,
            channel=outcome.channel,
        )
        self._commit(doc)
        return RunResult(ok=True, detail=f"{before_tokens} -> {doc.observation_tokens} tokens", channel=outcome.channel)
