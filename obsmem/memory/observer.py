"""Observer pass: compress pending transcript segments into new observation lines."""

from __future__ import annotations

import asyncio

from obsmem.config.schema import OMConfig
from obsmem.logging import get_logger
from obsmem.memory.document import MemoryDocument, merge_observation_items
from obsmem.memory.pipeline import CommitHook, RunResult, SummaryPipeline
from obsmem.memory.prompts import build_observer_prompt
from obsmem.memory.reflector import ReflectorPipeline
from obsmem.memory.tokens import estimate_tokens
from obsmem.providers.channels import ChannelChain
from obsmem.utils.helpers import utc_now_iso

logger = get_logger(__name__)


def should_reflect_periodically(doc: MemoryDocument, config: OMConfig) -> bool:
    """Every N observer runs, or once observations outgrow the token threshold."""
    if not config.enable_reflection or not doc.has_observations:
        return False
    every_n = max(1, config.reflect_every_n_observations)
    by_runs = doc.observation_runs > 0 and doc.observation_runs % every_n == 0
    by_tokens = doc.observation_tokens >= max(1, config.reflect_when_observation_tokens_over)
    return by_runs or by_tokens


class ObserverPipeline(SummaryPipeline):
    """
    Append observations distilled from the pending buffer.

    Steps: snapshot pending -> prompt -> channel chain -> parse -> merge under
    the line cap -> drop exactly the snapshotted segment ids -> optional
    periodic reflection. Segments appended while the call is in flight are
    not part of the snapshot and stay pending.
    """

    kind = "observer"

    def __init__(
        self,
        chain: ChannelChain,
        *,
        reflector: ReflectorPipeline | None = None,
        on_commit: CommitHook | None = None,
    ) -> None:
        super().__init__(chain, on_commit=on_commit)
        self.reflector = reflector

    async def run(
        self,
        doc: MemoryDocument,
        config: OMConfig,
        *,
        abort: asyncio.Event | None = None,
        allow_reflect: bool = True,
    ) -> RunResult:
        if doc.is_observing:
            return RunResult.skipped("already_running")
        snapshot = doc.pending.snapshot()
        if not snapshot.segment_ids:
            return RunResult.skipped("no_pending")

        doc.is_observing = True
        try:
            prompt = build_observer_prompt(
                doc.observations,
                snapshot.text,
                max_transcript_chars=config.max_observer_transcript_chars,
            )
            outcome = await self._summarize(prompt, abort)
            if outcome.sections is None:
                return outcome.failure or RunResult.skipped("parse_failed")

            sections = outcome.sections
            doc.set_observations(
                merge_observation_items(doc.observations, sections.observations, config.max_observation_items)
            )
            doc.apply_fields(sections)
            doc.observation_runs += 1
            doc.last_observed_at = utc_now_iso()
            doc.last_compression_ratio = round(snapshot.tokens / max(1, estimate_tokens(sections.observations)), 2)
            removed = doc.pending.remove(snapshot.segment_ids)
        finally:
            doc.is_observing = False

        logger.info(
            "Observation complete",
            segments=removed,
            input_tokens=snapshot.tokens,
            observation_tokens=doc.observation_tokens,
            compression_ratio=doc.last_compression_ratio,
            still_pending=len(doc.pending),
            channel=outcome.channel,
        )
        self._commit(doc)

        if allow_reflect and self.reflector is not None and should_reflect_periodically(doc, config):
            try:
                reflected = await self.reflector.run(doc, config, reason="auto-periodic", abort=abort)
            except Exception:
                logger.exception("Periodic reflection failed")
            else:
                if not reflected.ok:
                    logger.debug("Periodic reflection skipped", reason=reflected.reason)

        return RunResult(ok=True, channel=outcome.channel)
