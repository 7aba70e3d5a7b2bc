"""Shared step runner for the observer and reflector passes."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from obsmem.errors import SummarizationAbortedError, SummarizationUnavailableError
from obsmem.logging import get_logger
from obsmem.memory.sections import OMSections, parse_om_sections
from obsmem.utils.helpers import trim_preview

if TYPE_CHECKING:
    from obsmem.memory.document import MemoryDocument
    from obsmem.providers.channels import ChannelChain

logger = get_logger(__name__)

CommitHook = Callable[["MemoryDocument"], None]


@dataclass(frozen=True)
class RunResult:
    """Outcome of one observer or reflector run.

    ``reason`` is one of: ok, no_pending, empty, disabled, already_running,
    unavailable, aborted, parse_failed.
    """

    ok: bool
    reason: str = "ok"
    detail: str | None = None
    channel: str | None = None

    @classmethod
    def skipped(cls, reason: str, detail: str | None = None) -> RunResult:
        return cls(ok=False, reason=reason, detail=detail)


@dataclass
class SummaryOutcome:
    sections: OMSections | None
    failure: RunResult | None = None
    channel: str | None = None


class SummaryPipeline:
    """Send one prompt through the channel chain and parse the reply into sections."""

    kind = "summary"

    def __init__(self, chain: ChannelChain, *, on_commit: CommitHook | None = None) -> None:
        self.chain = chain
        self.on_commit = on_commit

    async def _summarize(self, prompt: str, abort: asyncio.Event | None) -> SummaryOutcome:
        try:
            result = await self.chain.complete(prompt, abort=abort)
        except SummarizationAbortedError:
            logger.info("Summarization aborted", kind=self.kind)
            return SummaryOutcome(None, RunResult.skipped("aborted"))
        except SummarizationUnavailableError as e:
            logger.warning("Summarization unavailable", kind=self.kind, error=str(e), attempted=e.attempted)
            return SummaryOutcome(None, RunResult.skipped("unavailable", str(e)))

        sections = parse_om_sections(result.text)
        if not sections.ok:
            preview = trim_preview(result.text or "(empty)", 320)
            logger.warning("Summarization output had no observations", kind=self.kind, channel=result.channel, preview=preview)
            return SummaryOutcome(None, RunResult.skipped("parse_failed", preview))
        return SummaryOutcome(sections, channel=result.channel)

    def _commit(self, doc: MemoryDocument) -> None:
        if self.on_commit is not None:
            self.on_commit(doc)
