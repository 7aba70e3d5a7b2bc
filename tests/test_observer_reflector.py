"""Tests for the observer and reflector passes.

Covers:
1. Observer success, merge cap, and pending segment consumption
2. Failures (empty output, unavailable, abort) leave state untouched
3. Segments appended during an in-flight observation stay pending
4. Reflector strict replace and failure semantics
5. Periodic reflection triggers
6. Observations merged while a reflection is in flight are kept
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from obsmem.config.schema import OMConfig
from obsmem.errors import SummarizationAbortedError, SummarizationUnavailableError
from obsmem.memory.document import MemoryDocument
from obsmem.memory.observer import ObserverPipeline, should_reflect_periodically
from obsmem.memory.reflector import ReflectorPipeline
from obsmem.providers.channels import ChannelResult


class ScriptedChain:
    """Stands in for ChannelChain: returns queued outputs or raises queued errors."""

    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.prompts: list[str] = []
        self.before_return = None

    async def complete(self, prompt, *, abort=None):
        self.prompts.append(prompt)
        if self.before_return is not None:
            self.before_return()
        item = self.outputs.pop(0)
        if isinstance(item, Exception):
            raise item
        return ChannelResult(text=item, channel="fake")


def _obs(*lines: str, task: str | None = None) -> str:
    out = "<observations>\n" + "\n".join(lines) + "\n</observations>"
    if task:
        out += f"\n<current-task>{task}</current-task>"
    return out


def _doc_with_pending(*texts: str) -> MemoryDocument:
    doc = MemoryDocument()
    for text in texts:
        doc.pending.append(text, tokens=100)
    return doc


def _config(**overrides) -> OMConfig:
    return OMConfig(**{"enable_reflection": False, **overrides})


# ---------------------------------------------------------------------------
# Observer
# ---------------------------------------------------------------------------

class TestObserver:
    @pytest.mark.asyncio
    async def test_success_appends_observations_and_consumes_pending(self) -> None:
        commits = []
        chain = ScriptedChain(_obs("- 🔴 10:00 chose sqlite", task="Build store"))
        observer = ObserverPipeline(chain, on_commit=commits.append)
        doc = _doc_with_pending("user: use sqlite", "assistant: ok")

        result = await observer.run(doc, _config())

        assert result.ok and result.channel == "fake"
        assert doc.observations == "- 🔴 10:00 chose sqlite"
        assert doc.current_task == "Build store"
        assert doc.observation_runs == 1
        assert doc.last_observed_at is not None
        assert doc.last_compression_ratio is not None and doc.last_compression_ratio > 1
        assert len(doc.pending) == 0
        assert commits == [doc]
        assert "user: use sqlite" in chain.prompts[0]

    @pytest.mark.asyncio
    async def test_prompt_includes_existing_observations_for_dedup(self) -> None:
        chain = ScriptedChain(_obs("- new"))
        doc = _doc_with_pending("turn")
        doc.set_observations("- already known")
        await ObserverPipeline(chain).run(doc, _config())
        assert "- already known" in chain.prompts[0]
        assert doc.observations == "- already known\n- new"

    @pytest.mark.asyncio
    async def test_merge_respects_line_cap(self) -> None:
        doc = _doc_with_pending("turn")
        doc.set_observations("A\nB\nC")
        await ObserverPipeline(ScriptedChain(_obs("D"))).run(doc, _config(max_observation_items=3))
        assert doc.observations == "B\nC\nD"

    @pytest.mark.asyncio
    async def test_no_pending_is_skipped(self) -> None:
        chain = ScriptedChain()
        result = await ObserverPipeline(chain).run(MemoryDocument(), _config())
        assert result.reason == "no_pending"
        assert chain.prompts == []

    @pytest.mark.asyncio
    async def test_already_running_is_skipped(self) -> None:
        doc = _doc_with_pending("turn")
        doc.is_observing = True
        result = await ObserverPipeline(ScriptedChain()).run(doc, _config())
        assert result.reason == "already_running"
        assert len(doc.pending) == 1

    @pytest.mark.asyncio
    async def test_empty_output_is_parse_failure_and_keeps_state(self) -> None:
        commits = []
        doc = _doc_with_pending("turn one", "turn two")
        doc.set_observations("- kept")
        observer = ObserverPipeline(ScriptedChain("no tags here"), on_commit=commits.append)

        result = await observer.run(doc, _config())

        assert not result.ok
        assert result.reason == "parse_failed"
        assert result.detail == "no tags here"
        assert doc.observations == "- kept"
        assert doc.observation_runs == 0
        assert len(doc.pending) == 2
        assert commits == []
        assert doc.is_observing is False

    @pytest.mark.asyncio
    async def test_empty_text_preview(self) -> None:
        result = await ObserverPipeline(ScriptedChain("")).run(_doc_with_pending("t"), _config())
        assert result.reason == "parse_failed"
        assert result.detail == "(empty)"

    @pytest.mark.asyncio
    async def test_unavailable_keeps_pending(self) -> None:
        doc = _doc_with_pending("turn")
        chain = ScriptedChain(SummarizationUnavailableError("no summarization channel available"))
        result = await ObserverPipeline(chain).run(doc, _config())
        assert result.reason == "unavailable"
        assert len(doc.pending) == 1

    @pytest.mark.asyncio
    async def test_abort_keeps_pending(self) -> None:
        doc = _doc_with_pending("turn")
        result = await ObserverPipeline(ScriptedChain(SummarizationAbortedError("x"))).run(
            doc, _config(), abort=asyncio.Event()
        )
        assert result.reason == "aborted"
        assert len(doc.pending) == 1
        assert doc.is_observing is False

    @pytest.mark.asyncio
    async def test_segments_appended_during_call_stay_pending(self) -> None:
        doc = _doc_with_pending("first", "second")
        chain = ScriptedChain(_obs("- summary"))
        late = []
        chain.before_return = lambda: late.append(doc.pending.append("arrived mid-call", tokens=50))

        result = await ObserverPipeline(chain).run(doc, _config())

        assert result.ok
        assert [s.id for s in doc.pending.segments] == [late[0].id]
        assert doc.pending.tokens == 50

    @pytest.mark.asyncio
    async def test_second_run_while_first_in_flight_is_rejected(self) -> None:
        doc = _doc_with_pending("turn")
        gate = asyncio.Event()

        class _SlowChain:
            async def complete(self, prompt, *, abort=None):
                await gate.wait()
                return ChannelResult(text=_obs("- done"), channel="slow")

        observer = ObserverPipeline(_SlowChain())
        first = asyncio.create_task(observer.run(doc, _config()))
        await asyncio.sleep(0)
        second = await observer.run(doc, _config())
        gate.set()

        assert second.reason == "already_running"
        assert (await first).ok
        assert doc.observation_runs == 1


# ---------------------------------------------------------------------------
# Reflector
# ---------------------------------------------------------------------------

class TestReflector:
    @pytest.mark.asyncio
    async def test_replaces_observations_entirely(self) -> None:
        commits = []
        doc = MemoryDocument()
        doc.set_observations("- a\n- b\n- c\n- d")
        doc.pending.append("untouched", tokens=5)
        reflector = ReflectorPipeline(ScriptedChain(_obs("- merged a-d")), on_commit=commits.append)

        result = await reflector.run(doc, OMConfig(), reason="manual")

        assert result.ok
        assert doc.observations == "- merged a-d"
        assert doc.reflection_runs == 1
        assert len(doc.pending) == 1
        assert commits == [doc]
        assert result.detail.endswith(f"-> {doc.observation_tokens} tokens")
        snapshot = doc.reflections[0]
        assert snapshot.preview.startswith("manual: ")
        assert snapshot.after_tokens == doc.observation_tokens

    @pytest.mark.asyncio
    async def test_aggressive_prompt_and_preview_label(self) -> None:
        chain = ScriptedChain(_obs("- short"))
        doc = MemoryDocument()
        doc.set_observations("- long history")
        await ReflectorPipeline(chain).run(doc, OMConfig(), aggressive=True, reason="before-compaction")
        assert "40-60%" in chain.prompts[0]
        assert doc.reflections[0].preview.startswith("before-compaction (aggressive): ")

    @pytest.mark.asyncio
    async def test_parse_failure_leaves_document_unchanged(self) -> None:
        doc = MemoryDocument(current_task="task")
        doc.set_observations("- a\n- b")
        before = doc.to_dict()

        result = await ReflectorPipeline(ScriptedChain("garbage")).run(doc, OMConfig())

        assert result.reason == "parse_failed"
        assert doc.to_dict() == before
        assert doc.is_reflecting is False

    @pytest.mark.asyncio
    async def test_replacement_obeys_line_cap(self) -> None:
        doc = MemoryDocument()
        doc.set_observations("- x")
        chain = ScriptedChain(_obs("1", "2", "3", "4"))
        await ReflectorPipeline(chain).run(doc, OMConfig(max_observation_items=2))
        assert doc.observations == "3\n4"

    @pytest.mark.asyncio
    async def test_disabled_and_empty_and_running(self) -> None:
        reflector = ReflectorPipeline(ScriptedChain())
        doc = MemoryDocument()
        assert (await reflector.run(doc, OMConfig(enable_reflection=False))).reason == "disabled"
        assert (await reflector.run(doc, OMConfig())).reason == "empty"
        doc.set_observations("- x")
        doc.is_reflecting = True
        assert (await reflector.run(doc, OMConfig())).reason == "already_running"


# ---------------------------------------------------------------------------
# Periodic reflection
# ---------------------------------------------------------------------------

class TestPeriodicReflection:
    def test_every_n_runs(self) -> None:
        config = OMConfig(reflect_every_n_observations=3, reflect_when_observation_tokens_over=100_000)
        doc = MemoryDocument()
        doc.set_observations("- x")
        doc.observation_runs = 2
        assert not should_reflect_periodically(doc, config)
        doc.observation_runs = 3
        assert should_reflect_periodically(doc, config)

    def test_token_threshold(self) -> None:
        config = OMConfig(reflect_every_n_observations=1000, reflect_when_observation_tokens_over=10)
        doc = MemoryDocument(observation_runs=1)
        doc.set_observations("- " + "word " * 50)
        assert should_reflect_periodically(doc, config)

    def test_disabled_or_empty_never_reflects(self) -> None:
        doc = MemoryDocument(observation_runs=3)
        assert not should_reflect_periodically(doc, OMConfig(reflect_every_n_observations=3))
        doc.set_observations("- x")
        assert not should_reflect_periodically(doc, OMConfig(enable_reflection=False, reflect_every_n_observations=3))

    @pytest.mark.asyncio
    async def test_observer_triggers_reflection_on_nth_run(self) -> None:
        chain = ScriptedChain(_obs("- observed"), _obs("- reflected"))
        reflector = ReflectorPipeline(chain)
        observer = ObserverPipeline(chain, reflector=reflector)
        doc = _doc_with_pending("turn")
        doc.observation_runs = 2

        result = await observer.run(doc, OMConfig(reflect_every_n_observations=3))

        assert result.ok
        assert doc.observation_runs == 3
        assert doc.reflection_runs == 1
        assert doc.observations == "- reflected"

    @pytest.mark.asyncio
    async def test_allow_reflect_false_skips_reflection(self) -> None:
        chain = ScriptedChain(_obs("- observed"))
        observer = ObserverPipeline(chain, reflector=ReflectorPipeline(chain))
        doc = _doc_with_pending("turn")
        doc.observation_runs = 2
        await observer.run(doc, OMConfig(reflect_every_n_observations=3), allow_reflect=False)
        assert doc.reflection_runs == 0
        assert len(chain.prompts) == 1

    @pytest.mark.asyncio
    async def test_reflection_error_does_not_fail_observation(self) -> None:
        reflector = MagicMock()

        async def _boom(*args, **kwargs):
            raise RuntimeError("reflector exploded")

        reflector.run = _boom
        observer = ObserverPipeline(ScriptedChain(_obs("- observed")), reflector=reflector)
        doc = _doc_with_pending("turn")
        doc.observation_runs = 2
        result = await observer.run(doc, OMConfig(reflect_every_n_observations=3))
        assert result.ok
        assert doc.observations == "- observed"


# ---------------------------------------------------------------------------
# Observer and reflector in flight together
# ---------------------------------------------------------------------------

class _GatedChain:
    """Holds its reply until *gate* is set, so another run can commit meanwhile."""

    def __init__(self, output: str, gate: asyncio.Event):
        self.output = output
        self.gate = gate
        self.prompts: list[str] = []

    async def complete(self, prompt, *, abort=None):
        self.prompts.append(prompt)
        await self.gate.wait()
        return ChannelResult(text=self.output, channel="gated")


class TestConcurrentRuns:
    @pytest.mark.asyncio
    async def test_observation_merged_during_reflection_survives(self) -> None:
        doc = _doc_with_pending("user: remember D")
        doc.set_observations("A\nB")
        gate = asyncio.Event()
        slow = _GatedChain(_obs("AB condensed"), gate)

        reflecting = asyncio.create_task(ReflectorPipeline(slow).run(doc, OMConfig()))
        await asyncio.sleep(0)
        assert doc.is_reflecting

        observed = await ObserverPipeline(ScriptedChain(_obs("D new fact"))).run(doc, _config())
        assert observed.ok
        assert len(doc.pending) == 0

        gate.set()
        reflected = await reflecting

        assert reflected.ok
        assert doc.observations == "AB condensed\nD new fact"
        assert "D new fact" not in slow.prompts[0]

    @pytest.mark.asyncio
    async def test_carried_lines_respect_cap(self) -> None:
        doc = _doc_with_pending("turn")
        doc.set_observations("A\nB\nC")
        gate = asyncio.Event()
        reflecting = asyncio.create_task(
            ReflectorPipeline(_GatedChain(_obs("R1", "R2"), gate)).run(doc, OMConfig(max_observation_items=3))
        )
        await asyncio.sleep(0)

        await ObserverPipeline(ScriptedChain(_obs("D", "E"))).run(doc, _config(max_observation_items=3))
        assert doc.observations == "C\nD\nE"

        gate.set()
        assert (await reflecting).ok
        assert doc.observations == "R2\nD\nE"

    @pytest.mark.asyncio
    async def test_failed_reflection_keeps_lines_merged_meanwhile(self) -> None:
        doc = _doc_with_pending("turn")
        doc.set_observations("A")
        gate = asyncio.Event()
        reflecting = asyncio.create_task(ReflectorPipeline(_GatedChain("garbage", gate)).run(doc, OMConfig()))
        await asyncio.sleep(0)

        await ObserverPipeline(ScriptedChain(_obs("B"))).run(doc, _config())
        gate.set()

        assert (await reflecting).reason == "parse_failed"
        assert doc.observations == "A\nB"
