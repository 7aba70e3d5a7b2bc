"""Observational memory engine: reacts to host events and owns per-scope memory state."""

from __future__ import annotations

import asyncio
import json
from datetime import date
from typing import Any

import structlog

from obsmem.agent.coordinator import ObservationCoordinator
from obsmem.agent.host import (
    STATUS_KEY,
    BeforeCompactEvent,
    CompactionResult,
    ContextEvent,
    HostContext,
    Message,
    TurnEndEvent,
)
from obsmem.config import LoadedConfig, OMConfig, StorageSettings, load_config, parse_config_text, save_project_config
from obsmem.config.loader import get_project_config_path
from obsmem.errors import ConfigError
from obsmem.logging import get_logger
from obsmem.memory.document import MemoryDocument
from obsmem.memory.observer import ObserverPipeline
from obsmem.memory.pipeline import RunResult
from obsmem.memory.reflector import ReflectorPipeline
from obsmem.memory.retrieval import (
    CONTINUATION_HINT,
    CONTINUATION_HINT_TYPE,
    MEMORY_CONTEXT_TYPE,
    format_compaction_summary,
    format_core_relevant_payload,
    format_full_payload,
    is_memory_message,
    message_token_estimate,
    select_recent_turns_by_token_budget,
)
from obsmem.memory.store import SqliteStateStore, StateStore, build_scope_key
from obsmem.memory.temporal import TemporalAnnotator
from obsmem.memory.transcript import serialize_messages
from obsmem.providers.base import LLMProvider
from obsmem.providers.channels import ChannelChain, GeminiCliChannel, LiteLLMChannel
from obsmem.providers.litellm_provider import LiteLLMProvider

logger = get_logger(__name__)

COMPACTION_INSTRUCTIONS = "Use observational memory summary as authoritative context."

_REFLECT_FAILURE_MESSAGES = {
    "disabled": "OM: Reflection disabled by config.",
    "empty": "OM: No observations to reflect.",
    "already_running": "OM: Reflection already running.",
    "parse_failed": "OM: Reflection parse failed. Keeping existing observations.",
    "aborted": "OM: Reflection aborted.",
}


class ObservationalMemoryEngine:
    """
    One memory document per scope, driven by host events and commands.

    Configuration is engine state: it is reloaded on session start/switch and
    on demand, and read from ``self.config`` by every operation.
    """

    def __init__(
        self,
        *,
        storage: StorageSettings | None = None,
        provider: LLMProvider | None = None,
        chain: ChannelChain | None = None,
        today: date | None = None,
    ) -> None:
        self.storage = storage or StorageSettings.from_env()
        self.config = OMConfig()
        self.config_path = None
        self.provider = provider or LiteLLMProvider(resilience_config=self.config.resilience)
        self.cli_channel = GeminiCliChannel(self.config.gemini_cli_model, timeout=self.config.channel_timeout_seconds)
        self.api_channel = LiteLLMChannel(self.provider, self.config.compression_models)
        self.chain = chain or ChannelChain([self.cli_channel, self.api_channel])

        self.store = StateStore(SqliteStateStore(self.storage.sqlite_enabled, self.storage.sqlite_path))
        self.reflector = ReflectorPipeline(self.chain, on_commit=self._on_commit)
        self.observer = ObserverPipeline(self.chain, reflector=self.reflector, on_commit=self._on_commit)
        self.coordinator = ObservationCoordinator()

        self.doc = MemoryDocument(scope=self.storage.scope)
        self.scope_key = ""
        self.epoch = 0
        self.today = today
        self.warned_unavailable = False
        self.force_compaction_from_observe = False
        self.last_parse_failure: str | None = None
        self._ctx: HostContext | None = None

    # ------------------------------------------------------------------
    # Config and state
    # ------------------------------------------------------------------

    def apply_config(self, loaded: LoadedConfig) -> None:
        self.config = loaded.config
        self.config_path = loaded.path
        self.cli_channel.model = self.config.gemini_cli_model
        self.cli_channel.timeout = self.config.channel_timeout_seconds
        self.api_channel.set_models(self.config.compression_models)
        if isinstance(self.provider, LiteLLMProvider):
            self.provider.set_resilience(self.config.resilience)

    def reload_config(self, ctx: HostContext, *, notify: bool = False) -> None:
        self.apply_config(load_config(ctx.cwd))
        if notify:
            where = str(self.config_path) if self.config_path else "defaults (no om-config.json found)"
            ctx.ui.notify(f"OM config loaded: {where}", "info")

    def load_state(self, ctx: HostContext) -> None:
        self.epoch += 1
        self._ctx = ctx
        self.reload_config(ctx)
        self.scope_key = build_scope_key(
            self.storage.scope,
            session_id=ctx.session_id,
            cwd=ctx.cwd,
            resource_id=self.storage.resource_id,
        )
        self.doc = self.store.load(ctx, self.scope_key, self.storage.scope)
        self.last_parse_failure = None
        self.warned_unavailable = False
        logger.info("Memory scope loaded", scope_key=self.scope_key, epoch=self.epoch)
        self.update_status(ctx)

    def persist(self, ctx: HostContext) -> None:
        self.store.save(ctx, self.scope_key, self.doc)

    def _on_commit(self, doc: MemoryDocument) -> None:
        # A run that finishes after a scope switch belongs to the old scope.
        if doc is not self.doc or self._ctx is None:
            logger.debug("Skipping persist of a detached document", scope_key=self.scope_key)
            return
        self.persist(self._ctx)
        self.update_status(self._ctx)

    def status_line(self) -> str:
        return (
            f"OM {self.storage.scope} obs:{self.doc.observation_runs} "
            f"refl:{self.doc.reflection_runs} pending:{self.doc.pending.tokens:,}"
        )

    def update_status(self, ctx: HostContext) -> None:
        try:
            ctx.ui.set_status(STATUS_KEY, self.status_line())
        except Exception as e:
            logger.debug("Status update failed", error=str(e))

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _note_result(self, ctx: HostContext, result: RunResult, *, kind: str) -> None:
        if result.reason == "unavailable":
            if not self.warned_unavailable:
                self.warned_unavailable = True
                ctx.ui.notify("OM: No summarization channel available (Gemini CLI not found and no API key).", "warning")
        elif result.ok:
            self.warned_unavailable = False
        if kind == "observer":
            if result.reason == "parse_failed":
                self.last_parse_failure = result.detail
            elif result.ok:
                self.last_parse_failure = None

    async def observe(
        self,
        ctx: HostContext,
        *,
        abort: asyncio.Event | None = None,
        allow_reflect: bool = True,
    ) -> RunResult:
        self._ctx = ctx
        with structlog.contextvars.bound_contextvars(scope_key=self.scope_key):
            result = await self.observer.run(self.doc, self.config, abort=abort, allow_reflect=allow_reflect)
        self._note_result(ctx, result, kind="observer")
        self.update_status(ctx)
        return result

    async def reflect(
        self,
        ctx: HostContext,
        *,
        aggressive: bool = False,
        reason: str = "manual",
        abort: asyncio.Event | None = None,
    ) -> RunResult:
        self._ctx = ctx
        with structlog.contextvars.bound_contextvars(scope_key=self.scope_key):
            result = await self.reflector.run(self.doc, self.config, aggressive=aggressive, reason=reason, abort=abort)
        self._note_result(ctx, result, kind="reflector")
        self.update_status(ctx)
        return result

    def _maybe_auto_observe(self, ctx: HostContext) -> None:
        threshold = self.config.auto_observe_pending_token_threshold
        if threshold <= 0 or self.doc.is_observing or self.doc.pending.tokens < threshold:
            return
        logger.info("Pending tokens over threshold, observing", pending_tokens=self.doc.pending.tokens, threshold=threshold)
        self.coordinator.start_background(self.scope_key, lambda: self.observe(ctx))

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    async def on_session_start(self, event: dict[str, Any], ctx: HostContext) -> None:
        self.load_state(ctx)
        source = "config file" if self.config_path else "defaults"
        ctx.ui.notify(f"Observational memory loaded ({source}).", "info")

    async def on_session_switch(self, event: dict[str, Any], ctx: HostContext) -> None:
        await self.coordinator.cancel_inflight(self.scope_key)
        self.load_state(ctx)

    async def on_session_fork(self, event: dict[str, Any], ctx: HostContext) -> None:
        await self.coordinator.cancel_inflight(self.scope_key)
        self.load_state(ctx)

    async def on_turn_end(self, event: TurnEndEvent, ctx: HostContext) -> None:
        self._ctx = ctx
        messages = [event["message"], *event.get("tool_results", [])]
        text = serialize_messages(messages)
        if not text.strip():
            return
        segment = self.doc.pending.append(f"Turn {event.get('turn_index', '?')}:\n{text}", prefix="turn")
        logger.debug(
            "Turn buffered",
            scope_key=self.scope_key,
            segment_id=segment.id,
            tokens=segment.tokens,
            pending_tokens=self.doc.pending.tokens,
        )
        self.persist(ctx)
        self.update_status(ctx)
        self._maybe_auto_observe(ctx)

    async def on_before_compact(self, event: BeforeCompactEvent, ctx: HostContext) -> CompactionResult | None:
        """Observe what compaction is about to drop, then hand back a summary built from memory."""
        self._ctx = ctx
        overwrite_all = self.force_compaction_from_observe
        self.force_compaction_from_observe = False
        preparation = event["preparation"]
        abort = event.get("signal")

        captured = [*preparation["messages_to_summarize"], *preparation["turn_prefix_messages"]]
        if captured:
            self.doc.pending.append(f"[Compaction Event]\n{serialize_messages(captured)}", prefix="compact")
            self.persist(ctx)
            await self.coordinator.wait(self.scope_key)
            observed = await self.observe(ctx, abort=abort, allow_reflect=False)
            if observed.ok and self.config.reflect_before_compaction and self.config.enable_reflection:
                await self.reflect(
                    ctx,
                    aggressive=self.config.aggressive_reflect_before_compaction,
                    reason="before-compaction",
                    abort=abort,
                )

        if not self.doc.has_observations:
            return None

        first_kept = preparation["first_kept_entry_id"]
        if overwrite_all:
            branch = event.get("branch_entries") or []
            first_kept = (branch[-1].get("id") if branch else None) or first_kept
        return CompactionResult(
            summary=format_compaction_summary(self.doc),
            first_kept_entry_id=first_kept,
            tokens_before=preparation["tokens_before"],
            details={
                "source": "observational-memory-force-observe" if overwrite_all else "observational-memory-observations",
                "observation_tokens": self.doc.observation_tokens,
                "injection_mode": self.config.memory_injection_mode,
            },
        )

    def render_memory(self, recent_messages: list[Message]) -> str:
        annotator = TemporalAnnotator(self.today)
        if self.config.memory_injection_mode == "core_relevant":
            return format_core_relevant_payload(
                self.doc,
                recent_messages,
                core_max_tokens=self.config.core_memory_max_tokens,
                relevant_max_items=self.config.relevant_observation_max_items,
                relevant_max_tokens=self.config.relevant_observation_max_tokens,
                annotator=annotator,
            )
        return format_full_payload(self.doc, annotator)

    async def on_context(self, event: ContextEvent, ctx: HostContext) -> list[Message]:
        """System messages, then memory, then the recent-turn window."""
        messages = event["messages"]
        system = [m for m in messages if m.get("role") == "system" and not is_memory_message(m)]
        rest = [m for m in messages if m.get("role") != "system" and not is_memory_message(m)]
        if not self.doc.has_observations:
            return [*system, *rest]

        recent = select_recent_turns_by_token_budget(rest, self.config.recent_turn_budget_tokens)
        out: list[Message] = [
            *system,
            Message(role="custom", custom_type=MEMORY_CONTEXT_TYPE, content=self.render_memory(recent), display=False),
        ]
        if recent and recent[0].get("role") != "user":
            out.append(Message(role="custom", custom_type=CONTINUATION_HINT_TYPE, content=CONTINUATION_HINT, display=False))
        out.extend(recent)
        logger.debug(
            "Context built",
            scope_key=self.scope_key,
            input_messages=len(messages),
            output_messages=len(out),
            recent_messages=len(recent),
            total_tokens=sum(message_token_estimate(m) for m in out),
            observation_tokens=self.doc.observation_tokens,
        )
        return out

    # ------------------------------------------------------------------
    # Command operations
    # ------------------------------------------------------------------

    async def observe_now(self, ctx: HostContext, *, compact: bool = True) -> bool:
        """Observe all pending segments; optionally ask the host to compact afterwards."""
        if not len(self.doc.pending):
            ctx.ui.notify("OM: No pending segments.", "warning")
            return False
        await self.coordinator.wait(self.scope_key)
        result = await self.observe(ctx)
        if not result.ok:
            ctx.ui.notify(f"OM: Observation failed ({result.reason}).", "warning")
            return False
        ctx.ui.notify("OM: Observation complete.", "info")

        if not compact or not self.config.force_observe_auto_compact:
            return True

        await ctx.wait_for_idle()
        self.force_compaction_from_observe = True

        def _on_complete() -> None:
            ctx.ui.notify("OM: Force compaction complete. Session context overwritten.", "info")

        def _on_error(error: Exception) -> None:
            self.force_compaction_from_observe = False
            ctx.ui.notify(f"OM: Force compaction failed: {error}", "error")

        ctx.compact(custom_instructions=COMPACTION_INSTRUCTIONS, on_complete=_on_complete, on_error=_on_error)
        ctx.ui.notify("OM: Force compaction triggered.", "info")
        return True

    async def reflect_now(self, ctx: HostContext, *, aggressive: bool = False, reason: str = "manual-command") -> RunResult:
        """Observe pending segments first, then reflect, so nothing pending is lost to the rewrite."""
        if len(self.doc.pending) and self.config.enable_reflection:
            await self.coordinator.wait(self.scope_key)
            observed = await self.observe(ctx, allow_reflect=False)
            if not observed.ok:
                logger.info("Observe before reflect did not complete", reason=observed.reason)

        result = await self.reflect(ctx, aggressive=aggressive, reason=reason)
        if result.ok:
            mode = ", aggressive" if aggressive else ""
            ctx.ui.notify(f"OM: Reflection complete ({reason}{mode}). {result.detail}.", "info")
        elif result.reason in _REFLECT_FAILURE_MESSAGES:
            ctx.ui.notify(_REFLECT_FAILURE_MESSAGES[result.reason], "warning")
        return result

    async def clear(self, ctx: HostContext) -> None:
        await self.coordinator.cancel_inflight(self.scope_key)
        self.doc = MemoryDocument(scope=self.storage.scope)
        self.last_parse_failure = None
        self.persist(ctx)
        self.store.clear(self.scope_key)
        self.update_status(ctx)
        ctx.ui.notify("OM: State cleared.", "info")

    async def edit_config(self, ctx: HostContext) -> bool:
        initial = json.dumps(self.config.to_json_dict(), indent=2, ensure_ascii=False) + "\n"
        edited = await ctx.ui.editor("Edit OM config JSON", initial)
        if edited is None:
            ctx.ui.notify("OM config edit cancelled.", "warning")
            return False
        try:
            config = parse_config_text(edited)
        except ConfigError as e:
            ctx.ui.notify(f"OM config invalid JSON: {e}", "error")
            return False
        path = save_project_config(config, ctx.cwd)
        self.apply_config(LoadedConfig(config=config, path=path))
        ctx.ui.notify(f"OM config saved: {path}", "info")
        return True

    async def status_text(self) -> str:
        has_cli = await self.cli_channel.is_available()
        doc = self.doc
        ratio = f"{doc.last_compression_ratio}x" if doc.last_compression_ratio is not None else "n/a"
        lines = [
            f"Scope: {self.storage.scope} ({self.scope_key or 'not loaded'})",
            f"Config: {self.config_path or 'defaults'}",
            f"SQLite: {'enabled' if self.store.sqlite.enabled else 'disabled'}",
            f"Injection mode: {self.config.memory_injection_mode}",
            f"Gemini CLI: {f'primary ({self.config.gemini_cli_model})' if has_cli else 'not found'}",
            f"Observations: {doc.observation_runs}",
            f"Reflections: {doc.reflection_runs}",
            f"Reflection enabled: {self.config.enable_reflection}",
            f"Reflection running: {'yes' if doc.is_reflecting else 'no'}",
            f"Observation tokens: {doc.observation_tokens:,}",
            f"Pending tokens: {doc.pending.tokens:,} ({len(doc.pending)} segments)",
            f"Last compression ratio: {ratio}",
        ]
        if self.last_parse_failure:
            lines.append(f"Last parse failure: {self.last_parse_failure}")
        return "\n".join(lines)

    def config_text(self, ctx: HostContext | None = None) -> str:
        where = self.config_path or "(none, using defaults)"
        lines = [f"Config file: {where}"]
        if ctx is not None and self.config_path is None:
            lines.append(f"Project config path: {get_project_config_path(ctx.cwd)}")
        for key, value in self.config.to_json_dict().items():
            lines.append(f"{key}: {json.dumps(value, ensure_ascii=False)}")
        return "\n".join(lines)

    def observations_text(self) -> str:
        doc = self.doc
        return "\n".join([
            f"=== OBSERVATIONS ({doc.observation_tokens} tokens) ===",
            "",
            doc.observations or "(none)",
            "",
            "=== CURRENT TASK ===",
            doc.current_task or "(none)",
            "",
            "=== SUGGESTED RESPONSE ===",
            doc.suggested_response or "(none)",
        ])
