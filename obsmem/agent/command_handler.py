"""Slash commands for inspecting and driving observational memory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from obsmem.logging import get_logger

if TYPE_CHECKING:
    from obsmem.agent.engine import ObservationalMemoryEngine
    from obsmem.agent.host import HostContext

logger = get_logger(__name__)

HELP_TEXT = (
    "Observational memory commands:\n"
    "/om-status — Show memory status\n"
    "/om-config [reload|edit] — Show, reload, or edit config\n"
    "/om-observe [--no-compact] — Observe pending turns now (then compact)\n"
    "/om-reflect [--aggressive] — Condense observations now\n"
    "/om-observations — Print current memory\n"
    "/om-clear — Reset memory for this scope\n"
    "/om-help — Show available commands"
)


class OMCommandHandler:
    """Dispatch ``/om-*`` commands; failures are reported through notify, never raised."""

    def __init__(self, engine: ObservationalMemoryEngine) -> None:
        self.engine = engine

    async def handle(self, text: str, ctx: HostContext) -> bool:
        """Return True if *text* was an ``/om-*`` command."""
        parts = text.strip().split(maxsplit=1)
        if not parts:
            return False
        cmd = parts[0].lower()
        args = parts[1] if len(parts) > 1 else ""

        handler = {
            "/om-status": self._status,
            "/om-config": self._config,
            "/om-observe": self._observe,
            "/om-reflect": self._reflect,
            "/om-observations": self._observations,
            "/om-clear": self._clear,
            "/om-help": self._help,
        }.get(cmd)
        if handler is None:
            return False

        try:
            await handler(args, ctx)
        except Exception as e:
            logger.exception("Command failed", command=cmd)
            ctx.ui.notify(f"OM: {cmd} failed: {e}", "error")
        return True

    async def _status(self, args: str, ctx: HostContext) -> None:
        ctx.ui.notify(await self.engine.status_text(), "info")

    async def _config(self, args: str, ctx: HostContext) -> None:
        normalized = args.strip().lower()
        if "edit" in normalized and not await self.engine.edit_config(ctx):
            return
        if "reload" in normalized:
            self.engine.reload_config(ctx, notify=True)
        ctx.ui.notify(self.engine.config_text(ctx), "info")

    async def _observe(self, args: str, ctx: HostContext) -> None:
        await self.engine.observe_now(ctx, compact="--no-compact" not in args)

    async def _reflect(self, args: str, ctx: HostContext) -> None:
        await self.engine.reflect_now(ctx, aggressive="--aggressive" in args)

    async def _observations(self, args: str, ctx: HostContext) -> None:
        ctx.ui.notify(self.engine.observations_text(), "info")

    async def _clear(self, args: str, ctx: HostContext) -> None:
        await self.engine.clear(ctx)

    async def _help(self, args: str, ctx: HostContext) -> None:
        ctx.ui.notify(HELP_TEXT, "info")
