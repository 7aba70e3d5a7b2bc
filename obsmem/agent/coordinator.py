"""Track background memory runs started from host events."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from obsmem.logging import get_logger

logger = get_logger(__name__)


class ObservationCoordinator:
    """
    At most one background auto-observe task per scope key.

    Single-flight of the runs themselves is enforced by the document flags;
    this only keeps task references alive and lets callers wait for or cancel
    them (session switch, CLI shutdown, tests).
    """

    def __init__(self) -> None:
        self.tasks: dict[str, asyncio.Task[Any]] = {}

    def is_running(self, scope_key: str) -> bool:
        task = self.tasks.get(scope_key)
        return task is not None and not task.done()

    def start_background(
        self,
        scope_key: str,
        work: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task[Any] | None:
        """Start *work* unless a task for *scope_key* is still running."""
        if self.is_running(scope_key):
            return None

        async def _runner() -> None:
            try:
                await work()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Background memory run failed", scope_key=scope_key)
            finally:
                if self.tasks.get(scope_key) is task:
                    self.tasks.pop(scope_key, None)

        task = asyncio.create_task(_runner())
        self.tasks[scope_key] = task
        return task

    async def wait(self, scope_key: str) -> None:
        """Let a running task for *scope_key* finish before sequencing more work."""
        running = self.tasks.get(scope_key)
        if running is not None and not running.done():
            await asyncio.wait({running})

    async def cancel_inflight(self, scope_key: str) -> None:
        running = self.tasks.pop(scope_key, None)
        if running and not running.done():
            running.cancel()
            try:
                await running
            except (asyncio.CancelledError, Exception):
                pass

    async def drain(self) -> None:
        """Wait for every tracked task to finish."""
        while self.tasks:
            pending = [t for t in self.tasks.values() if not t.done()]
            if not pending:
                self.tasks.clear()
                return
            await asyncio.gather(*pending, return_exceptions=True)
