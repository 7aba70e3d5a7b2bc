"""Ordered summarization channels: local CLI first, hosted API as fallback."""

from __future__ import annotations

import asyncio
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Sequence, TypeVar

from obsmem.errors import SummarizationAbortedError, SummarizationChannelError, SummarizationUnavailableError
from obsmem.logging import get_logger
from obsmem.providers.base import LLMProvider

logger = get_logger(__name__)

T = TypeVar("T")


async def wait_with_abort(aw: Awaitable[T], abort: asyncio.Event | None) -> T:
    """Await *aw*, cancelling it and raising SummarizationAbortedError if *abort* fires first."""
    if abort is None:
        return await aw
    work = asyncio.ensure_future(aw)
    if abort.is_set():
        work.cancel()
        raise SummarizationAbortedError("aborted before the call started")
    aborted = asyncio.ensure_future(abort.wait())
    try:
        done, _ = await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        aborted.cancel()
        if not work.done() and not abort.is_set():
            # Outer cancellation: don't leave the call running.
            work.cancel()
    if work in done:
        return work.result()
    work.cancel()
    try:
        await work
    except (asyncio.CancelledError, Exception):
        pass
    raise SummarizationAbortedError("summarization aborted")


class SummarizationChannel(ABC):
    """One way of turning a prompt into text. Availability is checked once and cached."""

    name: str = "channel"

    def __init__(self) -> None:
        self._available: bool | None = None

    async def is_available(self) -> bool:
        if self._available is None:
            self._available = await self._check_available()
            logger.debug("Summarization channel availability", channel=self.name, available=self._available)
        return self._available

    def reset_availability(self) -> None:
        self._available = None

    @abstractmethod
    async def _check_available(self) -> bool:
        pass

    @abstractmethod
    async def complete(self, prompt: str, *, abort: asyncio.Event | None = None) -> str:
        """Return the model's text, or raise SummarizationChannelError / SummarizationAbortedError."""
        pass


class GeminiCliChannel(SummarizationChannel):
    """Runs ``gemini -m <model> -p <prompt> -o text`` as a subprocess."""

    name = "gemini-cli"

    def __init__(self, model: str, *, binary: str = "gemini", timeout: int = 180) -> None:
        super().__init__()
        self.model = model
        self.binary = binary
        self.timeout = timeout

    async def _check_available(self) -> bool:
        return shutil.which(self.binary) is not None

    async def complete(self, prompt: str, *, abort: asyncio.Event | None = None) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, "-m", self.model, "-p", prompt, "-o", "text",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SummarizationChannelError(self.name, f"failed to start: {e}") from e

        try:
            stdout, stderr = await wait_with_abort(
                asyncio.wait_for(process.communicate(), timeout=self.timeout),
                abort,
            )
        except asyncio.TimeoutError as e:
            await self._kill(process)
            raise SummarizationChannelError(self.name, f"timed out after {self.timeout} seconds") from e
        except (SummarizationAbortedError, asyncio.CancelledError):
            await self._kill(process)
            raise

        if process.returncode != 0:
            err = (stderr or b"").decode("utf-8", errors="replace").strip()
            raise SummarizationChannelError(self.name, f"exited with code {process.returncode}: {err[:500]}")
        return (stdout or b"").decode("utf-8", errors="replace").strip()

    @staticmethod
    async def _kill(process: Any) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            pass


class LiteLLMChannel(SummarizationChannel):
    """Hosted model API via :class:`LLMProvider`; uses the first candidate model with credentials."""

    name = "litellm-api"

    def __init__(self, provider: LLMProvider, models: Sequence[str], *, max_tokens: int = 8192) -> None:
        super().__init__()
        self.provider = provider
        self.models = list(models)
        self.max_tokens = max_tokens
        self.model: str | None = None

    def set_models(self, models: Sequence[str]) -> None:
        if list(models) != self.models:
            self.models = list(models)
            self.model = None
            self.reset_availability()

    async def _check_available(self) -> bool:
        for candidate in self.models:
            if self.provider.has_credentials(candidate):
                self.model = candidate
                return True
        return False

    async def complete(self, prompt: str, *, abort: asyncio.Event | None = None) -> str:
        response = await wait_with_abort(
            self.provider.chat(
                messages=[{"role": "user", "content": prompt}],
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.0,
            ),
            abort,
        )
        if response.finish_reason == "error":
            raise SummarizationChannelError(self.name, response.content or "(empty error)")
        return (response.content or "").strip()


@dataclass(frozen=True)
class ChannelResult:
    text: str
    channel: str


class ChannelChain:
    """
    Try each channel in priority order until one yields non-empty text.

    Raises SummarizationUnavailableError when no channel is available or every
    available channel failed. Returns an empty result when channels answered
    but said nothing (the caller treats that as a parse failure).
    """

    def __init__(self, channels: Sequence[SummarizationChannel]) -> None:
        self.channels = list(channels)

    async def available_channels(self) -> list[str]:
        return [ch.name for ch in self.channels if await ch.is_available()]

    async def complete(self, prompt: str, *, abort: asyncio.Event | None = None) -> ChannelResult:
        attempted: list[str] = []
        failed: list[str] = []
        for channel in self.channels:
            if not await channel.is_available():
                continue
            attempted.append(channel.name)
            try:
                text = await channel.complete(prompt, abort=abort)
            except SummarizationAbortedError:
                raise
            except Exception as e:
                failed.append(channel.name)
                logger.warning("Summarization channel failed, trying next", channel=channel.name, error=str(e))
                continue
            if text.strip():
                logger.debug("Summarization channel succeeded", channel=channel.name, chars=len(text))
                return ChannelResult(text=text, channel=channel.name)
            logger.warning("Summarization channel returned empty output", channel=channel.name)

        if not attempted:
            raise SummarizationUnavailableError("no summarization channel available")
        if len(failed) == len(attempted):
            raise SummarizationUnavailableError("all summarization channels failed", attempted=attempted)
        return ChannelResult(text="", channel=attempted[-1])
