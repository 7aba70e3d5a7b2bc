"""Exception taxonomy for the memory lifecycle engine."""


class ObsMemError(Exception):
    """Base class for obsmem errors."""


class SummarizationUnavailableError(ObsMemError):
    """No summarization channel is usable (none available, or all failed)."""

    def __init__(self, message: str, *, attempted: list[str] | None = None) -> None:
        super().__init__(message)
        self.attempted = attempted or []


class SummarizationChannelError(ObsMemError):
    """A single summarization channel failed (timeout, non-zero exit, transport error)."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel}: {message}")
        self.channel = channel


class SummarizationAbortedError(ObsMemError):
    """The abort signal of the triggering event fired during an external call."""


class ConfigError(ObsMemError):
    """Config text supplied by the user could not be parsed."""
