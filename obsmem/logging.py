"""structlog setup for obsmem: stderr output with API keys redacted."""

import json
import logging
import re
import sys

import structlog

# Credentials the summarization backends may echo back in errors.
_SECRET_RE = re.compile(
    r"sk-[A-Za-z0-9_-]{10,}"            # OpenAI / Anthropic
    r"|AIza[A-Za-z0-9_-]{10,}"          # Gemini API
    r"|ya29\.[A-Za-z0-9_.-]{10,}"       # Google OAuth (Gemini CLI login)
    r"|Bearer\s+[A-Za-z0-9_\-.]{10,}"
)


def mask_secret(value: str) -> str:
    """Keep the first and last 4 chars of a secret.

    >>> mask_secret("sk-abc123456789xyz")
    'sk-a****9xyz'
    """
    if len(value) <= 8:
        return "****"
    return value[:4] + "****" + value[-4:]


def _redact_value(value: str) -> str:
    return _SECRET_RE.sub(lambda m: mask_secret(m.group(0)), value)


def _redact_event(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Processor: mask secrets in every string value of the event."""
    for key, val in event_dict.items():
        if isinstance(val, str):
            event_dict[key] = _redact_value(val)
    return event_dict


def setup_logging(level: str = "WARNING", *, json_output: bool = False) -> None:
    """Route the ``obsmem`` logger hierarchy to stderr.

    stdout is left to the CLI and the host; ``json_output`` switches the
    console renderer for JSON lines.
    """
    renderer = (
        structlog.processors.JSONRenderer(serializer=lambda obj, **kw: json.dumps(obj, ensure_ascii=False, **kw))
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            _redact_event,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))
    root = logging.getLogger("obsmem")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))


def get_logger(name: str = "obsmem") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
