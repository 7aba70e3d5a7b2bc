"""Utility functions for obsmem."""

from __future__ import annotations

import os
import re
import secrets
import tempfile
from datetime import datetime, timezone
from pathlib import Path

_WHITESPACE_RE = re.compile(r"\s+")


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to *path* via a temp file + rename so readers never see partial data."""
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def atomic_append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append *content* to *path* with a single write + fsync."""
    ensure_dir(path.parent)
    with open(path, "a", encoding=encoding) as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())


def random_id(prefix: str) -> str:
    """Short random identifier such as ``seg_k3j9x0aa``."""
    return f"{prefix}_{secrets.token_hex(4)}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def trim_preview(text: str, max_chars: int = 320) -> str:
    """Collapse whitespace and clip *text* for log/status previews."""
    normalized = _WHITESPACE_RE.sub(" ", text).strip()
    if len(normalized) <= max_chars:
        return normalized
    return normalized[:max_chars] + "…"


def truncate_text(text: str, max_chars: int, marker: str = "\n\n[...truncated...]") -> str:
    """Cut *text* to *max_chars* and append *marker* when something was dropped."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker
