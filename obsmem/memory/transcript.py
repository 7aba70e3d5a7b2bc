"""Render host messages as plain transcript text for the observer prompt."""

from __future__ import annotations

import json
from typing import Any, Iterable

from obsmem.utils.helpers import trim_preview

_TOOL_CALL_BLOCKS = {"toolCall", "tool_call", "tool_use"}
_TOOL_RESULT_ROLES = {"toolResult", "tool"}
_ARGS_PREVIEW_CHARS = 200


def _args_preview(args: Any) -> str:
    if isinstance(args, str):
        return trim_preview(args, _ARGS_PREVIEW_CHARS)
    return trim_preview(json.dumps(args, ensure_ascii=False, default=str), _ARGS_PREVIEW_CHARS)


def _content_parts(content: Any) -> list[str]:
    if isinstance(content, str):
        return [content] if content.strip() else []
    if not isinstance(content, list):
        return [] if content is None else [json.dumps(content, ensure_ascii=False, default=str)]
    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind == "text" and block.get("text"):
            parts.append(str(block["text"]))
        elif kind in _TOOL_CALL_BLOCKS:
            args = block.get("arguments", block.get("input", {}))
            parts.append(f"tool_call {block.get('name', '?')}({_args_preview(args)})")
        elif kind == "image":
            parts.append("[image]")
    return parts


def render_message(message: dict[str, Any]) -> str:
    """One message as ``role: text``; tool calls and tool results get their own prefixes."""
    role = str(message.get("role") or "unknown")
    parts = _content_parts(message.get("content"))
    for call in message.get("tool_calls") or []:
        fn = call.get("function", call) if isinstance(call, dict) else {}
        parts.append(f"tool_call {fn.get('name', '?')}({_args_preview(fn.get('arguments', {}))})")

    text = "\n".join(p.strip() for p in parts if p.strip())
    if role in _TOOL_RESULT_ROLES:
        name = message.get("name") or message.get("tool_name") or "?"
        return f"tool_result {name}: {text}"
    return f"{role}: {text}"


def serialize_messages(messages: Iterable[dict[str, Any]]) -> str:
    return "\n\n".join(render_message(m) for m in messages if m)
