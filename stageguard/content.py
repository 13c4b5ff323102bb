"""Content extraction and rewriting helpers shared by every stage."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from .models import Message, ToolResult

WARNING_DETAIL_KEY = "guardrailWarning"


def safe_json_dumps(value: Any) -> str | None:
    """Compact JSON serialization, ``None`` when the value cannot be encoded."""

    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError, RecursionError):
        return None


def extract_text(content: Any) -> str:
    """Flatten a string or a sequence of content blocks into plain text.

    Blocks without a ``type`` are treated as text. Non-text blocks (images,
    tool calls) and non-mapping items are skipped.
    """

    if isinstance(content, str):
        return content
    if not isinstance(content, Sequence) or isinstance(content, (bytes, bytearray)):
        return ""
    texts: list[str] = []
    for item in content:
        if not isinstance(item, Mapping):
            continue
        block_type = item.get("type")
        if block_type and block_type != "text":
            continue
        text = item.get("text")
        if isinstance(text, str) and text:
            texts.append(text)
    return "\n".join(texts)


def _tool_result_parts(result: ToolResult | Mapping[str, Any]) -> tuple[Any, Any, bool]:
    if isinstance(result, ToolResult):
        return result.content, result.details, result.details is not None
    return result.get("content"), result.get("details"), result.get("details") is not None


def _tool_result_as_json_value(result: ToolResult | Mapping[str, Any]) -> Any:
    if isinstance(result, ToolResult):
        return result.to_dict()
    return dict(result)


def extract_tool_result_text(result: ToolResult | Mapping[str, Any] | None) -> str:
    """Text of a tool result, falling back to JSON of its details, then of the whole result."""

    if result is None:
        return ""
    if not isinstance(result, (ToolResult, Mapping)):
        return ""
    content, details, has_details = _tool_result_parts(result)
    text = extract_text(content).strip()
    if text:
        return text
    if has_details:
        return safe_json_dumps(details) or ""
    return safe_json_dumps(_tool_result_as_json_value(result)) or ""


def extract_history_context(messages: Sequence[Message] | None) -> str:
    """Render user/assistant turns as ``User: ...`` / ``Agent: ...`` lines."""

    lines: list[str] = []
    for message in messages or ():
        if not isinstance(message, Mapping):
            continue
        role = message.get("role")
        if role not in ("user", "assistant"):
            continue
        text = extract_text(message.get("content")).strip()
        if not text:
            continue
        label = "User" if role == "user" else "Agent"
        lines.append(f"{label}: {text}")
    return "\n".join(lines)


def build_tool_call_summary(tool_name: str, tool_call_id: str | None, params: Any) -> str:
    encoded = safe_json_dumps({"tool": tool_name, "toolCallId": tool_call_id, "params": params})
    return encoded if encoded is not None else tool_name


def append_warning_to_tool_result(result: ToolResult, warning: str) -> ToolResult:
    """Keep every original block and add one text block carrying ``warning``."""

    content = list(result.content) if isinstance(result.content, list | tuple) else []
    content.append({"type": "text", "text": warning})
    details = result.details
    if isinstance(details, Mapping):
        details = {**details, WARNING_DETAIL_KEY: warning}
    return ToolResult(content=content, details=details)


def replace_tool_result_with_warning(result: ToolResult, warning: str) -> ToolResult:
    """Discard the original content and details, leaving only ``warning``."""

    del result
    return ToolResult(content=[{"type": "text", "text": warning}], details={WARNING_DETAIL_KEY: warning})


def apply_redactions(text: str, redactions: Mapping[str, str]) -> str:
    for needle, replacement in redactions.items():
        if needle:
            text = text.replace(needle, replacement)
    return text


def redact_value(value: Any, redactions: Mapping[str, str]) -> Any:
    """Apply redactions to every string nested inside ``value``."""

    if not redactions:
        return value
    if isinstance(value, str):
        return apply_redactions(value, redactions)
    if isinstance(value, Mapping):
        return {key: redact_value(item, redactions) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [redact_value(item, redactions) for item in value]
    return value


def redact_messages(messages: Sequence[Message], redactions: Mapping[str, str]) -> list[Message]:
    """Redact message contents throughout the conversation.

    Messages whose content is unchanged are returned as the same objects.
    """

    redacted: list[Message] = []
    for message in messages:
        if not isinstance(message, Mapping) or "content" not in message:
            redacted.append(message)
            continue
        content = message["content"]
        new_content = redact_value(content, redactions)
        if new_content == content:
            redacted.append(message)
        else:
            redacted.append({**message, "content": new_content})
    return redacted


def replace_last_user_message(messages: Sequence[Message], text: str) -> list[Message]:
    updated = list(messages)
    for index in range(len(updated) - 1, -1, -1):
        message = updated[index]
        if isinstance(message, Mapping) and message.get("role") == "user":
            updated[index] = {**message, "content": [{"type": "text", "text": text}]}
            break
    return updated


__all__ = [
    "WARNING_DETAIL_KEY",
    "append_warning_to_tool_result",
    "apply_redactions",
    "build_tool_call_summary",
    "extract_history_context",
    "extract_text",
    "extract_tool_result_text",
    "redact_messages",
    "redact_value",
    "replace_last_user_message",
    "replace_tool_result_with_warning",
    "safe_json_dumps",
]
