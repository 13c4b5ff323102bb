from __future__ import annotations

import json

from stageguard.content import (
    WARNING_DETAIL_KEY,
    append_warning_to_tool_result,
    build_tool_call_summary,
    extract_history_context,
    extract_text,
    extract_tool_result_text,
    redact_messages,
    redact_value,
    replace_last_user_message,
    replace_tool_result_with_warning,
    safe_json_dumps,
)
from stageguard.models import ToolResult


def test_extract_text_joins_text_blocks_and_skips_others() -> None:
    content = [
        {"type": "text", "text": "first"},
        {"type": "image", "data": "..."},
        {"text": "untyped"},
        {"type": "text", "text": ""},
        "stray",
        {"type": "text", "text": "last"},
    ]
    assert extract_text(content) == "first\nuntyped\nlast"
    assert extract_text("plain") == "plain"
    assert extract_text(None) == ""
    assert extract_text(42) == ""


def test_extract_tool_result_text_prefers_content_then_details() -> None:
    with_text = ToolResult(content=[{"type": "text", "text": "  hello  "}], details={"a": 1})
    assert extract_tool_result_text(with_text) == "hello"

    details_only = ToolResult(content=[{"type": "image", "data": "x"}], details={"rows": [1, 2]})
    assert extract_tool_result_text(details_only) == '{"rows":[1,2]}'

    bare = ToolResult(content=[])
    assert extract_tool_result_text(bare) == '{"content":[]}'

    assert extract_tool_result_text({"content": [{"type": "text", "text": "mapped"}]}) == "mapped"
    assert extract_tool_result_text(None) == ""


def test_safe_json_dumps_returns_none_for_unencodable_values() -> None:
    cyclic: list = []
    cyclic.append(cyclic)
    assert safe_json_dumps(cyclic) is None
    assert safe_json_dumps({"x": object()}) is None
    assert safe_json_dumps({"k": "v"}) == '{"k":"v"}'


def test_extract_history_context_labels_user_and_assistant_only() -> None:
    messages = [
        {"role": "system", "content": "be nice"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": [{"type": "text", "text": "hello"}]},
        {"role": "toolResult", "content": "tool output"},
        {"role": "assistant", "content": [{"type": "toolCall", "name": "x"}]},
    ]
    assert extract_history_context(messages) == "User: hi\nAgent: hello"
    assert extract_history_context(None) == ""


def test_build_tool_call_summary_encodes_call() -> None:
    summary = build_tool_call_summary("search", "call-1", {"q": "x"})
    assert json.loads(summary) == {"tool": "search", "toolCallId": "call-1", "params": {"q": "x"}}
    assert build_tool_call_summary("odd", None, {"v": object()}) == "odd"


def test_append_warning_keeps_blocks_and_extends_mapping_details() -> None:
    original = ToolResult(content=[{"type": "text", "text": "data"}], details={"source": "db"})
    updated = append_warning_to_tool_result(original, "careful")

    assert updated.content == [{"type": "text", "text": "data"}, {"type": "text", "text": "careful"}]
    assert updated.details == {"source": "db", WARNING_DETAIL_KEY: "careful"}
    assert original.details == {"source": "db"}
    assert len(original.content) == 1


def test_append_warning_leaves_non_mapping_details_untouched() -> None:
    updated = append_warning_to_tool_result(ToolResult(content=[], details=["raw"]), "careful")
    assert updated.details == ["raw"]


def test_replace_warning_discards_original_content_and_details() -> None:
    original = ToolResult(content=[{"type": "text", "text": "secret"}], details={"source": "db"})
    replaced = replace_tool_result_with_warning(original, "blocked")

    assert replaced.content == [{"type": "text", "text": "blocked"}]
    assert replaced.details == {WARNING_DETAIL_KEY: "blocked"}


def test_redact_value_walks_nested_structures() -> None:
    value = {"query": "token abc", "nested": ["abc", {"deep": "xabcx"}], "count": 3}
    assert redact_value(value, {"abc": "[X]"}) == {
        "query": "token [X]",
        "nested": ["[X]", {"deep": "x[X]x"}],
        "count": 3,
    }
    assert redact_value(value, {}) is value


def test_redact_messages_preserves_identity_of_untouched_messages() -> None:
    clean = {"role": "user", "content": "nothing here"}
    dirty = {"role": "assistant", "content": [{"type": "text", "text": "key=abc"}]}
    redacted = redact_messages([clean, dirty], {"abc": "[X]"})

    assert redacted[0] is clean
    assert redacted[1] == {"role": "assistant", "content": [{"type": "text", "text": "key=[X]"}]}
    assert dirty["content"][0]["text"] == "key=abc"


def test_replace_last_user_message_targets_latest_user_turn() -> None:
    messages = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "second"},
    ]
    updated = replace_last_user_message(messages, "clean")
    assert updated[0] is messages[0]
    assert updated[2] == {"role": "user", "content": [{"type": "text", "text": "clean"}]}
    assert messages[2]["content"] == "second"
