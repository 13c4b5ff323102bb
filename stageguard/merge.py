"""Folding handler results into the in-flight stage payload."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from .models import (
    AfterResponsePayload,
    AfterResponseResult,
    AfterToolCallPayload,
    AfterToolCallResult,
    BeforeRequestPayload,
    BeforeRequestResult,
    BeforeToolCallPayload,
    BeforeToolCallResult,
    HandlerResult,
    StagePayload,
)


def _changes(payload: StagePayload, result: HandlerResult) -> dict[str, Any]:
    if isinstance(payload, BeforeRequestPayload) and isinstance(result, BeforeRequestResult):
        changes: dict[str, Any] = {}
        if result.prompt is not None:
            changes["prompt"] = result.prompt
        if result.messages is not None:
            changes["messages"] = result.messages
        return changes
    if isinstance(payload, BeforeToolCallPayload) and isinstance(result, BeforeToolCallResult):
        return {"params": result.params} if result.params is not None else {}
    if isinstance(payload, AfterToolCallPayload) and isinstance(result, AfterToolCallResult):
        if result.block and result.result is None:
            raise ValueError("after_tool_call block directive requires a replacement result")
        return {"result": result.result} if result.result is not None else {}
    if isinstance(payload, AfterResponsePayload) and isinstance(result, AfterResponseResult):
        return {"assistant_texts": result.assistant_texts} if result.assistant_texts is not None else {}
    raise TypeError(f"{type(result).__name__} cannot be applied to {type(payload).__name__}")


def apply_result(payload: StagePayload, result: HandlerResult | None) -> StagePayload:
    """Return ``payload`` with the fields ``result`` sets replaced.

    Fields the result leaves unset keep their identity; a result with no
    mutation returns ``payload`` itself.
    """

    if result is None:
        return payload
    changes = _changes(payload, result)
    if not changes:
        return payload
    return replace(payload, **changes)


__all__ = ["apply_result"]
