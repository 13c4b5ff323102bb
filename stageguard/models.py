"""Core stage, payload and verdict models."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, TypeAlias

Message: TypeAlias = Mapping[str, Any]


class Stage(str, Enum):
    """Interception points of an agent turn."""

    BEFORE_REQUEST = "before_request"
    BEFORE_TOOL_CALL = "before_tool_call"
    AFTER_TOOL_CALL = "after_tool_call"
    AFTER_RESPONSE = "after_response"

    @property
    def config_key(self) -> str:
        """camelCase key used for this stage in configuration files."""

        head, *rest = self.value.split("_")
        return head + "".join(part.capitalize() for part in rest)


class GuardrailAction(str, Enum):
    """Outcome of a single guardrail evaluation."""

    ALLOW = "ALLOW"
    MONITOR = "MONITOR"
    REDACT = "REDACT"
    BLOCK = "BLOCK"


class DispatchState(str, Enum):
    """Lifecycle of one stage dispatch."""

    PENDING = "pending"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"


@dataclass(slots=True, frozen=True)
class Evaluation:
    """Verdict returned by an evaluator.

    ``sanitized`` and ``redactions`` form the modify channel: a safe verdict
    carrying either of them asks the pipeline to rewrite the evaluated content.
    """

    safe: bool
    reason: str | None = None
    details: Mapping[str, Any] | None = None
    sanitized: str | None = None
    redactions: Mapping[str, str] = field(default_factory=dict)

    @property
    def modifies(self) -> bool:
        return self.sanitized is not None or bool(self.redactions)


@dataclass(slots=True)
class GuardrailDecision:
    """Decision produced by the shared evaluation wrapper."""

    action: GuardrailAction
    guardrail: str
    stage: Stage
    reason: str | None = None
    message: str | None = None
    evaluation: Evaluation | None = None
    failed: bool = False

    @property
    def blocked(self) -> bool:
        return self.action is GuardrailAction.BLOCK


@dataclass(slots=True)
class ToolResult:
    """Result of a tool execution: ordered content blocks plus opaque details."""

    content: list[Any] = field(default_factory=list)
    details: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"content": list(self.content)}
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(slots=True)
class HookContext:
    """Host-supplied context for one dispatch."""

    session_key: str | None = None
    run_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class BeforeRequestPayload:
    stage: ClassVar[Stage] = Stage.BEFORE_REQUEST

    prompt: str
    messages: Sequence[Message] = ()
    system_prompt: str | None = None


@dataclass(slots=True, frozen=True)
class BeforeToolCallPayload:
    stage: ClassVar[Stage] = Stage.BEFORE_TOOL_CALL

    tool_name: str
    tool_call_id: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    messages: Sequence[Message] = ()


@dataclass(slots=True, frozen=True)
class AfterToolCallPayload:
    stage: ClassVar[Stage] = Stage.AFTER_TOOL_CALL

    tool_name: str
    result: ToolResult
    tool_call_id: str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    messages: Sequence[Message] = ()


@dataclass(slots=True, frozen=True)
class AfterResponsePayload:
    stage: ClassVar[Stage] = Stage.AFTER_RESPONSE

    assistant_texts: Sequence[str] = ()
    messages: Sequence[Message] = ()
    last_assistant: Message | None = None


@dataclass(slots=True)
class BeforeRequestResult:
    stage: ClassVar[Stage] = Stage.BEFORE_REQUEST

    prompt: str | None = None
    messages: Sequence[Message] | None = None
    block: bool = False
    block_response: str | None = None


@dataclass(slots=True)
class BeforeToolCallResult:
    stage: ClassVar[Stage] = Stage.BEFORE_TOOL_CALL

    params: Mapping[str, Any] | None = None
    block: bool = False
    block_reason: str | None = None
    tool_result: ToolResult | None = None


@dataclass(slots=True)
class AfterToolCallResult:
    stage: ClassVar[Stage] = Stage.AFTER_TOOL_CALL

    result: ToolResult | None = None
    block: bool = False


@dataclass(slots=True)
class AfterResponseResult:
    stage: ClassVar[Stage] = Stage.AFTER_RESPONSE

    assistant_texts: Sequence[str] | None = None
    block: bool = False
    block_response: str | None = None


StagePayload: TypeAlias = BeforeRequestPayload | BeforeToolCallPayload | AfterToolCallPayload | AfterResponsePayload
HandlerResult: TypeAlias = BeforeRequestResult | BeforeToolCallResult | AfterToolCallResult | AfterResponseResult


__all__ = [
    "AfterResponsePayload",
    "AfterResponseResult",
    "AfterToolCallPayload",
    "AfterToolCallResult",
    "BeforeRequestPayload",
    "BeforeRequestResult",
    "BeforeToolCallPayload",
    "BeforeToolCallResult",
    "DispatchState",
    "Evaluation",
    "GuardrailAction",
    "GuardrailDecision",
    "HandlerResult",
    "HookContext",
    "Message",
    "Stage",
    "StagePayload",
    "ToolResult",
]
