"""Evaluator extension protocol."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import GuardrailConfig, StageConfig
from .models import Evaluation, HookContext, Message, Stage


@dataclass(slots=True, frozen=True)
class EvaluationRequest:
    """Everything an evaluator sees for one stage invocation."""

    stage: Stage
    content: str
    history_context: str | None
    stage_config: StageConfig
    config: GuardrailConfig
    messages: Sequence[Message] = ()
    context: HookContext = field(default_factory=HookContext)
    tool_name: str | None = None
    params: Mapping[str, Any] | None = None

    @property
    def include_history(self) -> bool:
        return self.history_context is not None


class Evaluator(Protocol):
    """Protocol that every moderation backend adapter implements."""

    name: str
    supported_stages: frozenset[Stage]

    def check_config(self, config: GuardrailConfig) -> list[str]: ...

    def format_violation(self, evaluation: Evaluation, location: str) -> str: ...

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None: ...


__all__ = ["EvaluationRequest", "Evaluator"]
