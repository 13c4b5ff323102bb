"""Helpers for exercising guardrail pipelines in tests.

``ScriptedEvaluator`` stands in for a backend with a fixed verdict, an
error, or a stall. ``guardrail_for`` wraps one in a ``Guardrail`` built from
a plain config mapping.
"""

from __future__ import annotations

import asyncio
from typing import Any

from .config import GuardrailConfig
from .evaluation import BaseEvaluator
from .guardrail import Guardrail
from .models import Evaluation, Stage
from .protocols import EvaluationRequest


class ScriptedEvaluator(BaseEvaluator):
    """Evaluator returning a fixed verdict, raising, or stalling on demand."""

    def __init__(
        self,
        result: Evaluation | None = None,
        *,
        error: BaseException | None = None,
        delay: float = 0.0,
        name: str = "scripted",
        stages: frozenset[Stage] | None = None,
        problems: list[str] | None = None,
    ) -> None:
        self.result = result
        self.error = error
        self.delay = delay
        self.name = name
        if stages is not None:
            self.supported_stages = stages
        self._problems = problems or []
        self.calls: list[EvaluationRequest] = []

    def check_config(self, config: GuardrailConfig) -> list[str]:
        del config
        return list(self._problems)

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def all_stages(**options: Any) -> dict[str, Any]:
    """Stage table enabling every stage with the same options."""

    return {stage.value: dict(options) for stage in Stage}


def guardrail_for(
    evaluator: BaseEvaluator,
    *,
    stages: dict[str, Any] | None = None,
    name: str = "scripted",
    **config: Any,
) -> Guardrail:
    guardrail_config = GuardrailConfig.model_validate(
        {"name": name, "stages": stages if stages is not None else all_stages(), **config}
    )
    return Guardrail(guardrail_config, evaluator)


__all__ = ["ScriptedEvaluator", "all_stages", "guardrail_for"]
