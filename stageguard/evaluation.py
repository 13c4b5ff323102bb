"""Shared evaluation wrapper applying timeout, monitor and fail-open policy."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from .config import GuardrailConfig, resolve_block_mode
from .models import Evaluation, GuardrailAction, GuardrailDecision, Stage
from .protocols import EvaluationRequest, Evaluator

logger = logging.getLogger("stageguard.evaluation")

DEFAULT_TIMEOUT_MS = 30_000.0

LOCATION_LABELS: dict[Stage, str] = {
    Stage.BEFORE_REQUEST: "input query",
    Stage.BEFORE_TOOL_CALL: "tool call request",
    Stage.AFTER_TOOL_CALL: "tool response",
    Stage.AFTER_RESPONSE: "model response",
}

_FAILURE_SUBJECTS: dict[Stage, str] = {
    Stage.BEFORE_REQUEST: "Request",
    Stage.BEFORE_TOOL_CALL: "Tool call",
    Stage.AFTER_TOOL_CALL: "Tool result",
    Stage.AFTER_RESPONSE: "Response",
}

_CATEGORY_KEYS = ("policy_category", "category", "categories", "violated_rules")


def location_label(stage: Stage) -> str:
    return LOCATION_LABELS[stage]


def failure_message(stage: Stage, guardrail: str) -> str:
    return f"{_FAILURE_SUBJECTS[stage]} blocked due to guardrail failure ({guardrail})."


def default_violation_message(guardrail: str, evaluation: Evaluation, location: str) -> str:
    """Generic block message, never empty."""

    prefix = f"Sorry, I can't help with that. The {location} was flagged"
    if evaluation.reason:
        return f"{prefix} by the {guardrail} guardrail: {evaluation.reason}"
    return f"{prefix} as unsafe by the {guardrail} guardrail."


class BaseEvaluator:
    """Convenience base for evaluators: all stages, no config checks, default messages."""

    name: str = "guardrail"
    supported_stages: frozenset[Stage] = frozenset(Stage)

    def check_config(self, config: GuardrailConfig) -> list[str]:
        del config
        return []

    def format_violation(self, evaluation: Evaluation, location: str) -> str:
        return default_violation_message(self.name, evaluation, location)

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        raise NotImplementedError


def _policy_category(details: Mapping[str, Any] | None) -> Any:
    if not details:
        return None
    for key in _CATEGORY_KEYS:
        value = details.get(key)
        if value:
            return value
    return None


def _format_message(evaluator: Evaluator, guardrail: str, evaluation: Evaluation, stage: Stage) -> str:
    location = location_label(stage)
    try:
        message = evaluator.format_violation(evaluation, location)
    except Exception:
        logger.exception("guardrail_format_failed", extra={"guardrail": guardrail, "stage": stage.value})
        message = ""
    return message or default_violation_message(guardrail, evaluation, location)


async def run_evaluation(evaluator: Evaluator, request: EvaluationRequest, *, guardrail: str) -> GuardrailDecision:
    """Call ``evaluator`` once and translate its verdict into a decision.

    Exceptions and timeouts follow ``config.fail_open``. Cancellation is
    never intercepted.
    """

    stage = request.stage
    config = request.config
    mode = request.stage_config.mode
    timeout_s = (config.timeout_ms or DEFAULT_TIMEOUT_MS) / 1000
    log_extra: dict[str, Any] = {"guardrail": guardrail, "stage": stage.value, "mode": mode}
    if request.tool_name:
        log_extra["tool_name"] = request.tool_name
    if request.context.session_key:
        log_extra["session_key"] = request.context.session_key

    try:
        evaluation = await asyncio.wait_for(evaluator.evaluate(request), timeout=timeout_s)
    except Exception as exc:
        error = "timeout" if isinstance(exc, TimeoutError) else repr(exc)
        if config.fail_open:
            logger.warning("guardrail_evaluation_failed", extra={**log_extra, "error": error, "fail_open": True})
            return GuardrailDecision(
                action=GuardrailAction.ALLOW,
                guardrail=guardrail,
                stage=stage,
                reason=error,
                failed=True,
            )
        logger.error("guardrail_evaluation_failed", extra={**log_extra, "error": error, "fail_open": False})
        return GuardrailDecision(
            action=GuardrailAction.BLOCK,
            guardrail=guardrail,
            stage=stage,
            reason=error,
            message=failure_message(stage, guardrail),
            failed=True,
        )

    if evaluation is None:
        logger.debug("guardrail_no_verdict", extra=log_extra)
        return GuardrailDecision(action=GuardrailAction.ALLOW, guardrail=guardrail, stage=stage)

    log_extra["reason"] = evaluation.reason
    category = _policy_category(evaluation.details)
    if category is not None:
        log_extra["policy_category"] = category

    if evaluation.safe:
        if not evaluation.modifies:
            return GuardrailDecision(
                action=GuardrailAction.ALLOW,
                guardrail=guardrail,
                stage=stage,
                evaluation=evaluation,
            )
        if mode == "monitor":
            logger.info("guardrail_modification_monitored", extra=log_extra)
            return GuardrailDecision(
                action=GuardrailAction.MONITOR,
                guardrail=guardrail,
                stage=stage,
                reason=evaluation.reason,
                evaluation=evaluation,
            )
        logger.info("guardrail_modified", extra=log_extra)
        return GuardrailDecision(
            action=GuardrailAction.REDACT,
            guardrail=guardrail,
            stage=stage,
            reason=evaluation.reason,
            evaluation=evaluation,
        )

    message = _format_message(evaluator, guardrail, evaluation, stage)
    if mode == "monitor":
        logger.warning("guardrail_flagged", extra={**log_extra, "details": evaluation.details})
        return GuardrailDecision(
            action=GuardrailAction.MONITOR,
            guardrail=guardrail,
            stage=stage,
            reason=evaluation.reason,
            message=message,
            evaluation=evaluation,
        )
    if stage is Stage.AFTER_RESPONSE and resolve_block_mode(stage, request.stage_config) == "append":
        logger.warning("guardrail_warning_appended", extra={**log_extra, "details": evaluation.details})
    else:
        logger.warning("guardrail_blocked", extra={**log_extra, "details": evaluation.details})
    return GuardrailDecision(
        action=GuardrailAction.BLOCK,
        guardrail=guardrail,
        stage=stage,
        reason=evaluation.reason,
        message=message,
        evaluation=evaluation,
    )


__all__ = [
    "BaseEvaluator",
    "DEFAULT_TIMEOUT_MS",
    "LOCATION_LABELS",
    "default_violation_message",
    "failure_message",
    "location_label",
    "run_evaluation",
]
