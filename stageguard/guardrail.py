"""Per-stage guardrail procedures wired onto a hook dispatcher."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from .config import GuardrailConfig, StageConfig, is_stage_enabled, resolve_block_mode, resolve_stage_config
from .content import (
    append_warning_to_tool_result,
    apply_redactions,
    build_tool_call_summary,
    extract_history_context,
    extract_text,
    extract_tool_result_text,
    redact_messages,
    redact_value,
    replace_last_user_message,
    replace_tool_result_with_warning,
)
from .evaluation import run_evaluation
from .models import (
    AfterResponsePayload,
    AfterResponseResult,
    AfterToolCallPayload,
    AfterToolCallResult,
    BeforeRequestPayload,
    BeforeRequestResult,
    BeforeToolCallPayload,
    BeforeToolCallResult,
    Evaluation,
    GuardrailAction,
    GuardrailDecision,
    HookContext,
    Message,
    Stage,
    ToolResult,
)
from .protocols import EvaluationRequest, Evaluator

if TYPE_CHECKING:
    from .dispatcher import HookDispatcher

logger = logging.getLogger("stageguard.guardrail")


class Guardrail:
    """One configured evaluator exposed as four stage handlers."""

    def __init__(self, config: GuardrailConfig, evaluator: Evaluator, *, name: str | None = None) -> None:
        self.config = config
        self.evaluator = evaluator
        self.name = name or config.name or evaluator.name
        self._problems: list[str] | None = None

    @property
    def problems(self) -> list[str]:
        """Configuration problems reported by the evaluator, computed once."""

        if self._problems is None:
            self._problems = list(self.evaluator.check_config(self.config))
        return self._problems

    def stage_config(self, stage: Stage) -> StageConfig | None:
        return resolve_stage_config(self.config.stages, stage)

    def active_stages(self) -> list[Stage]:
        """Stages that would be registered: enabled, supported and free of config problems."""

        if not self.config.enabled or self.problems:
            return []
        return [
            stage
            for stage in Stage
            if is_stage_enabled(self.stage_config(stage)) and stage in self.evaluator.supported_stages
        ]

    def register(self, dispatcher: HookDispatcher) -> list[Stage]:
        if not self.config.enabled:
            logger.debug("guardrail_disabled", extra={"guardrail": self.name})
            return []
        if self.problems:
            for problem in self.problems:
                logger.warning("guardrail_config_invalid", extra={"guardrail": self.name, "problem": problem})
            return []

        handlers = {
            Stage.BEFORE_REQUEST: self.before_request,
            Stage.BEFORE_TOOL_CALL: self.before_tool_call,
            Stage.AFTER_TOOL_CALL: self.after_tool_call,
            Stage.AFTER_RESPONSE: self.after_response,
        }
        registered: list[Stage] = []
        for stage in Stage:
            if not is_stage_enabled(self.stage_config(stage)):
                continue
            if stage not in self.evaluator.supported_stages:
                logger.warning("guardrail_stage_unsupported", extra={"guardrail": self.name, "stage": stage.value})
                continue
            dispatcher.register(stage, handlers[stage], priority=self.config.priority, name=self.name)
            registered.append(stage)
        logger.info(
            "guardrail_registered",
            extra={"guardrail": self.name, "stages": [stage.value for stage in registered]},
        )
        return registered

    async def _decide(
        self,
        stage: Stage,
        stage_config: StageConfig,
        content: str,
        messages: Sequence[Message],
        ctx: HookContext,
        *,
        tool_name: str | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> GuardrailDecision:
        history = extract_history_context(messages) if stage_config.include_history else None
        request = EvaluationRequest(
            stage=stage,
            content=content,
            history_context=history,
            stage_config=stage_config,
            config=self.config,
            messages=messages,
            context=ctx,
            tool_name=tool_name,
            params=params,
        )
        return await run_evaluation(self.evaluator, request, guardrail=self.name)

    def _enabled_config(self, stage: Stage) -> StageConfig | None:
        stage_config = self.stage_config(stage)
        if not self.config.enabled or not is_stage_enabled(stage_config):
            return None
        return stage_config

    async def before_request(self, payload: BeforeRequestPayload, ctx: HookContext) -> BeforeRequestResult | None:
        stage_config = self._enabled_config(Stage.BEFORE_REQUEST)
        if stage_config is None or not payload.prompt.strip():
            return None
        decision = await self._decide(Stage.BEFORE_REQUEST, stage_config, payload.prompt.strip(), payload.messages, ctx)
        if decision.blocked:
            return BeforeRequestResult(block=True, block_response=decision.message)
        if decision.action is GuardrailAction.REDACT and decision.evaluation is not None:
            return _rewrite_request(payload, decision.evaluation)
        return None

    async def before_tool_call(self, payload: BeforeToolCallPayload, ctx: HookContext) -> BeforeToolCallResult | None:
        stage_config = self._enabled_config(Stage.BEFORE_TOOL_CALL)
        if stage_config is None:
            return None
        summary = build_tool_call_summary(payload.tool_name, payload.tool_call_id, payload.params)
        decision = await self._decide(
            Stage.BEFORE_TOOL_CALL,
            stage_config,
            summary,
            payload.messages,
            ctx,
            tool_name=payload.tool_name,
            params=payload.params,
        )
        if decision.blocked:
            return BeforeToolCallResult(block=True, block_reason=decision.message)
        if decision.action is GuardrailAction.REDACT and decision.evaluation is not None:
            return self._rewrite_tool_call(payload, decision.evaluation)
        return None

    async def after_tool_call(self, payload: AfterToolCallPayload, ctx: HookContext) -> AfterToolCallResult | None:
        stage_config = self._enabled_config(Stage.AFTER_TOOL_CALL)
        if stage_config is None:
            return None
        text = extract_tool_result_text(payload.result).strip()
        if not text:
            return None
        decision = await self._decide(
            Stage.AFTER_TOOL_CALL,
            stage_config,
            text,
            payload.messages,
            ctx,
            tool_name=payload.tool_name,
            params=payload.params,
        )
        if decision.blocked:
            warning = decision.message or ""
            if decision.failed or resolve_block_mode(Stage.AFTER_TOOL_CALL, stage_config) == "replace":
                return AfterToolCallResult(block=True, result=replace_tool_result_with_warning(payload.result, warning))
            return AfterToolCallResult(block=True, result=append_warning_to_tool_result(payload.result, warning))
        if decision.action is GuardrailAction.REDACT and decision.evaluation is not None:
            return AfterToolCallResult(result=_rewrite_tool_result(payload.result, decision.evaluation))
        return None

    async def after_response(self, payload: AfterResponsePayload, ctx: HookContext) -> AfterResponseResult | None:
        stage_config = self._enabled_config(Stage.AFTER_RESPONSE)
        if stage_config is None:
            return None
        text = "\n".join(payload.assistant_texts).strip()
        if not text and payload.last_assistant is not None:
            text = extract_text(payload.last_assistant.get("content")).strip()
        if not text:
            return None
        decision = await self._decide(Stage.AFTER_RESPONSE, stage_config, text, payload.messages, ctx)
        if decision.blocked:
            warning = decision.message or ""
            if not decision.failed and resolve_block_mode(Stage.AFTER_RESPONSE, stage_config) == "append":
                return AfterResponseResult(assistant_texts=[*payload.assistant_texts, warning])
            return AfterResponseResult(block=True, block_response=warning)
        if decision.action is GuardrailAction.REDACT and decision.evaluation is not None:
            evaluation = decision.evaluation
            if evaluation.sanitized is not None:
                texts = [evaluation.sanitized]
            else:
                texts = list(payload.assistant_texts)
            redacted = [apply_redactions(item, evaluation.redactions) for item in texts]
            return AfterResponseResult(assistant_texts=redacted)
        return None

    def _rewrite_tool_call(self, payload: BeforeToolCallPayload, evaluation: Evaluation) -> BeforeToolCallResult | None:
        params: Any = payload.params
        if evaluation.sanitized is not None:
            try:
                parsed = json.loads(evaluation.sanitized)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, Mapping):
                params = parsed.get("params", parsed) if "tool" in parsed else parsed
            else:
                logger.warning(
                    "guardrail_sanitized_params_ignored",
                    extra={"guardrail": self.name, "tool_name": payload.tool_name},
                )
        params = redact_value(params, evaluation.redactions)
        if params == payload.params:
            return None
        return BeforeToolCallResult(params=params)


def _rewrite_request(payload: BeforeRequestPayload, evaluation: Evaluation) -> BeforeRequestResult:
    prompt = payload.prompt
    messages: Sequence[Message] = payload.messages
    if evaluation.sanitized is not None:
        original = payload.prompt.strip()
        prompt = evaluation.sanitized
        user_messages = [m for m in messages if isinstance(m, Mapping) and m.get("role") == "user"]
        if user_messages and extract_text(user_messages[-1].get("content")).strip() == original:
            messages = replace_last_user_message(messages, prompt)
    if evaluation.redactions:
        prompt = apply_redactions(prompt, evaluation.redactions)
        messages = redact_messages(messages, evaluation.redactions)
    return BeforeRequestResult(
        prompt=prompt,
        messages=messages if messages is not payload.messages else None,
    )


def _rewrite_tool_result(result: ToolResult, evaluation: Evaluation) -> ToolResult:
    content: Any = result.content
    details = result.details
    if evaluation.sanitized is not None:
        content = [{"type": "text", "text": evaluation.sanitized}]
    if evaluation.redactions:
        content = redact_value(content, evaluation.redactions)
        details = redact_value(details, evaluation.redactions)
    return ToolResult(content=list(content), details=details)


__all__ = ["Guardrail"]
