"""Gray Swan Cygnal monitor adapter."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Literal

import httpx
from pydantic import Field

from ..config import GuardrailConfig, StageConfig, StagesConfig, resolve_option
from ..evaluation import BaseEvaluator
from ..models import Evaluation, Stage
from ..protocols import EvaluationRequest
from .common import (
    as_finite_float,
    clamp_unit,
    client_context,
    convert_messages,
    decode_json_object,
    first_env,
    normalize_base_url,
    raise_for_status,
    require_config,
    timeout_seconds,
)

logger = logging.getLogger("stageguard.backends.grayswan")

DEFAULT_API_BASE = "https://api.grayswan.ai"
MONITOR_PATH = "/cygnal/monitor"
DEFAULT_THRESHOLD = 0.5
DEFAULT_TIMEOUT_MS = 30_000.0

_STAGE_ROLES: dict[Stage, str] = {
    Stage.BEFORE_REQUEST: "user",
    Stage.BEFORE_TOOL_CALL: "assistant",
    Stage.AFTER_TOOL_CALL: "tool",
    Stage.AFTER_RESPONSE: "assistant",
}
_HISTORY_ROLES = frozenset({"user", "assistant", "tool", "system"})


class GraySwanStageConfig(StageConfig):
    violation_threshold: float | None = None
    block_on_mutation: bool | None = None
    block_on_ipi: bool | None = None


class GraySwanConfig(GuardrailConfig):
    api_key: str | None = None
    api_base: str | None = None
    policy_id: str | None = None
    categories: dict[str, str] | None = None
    reasoning_mode: Literal["off", "hybrid", "thinking"] | None = None
    violation_threshold: float | None = None
    block_on_mutation: bool | None = None
    block_on_ipi: bool | None = None
    stages: StagesConfig[GraySwanStageConfig] = Field(default_factory=StagesConfig[GraySwanStageConfig])


def resolve_threshold(config: GraySwanConfig, stage_config: StageConfig) -> float:
    value = resolve_option(getattr(stage_config, "violation_threshold", None), config.violation_threshold, None)
    if value is None:
        return DEFAULT_THRESHOLD
    return clamp_unit(value)


def resolve_flag(stage: Stage, stage_value: bool | None, instance_value: bool | None) -> bool:
    """Mutation and IPI flags default to on only for tool results."""

    return resolve_option(stage_value, instance_value, stage is Stage.AFTER_TOOL_CALL)


def format_violated_rules(rules: list[Any]) -> str:
    formatted: list[str] = []
    for rule in rules:
        if isinstance(rule, Mapping):
            number = rule.get("rule") or rule.get("index") or rule.get("id")
            name = rule.get("name") if isinstance(rule.get("name"), str) else ""
            description = rule.get("description") if isinstance(rule.get("description"), str) else ""
            if number and name:
                formatted.append(f"#{number} {name}: {description}" if description else f"#{number} {name}")
            elif name:
                formatted.append(name)
            else:
                formatted.append(str(dict(rule)))
            continue
        formatted.append(str(rule))
    return ", ".join(formatted)


class GraySwanEvaluator(BaseEvaluator):
    """Posts the conversation to ``/cygnal/monitor`` and scores the result."""

    name = "grayswan"

    def __init__(self, *, client: httpx.AsyncClient | None = None, env: Mapping[str, str] | None = None) -> None:
        self.client = client
        self.env = env

    def api_key(self, config: GraySwanConfig) -> str | None:
        key = (config.api_key or "").strip()
        return key or first_env(self.env, "GRAYSWAN_API_KEY")

    def api_base(self, config: GraySwanConfig) -> str:
        base = (config.api_base or "").strip() or first_env(self.env, "GRAYSWAN_API_BASE") or DEFAULT_API_BASE
        return normalize_base_url(base)

    def check_config(self, config: GuardrailConfig) -> list[str]:
        if not self.api_key(require_config(config, GraySwanConfig)):
            return ["Gray Swan API key is not configured (set apiKey or GRAYSWAN_API_KEY)"]
        return []

    def build_payload(self, request: EvaluationRequest, config: GraySwanConfig) -> dict[str, Any]:
        messages = convert_messages(request.messages, _HISTORY_ROLES) if request.include_history else []
        messages.append({"role": _STAGE_ROLES[request.stage], "content": request.content})
        payload: dict[str, Any] = {"messages": messages}
        if config.categories:
            payload["categories"] = dict(config.categories)
        if config.policy_id:
            payload["policy_id"] = config.policy_id
        if config.reasoning_mode:
            payload["reasoning_mode"] = config.reasoning_mode
        return payload

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        config = require_config(request.config, GraySwanConfig)
        api_key = self.api_key(config)
        if not api_key:
            logger.warning("grayswan_api_key_missing")
            return None

        url = f"{self.api_base(config)}{MONITOR_PATH}"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "grayswan-api-key": api_key,
        }
        async with client_context(self.client, timeout_seconds(config, DEFAULT_TIMEOUT_MS)) as client:
            response = await client.post(url, json=self.build_payload(request, config), headers=headers)
            raise_for_status(response, backend=self.name)
            data = decode_json_object(response, backend=self.name)

        return self.interpret(request.stage, request.stage_config, config, data)

    def interpret(
        self,
        stage: Stage,
        stage_config: StageConfig,
        config: GraySwanConfig,
        data: Mapping[str, Any],
    ) -> Evaluation:
        score = as_finite_float(data.get("violation"), 0.0)
        rules = data.get("violated_rule_descriptions")
        if not isinstance(rules, list):
            rules = data.get("violated_rules") if isinstance(data.get("violated_rules"), list) else []
        mutation = bool(data.get("mutation"))
        ipi = bool(data.get("ipi"))
        threshold = resolve_threshold(config, stage_config)
        block_on_mutation = resolve_flag(
            stage, getattr(stage_config, "block_on_mutation", None), config.block_on_mutation
        )
        block_on_ipi = resolve_flag(stage, getattr(stage_config, "block_on_ipi", None), config.block_on_ipi)

        reasons: list[str] = []
        if score >= threshold:
            reasons.append(f"violation score {score:.2f}")
        if block_on_mutation and mutation:
            reasons.append("mutation detected")
        if block_on_ipi and ipi:
            reasons.append("indirect prompt injection detected")
        details = {
            "violation": score,
            "threshold": threshold,
            "violated_rules": rules,
            "mutation": mutation,
            "ipi": ipi,
        }
        if not reasons:
            return Evaluation(safe=True, details=details)
        return Evaluation(safe=False, reason=", ".join(reasons), details=details)

    def format_violation(self, evaluation: Evaluation, location: str) -> str:
        details = evaluation.details or {}
        score = as_finite_float(details.get("violation"), 0.0)
        parts = [
            "Sorry I can't help with that. According to the Gray Swan Cygnal Guardrail, "
            f"the {location} has a violation score of {score:.2f}."
        ]
        rules = details.get("violated_rules")
        if isinstance(rules, list) and rules:
            formatted = format_violated_rules(rules)
            if formatted:
                parts.append(f"It was violating the rule(s): {formatted}.")
        if details.get("mutation"):
            parts.append("Mutation effort to make the harmful intention disguised was DETECTED.")
        if details.get("ipi"):
            parts.append("Indirect Prompt Injection was DETECTED.")
        return "\n".join(parts)


__all__ = [
    "DEFAULT_API_BASE",
    "DEFAULT_THRESHOLD",
    "GraySwanConfig",
    "GraySwanEvaluator",
    "GraySwanStageConfig",
    "format_violated_rules",
    "resolve_flag",
    "resolve_threshold",
]
