"""GPT-OSS-Safeguard policy classifier adapter."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal

from pydantic import Field

from ..models import Evaluation
from ..protocols import EvaluationRequest
from .common import require_config
from .inference import ClassifierEvaluator, LocalInferenceConfig

DEFAULT_MODEL = "openai/gpt-oss-safeguard-120b"
DEFAULT_MAX_TOKENS = 500

DEFAULT_POLICY = """You are a safety classifier. Evaluate if the content violates any of these policies:
1. Violent or harmful content
2. Hate speech or discrimination
3. Sexual content involving minors
4. Instructions for illegal activities
5. Personal information exposure

Classify as violation (1) or safe (0)."""

OutputFormat = Literal["binary", "json", "rich"]

_OUTPUT_INSTRUCTIONS: dict[str, str] = {
    "binary": "Respond with exactly 0 (safe) or 1 (violation).",
    "json": 'Respond with JSON: {"violation": 0|1, "policy_category": "category name or null"}',
    "rich": (
        'Respond with JSON: {"violation": 0|1, "policy_category": "category name or null", '
        '"confidence": "low|medium|high", "rationale": "brief explanation"}'
    ),
}

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_VIOLATION_MARKER = re.compile(r"violation[\"']?\s*:\s*(1|true)", re.IGNORECASE)


class SafeguardConfig(LocalInferenceConfig):
    model: str = DEFAULT_MODEL
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=1)
    policy: str = DEFAULT_POLICY
    reasoning_effort: Literal["low", "medium", "high"] = "medium"
    output_format: OutputFormat = "json"


@dataclass(slots=True, frozen=True)
class SafeguardVerdict:
    safe: bool
    policy_category: str | None = None
    rationale: str | None = None
    confidence: str | None = None


def build_prompt(content: str, policy: str, reasoning_effort: str, output_format: str) -> str:
    system = f"{policy}\n\nReasoning effort: {reasoning_effort}\n{_OUTPUT_INSTRUCTIONS[output_format]}"
    return f"{system}\n\nEvaluate the following content:\n\n{content}"


def parse_response(response: str, output_format: str) -> SafeguardVerdict:
    """Parse binary, JSON or rich JSON classifier output.

    When the JSON cannot be decoded the raw text is scanned for a violation
    marker, so malformed output that signals a violation is still unsafe.
    """

    text = response.strip()
    if output_format == "binary":
        return SafeguardVerdict(safe=not text.startswith("1"))

    match = _JSON_OBJECT.search(text)
    candidate = match.group(0) if match else text
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        parsed = None
    if not isinstance(parsed, Mapping):
        violation = bool(_VIOLATION_MARKER.search(text)) or text == "1"
        return SafeguardVerdict(safe=not violation)

    violation = parsed.get("violation")
    flagged = violation is True or (
        isinstance(violation, int | float) and not isinstance(violation, bool) and violation == 1
    )
    return SafeguardVerdict(
        safe=not flagged,
        policy_category=parsed.get("policy_category") if isinstance(parsed.get("policy_category"), str) else None,
        rationale=parsed.get("rationale") if isinstance(parsed.get("rationale"), str) else None,
        confidence=parsed.get("confidence") if isinstance(parsed.get("confidence"), str) else None,
    )


class SafeguardEvaluator(ClassifierEvaluator):
    name = "safeguard"
    config_type = SafeguardConfig
    scratch_prefix = "safeguard"

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        config = require_config(request.config, SafeguardConfig)
        content = request.content
        if request.history_context:
            content = f"{request.history_context}\n\nCurrent content to evaluate:\n{request.content}"
        prompt = build_prompt(content, config.policy, config.reasoning_effort, config.output_format)
        verdict = parse_response(await self.classify(prompt, config), config.output_format)
        details = {
            key: value
            for key, value in (
                ("policy_category", verdict.policy_category),
                ("rationale", verdict.rationale),
                ("confidence", verdict.confidence),
            )
            if value
        }
        if verdict.safe:
            return Evaluation(safe=True, details=details or None)
        return Evaluation(
            safe=False,
            reason=verdict.rationale or verdict.policy_category or "policy violation",
            details=details or None,
        )

    def format_violation(self, evaluation: Evaluation, location: str) -> str:
        details = evaluation.details or {}
        parts = [
            f"Sorry, I can't help with that. The {location} was flagged as potentially unsafe "
            "by the GPT-OSS-Safeguard safety system."
        ]
        if details.get("policy_category"):
            parts.append(f"Policy category: {details['policy_category']}.")
        if details.get("rationale"):
            parts.append(f"Reason: {details['rationale']}")
        return " ".join(parts)


__all__ = [
    "DEFAULT_POLICY",
    "SafeguardConfig",
    "SafeguardEvaluator",
    "SafeguardVerdict",
    "build_prompt",
    "parse_response",
]
