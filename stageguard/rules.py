"""Built-in evaluators that run locally without a moderation backend."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from .content import extract_text
from .evaluation import BaseEvaluator
from .models import Evaluation, Stage
from .protocols import EvaluationRequest


class JailbreakIntent(str, Enum):
    """Taxonomy of prompt-injection intent types."""

    JB_OVERRIDE = "jb_override"
    EXFIL_PROMPT = "exfil_prompt"
    TOOL_ESCALATION = "tool_escalation"
    INDIRECT_INJECTION = "indirect_injection"


DEFAULT_INJECTION_PATTERNS: tuple[tuple[str, JailbreakIntent], ...] = (
    (r"ignore\s+(all\s+)?(previous\s+|prior\s+)?instructions", JailbreakIntent.JB_OVERRIDE),
    (r"disregard\s+(your\s+)?(instructions|rules)", JailbreakIntent.JB_OVERRIDE),
    (r"you\s+are\s+now\s+(in\s+)?(\w+\s+)?mode", JailbreakIntent.JB_OVERRIDE),
    (r"\bDAN\b.*mode", JailbreakIntent.JB_OVERRIDE),
    (r"(show|reveal|print)\s+(me\s+)?(your|the)\s+system\s*prompt", JailbreakIntent.EXFIL_PROMPT),
    (r"what\s+(is|are)\s+your\s+(system\s+)?instructions", JailbreakIntent.EXFIL_PROMPT),
    (r"(run|execute)\s+(as\s+)?(root|admin|sudo)", JailbreakIntent.TOOL_ESCALATION),
    (r"bypass\s+(tool\s+)?restrictions", JailbreakIntent.TOOL_ESCALATION),
    (r"(assistant|ai)\s*:\s*(new|updated)\s+instructions", JailbreakIntent.INDIRECT_INJECTION),
)

DEFAULT_SECRET_PATTERNS: dict[str, str] = {
    "ANTHROPIC_KEY": r"sk-ant-[a-zA-Z0-9\-]{20,}",
    "OPENAI_KEY": r"sk-(?!ant-)[a-zA-Z0-9]{20,}",
    "AWS_KEY": r"AKIA[0-9A-Z]{16}",
    "GITHUB_TOKEN": r"ghp_[a-zA-Z0-9]{36}",
}


@dataclass
class InjectionPatternEvaluator(BaseEvaluator):
    """Regex-based prompt-injection detection."""

    name: str = "injection-patterns"
    supported_stages: frozenset[Stage] = frozenset({Stage.BEFORE_REQUEST, Stage.AFTER_TOOL_CALL})
    patterns: tuple[tuple[str, JailbreakIntent], ...] = DEFAULT_INJECTION_PATTERNS

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        text = request.content
        if not text:
            return None
        for pattern, intent in self.patterns:
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                return Evaluation(
                    safe=False,
                    reason=f"prompt injection [{intent.value}]: '{match.group(0)[:50]}'",
                    details={"category": intent.value, "method": "regex"},
                )
        return Evaluation(safe=True)


@dataclass
class SecretRedactionEvaluator(BaseEvaluator):
    """Redact credentials wherever they appear, conversation history included."""

    name: str = "secret-redaction"
    patterns: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SECRET_PATTERNS))

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        texts = [request.content]
        texts.extend(extract_text(message.get("content")) for message in request.messages)
        redactions: dict[str, str] = {}
        for secret_type, pattern in self.patterns.items():
            compiled = re.compile(pattern)
            for text in texts:
                for match in compiled.finditer(text):
                    redactions.setdefault(match.group(0), f"[{secret_type}]")
        if not redactions:
            return Evaluation(safe=True)
        return Evaluation(
            safe=True,
            reason=f"Found {len(redactions)} secret(s)",
            details={"categories": sorted(set(redactions.values()))},
            redactions=redactions,
        )


@dataclass
class ToolAllowlistEvaluator(BaseEvaluator):
    """Block tool calls outside an allowlist or inside a denylist."""

    name: str = "tool-allowlist"
    supported_stages: frozenset[Stage] = frozenset({Stage.BEFORE_TOOL_CALL})
    denied_tools: frozenset[str] = frozenset()
    allowed_tools: frozenset[str] | None = None

    async def evaluate(self, request: EvaluationRequest) -> Evaluation | None:
        tool_name = request.tool_name
        if not tool_name:
            return None
        if tool_name in self.denied_tools:
            return Evaluation(safe=False, reason=f"tool '{tool_name}' is denied", details={"category": "tool_denied"})
        if self.allowed_tools and tool_name not in self.allowed_tools:
            return Evaluation(
                safe=False,
                reason=f"tool '{tool_name}' is not in the allowlist",
                details={"category": "tool_not_allowed"},
            )
        return Evaluation(safe=True)


__all__ = [
    "DEFAULT_INJECTION_PATTERNS",
    "DEFAULT_SECRET_PATTERNS",
    "InjectionPatternEvaluator",
    "JailbreakIntent",
    "SecretRedactionEvaluator",
    "ToolAllowlistEvaluator",
]
