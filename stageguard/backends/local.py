"""Configuration for the built-in local rule evaluators."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from ..config import GuardrailConfig
from ..rules import (
    DEFAULT_INJECTION_PATTERNS,
    DEFAULT_SECRET_PATTERNS,
    InjectionPatternEvaluator,
    JailbreakIntent,
    SecretRedactionEvaluator,
    ToolAllowlistEvaluator,
)


class InjectionPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern: str
    intent: JailbreakIntent = JailbreakIntent.JB_OVERRIDE


class InjectionConfig(GuardrailConfig):
    patterns: tuple[InjectionPattern, ...] | None = None


class SecretRedactionConfig(GuardrailConfig):
    patterns: dict[str, str] | None = None
    replace_defaults: bool = False


class ToolAllowlistConfig(GuardrailConfig):
    allowed_tools: tuple[str, ...] | None = None
    denied_tools: tuple[str, ...] = ()


def injection_evaluator(config: InjectionConfig) -> InjectionPatternEvaluator:
    if config.patterns:
        return InjectionPatternEvaluator(patterns=tuple((item.pattern, item.intent) for item in config.patterns))
    return InjectionPatternEvaluator(patterns=DEFAULT_INJECTION_PATTERNS)


def secret_evaluator(config: SecretRedactionConfig) -> SecretRedactionEvaluator:
    patterns = {} if config.replace_defaults else dict(DEFAULT_SECRET_PATTERNS)
    patterns.update(config.patterns or {})
    return SecretRedactionEvaluator(patterns=patterns)


def allowlist_evaluator(config: ToolAllowlistConfig) -> ToolAllowlistEvaluator:
    return ToolAllowlistEvaluator(
        denied_tools=frozenset(config.denied_tools),
        allowed_tools=frozenset(config.allowed_tools) if config.allowed_tools is not None else None,
    )


__all__ = [
    "InjectionConfig",
    "InjectionPattern",
    "SecretRedactionConfig",
    "ToolAllowlistConfig",
    "allowlist_evaluator",
    "injection_evaluator",
    "secret_evaluator",
]
