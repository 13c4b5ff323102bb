"""Stage-based guardrail evaluation pipeline for conversational agents."""

from .backends import BACKENDS, build_dispatcher, build_guardrail, load_dispatcher, parse_config
from .config import (
    GuardrailConfig,
    StageConfig,
    StagesConfig,
    is_stage_enabled,
    load_guardrail_file,
    resolve_block_mode,
    resolve_option,
    resolve_stage_config,
)
from .content import (
    append_warning_to_tool_result,
    build_tool_call_summary,
    extract_history_context,
    extract_text,
    extract_tool_result_text,
    replace_tool_result_with_warning,
)
from .dispatcher import HookDispatcher, StageOutcome
from .errors import ConfigError, GuardrailBackendError, GuardrailError
from .evaluation import BaseEvaluator, run_evaluation
from .guardrail import Guardrail
from .merge import apply_result
from .models import (
    AfterResponsePayload,
    AfterResponseResult,
    AfterToolCallPayload,
    AfterToolCallResult,
    BeforeRequestPayload,
    BeforeRequestResult,
    BeforeToolCallPayload,
    BeforeToolCallResult,
    DispatchState,
    Evaluation,
    GuardrailAction,
    GuardrailDecision,
    HookContext,
    Stage,
    ToolResult,
)
from .protocols import EvaluationRequest, Evaluator
from .sessions import SessionCorrelationMap

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "BACKENDS",
    "AfterResponsePayload",
    "AfterResponseResult",
    "AfterToolCallPayload",
    "AfterToolCallResult",
    "BaseEvaluator",
    "BeforeRequestPayload",
    "BeforeRequestResult",
    "BeforeToolCallPayload",
    "BeforeToolCallResult",
    "ConfigError",
    "DispatchState",
    "Evaluation",
    "EvaluationRequest",
    "Evaluator",
    "Guardrail",
    "GuardrailAction",
    "GuardrailBackendError",
    "GuardrailConfig",
    "GuardrailDecision",
    "GuardrailError",
    "HookContext",
    "HookDispatcher",
    "SessionCorrelationMap",
    "Stage",
    "StageConfig",
    "StageOutcome",
    "StagesConfig",
    "ToolResult",
    "append_warning_to_tool_result",
    "apply_result",
    "build_dispatcher",
    "build_guardrail",
    "build_tool_call_summary",
    "extract_history_context",
    "extract_text",
    "extract_tool_result_text",
    "is_stage_enabled",
    "load_dispatcher",
    "load_guardrail_file",
    "parse_config",
    "replace_tool_result_with_warning",
    "resolve_block_mode",
    "resolve_option",
    "resolve_stage_config",
    "run_evaluation",
]
