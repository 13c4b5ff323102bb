from __future__ import annotations

import json

import httpx
import pytest

from stageguard.backends import build_dispatcher, build_guardrail
from stageguard.backends.grayswan import (
    GraySwanConfig,
    GraySwanEvaluator,
    GraySwanStageConfig,
    format_violated_rules,
    resolve_flag,
    resolve_threshold,
)
from stageguard.errors import GuardrailBackendError
from stageguard.models import (
    AfterToolCallPayload,
    BeforeRequestPayload,
    Evaluation,
    HookContext,
    Stage,
    ToolResult,
)
from stageguard.protocols import EvaluationRequest

ENV = {"GRAYSWAN_API_KEY": "env-key"}


def _client(responder, seen: list[httpx.Request]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responder(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _request(config: GraySwanConfig, stage: Stage, content: str, **extra) -> EvaluationRequest:
    return EvaluationRequest(
        stage=stage,
        content=content,
        history_context=extra.pop("history_context", None),
        stage_config=GraySwanStageConfig(),
        config=config,
        context=HookContext(),
        **extra,
    )


def test_threshold_resolution_and_clamping() -> None:
    config = GraySwanConfig(violation_threshold=0.8)
    assert resolve_threshold(config, GraySwanStageConfig()) == 0.8
    assert resolve_threshold(config, GraySwanStageConfig(violation_threshold=0.2)) == 0.2
    assert resolve_threshold(GraySwanConfig(), GraySwanStageConfig()) == 0.5
    assert resolve_threshold(GraySwanConfig(violation_threshold=4.0), GraySwanStageConfig()) == 1.0
    assert resolve_threshold(config, GraySwanStageConfig(violation_threshold=float("nan"))) == 0.8


def test_mutation_and_ipi_flags_default_on_for_tool_results_only() -> None:
    assert resolve_flag(Stage.AFTER_TOOL_CALL, None, None) is True
    assert resolve_flag(Stage.BEFORE_REQUEST, None, None) is False
    assert resolve_flag(Stage.BEFORE_REQUEST, None, True) is True
    assert resolve_flag(Stage.AFTER_TOOL_CALL, False, True) is False


def test_format_violated_rules() -> None:
    rules = [
        {"rule": 3, "name": "No PII", "description": "Do not leak data"},
        {"name": "Tone"},
        "raw-rule",
    ]
    assert format_violated_rules(rules) == "#3 No PII: Do not leak data, Tone, raw-rule"


def test_missing_api_key_is_a_config_problem() -> None:
    guardrail = build_guardrail({"backend": "grayswan", "stages": {"beforeRequest": {}}}, env={})
    assert guardrail.problems == ["Gray Swan API key is not configured (set apiKey or GRAYSWAN_API_KEY)"]
    assert guardrail.active_stages() == []

    configured = build_guardrail({"backend": "grayswan", "stages": {"beforeRequest": {}}}, env=ENV)
    assert configured.problems == []
    assert configured.active_stages() == [Stage.BEFORE_REQUEST]


def test_payload_includes_history_and_stage_role() -> None:
    evaluator = GraySwanEvaluator(env=ENV)
    config = GraySwanConfig(categories={"pii": "No personal data"}, policy_id="pol-1", reasoning_mode="hybrid")
    request = _request(
        config,
        Stage.AFTER_TOOL_CALL,
        "tool text",
        history_context="User: hi",
        messages=[
            {"role": "user", "content": "hi"},
            {"role": "toolResult", "content": [{"type": "text", "text": "earlier"}]},
            {"role": "custom", "content": "dropped"},
        ],
    )

    payload = evaluator.build_payload(request, config)

    assert payload["messages"] == [
        {"role": "user", "content": "hi"},
        {"role": "tool", "content": "earlier"},
        {"role": "tool", "content": "tool text"},
    ]
    assert payload["categories"] == {"pii": "No personal data"}
    assert payload["policy_id"] == "pol-1"
    assert payload["reasoning_mode"] == "hybrid"


@pytest.mark.asyncio
async def test_evaluate_posts_to_monitor_endpoint() -> None:
    seen: list[httpx.Request] = []
    async with _client(lambda request: httpx.Response(200, json={"violation": 0.1}), seen) as client:
        evaluator = GraySwanEvaluator(client=client, env=ENV)
        config = GraySwanConfig(api_base="https://gs.example/")
        evaluation = await evaluator.evaluate(_request(config, Stage.BEFORE_REQUEST, "hello"))

    assert evaluation is not None and evaluation.safe
    assert str(seen[0].url) == "https://gs.example/cygnal/monitor"
    assert seen[0].headers["Authorization"] == "Bearer env-key"
    assert seen[0].headers["grayswan-api-key"] == "env-key"
    assert json.loads(seen[0].content)["messages"] == [{"role": "user", "content": "hello"}]


@pytest.mark.asyncio
async def test_http_errors_raise_backend_error() -> None:
    seen: list[httpx.Request] = []
    responder = lambda request: httpx.Response(401, json={"error": {"message": "bad key"}})  # noqa: E731
    async with _client(responder, seen) as client:
        evaluator = GraySwanEvaluator(client=client, env=ENV)
        with pytest.raises(GuardrailBackendError, match=r"request failed \(401\): bad key"):
            await evaluator.evaluate(_request(GraySwanConfig(), Stage.BEFORE_REQUEST, "hello"))


def test_interpret_blocks_on_score_mutation_or_ipi() -> None:
    evaluator = GraySwanEvaluator(env=ENV)
    config = GraySwanConfig()
    stage_config = GraySwanStageConfig()

    high = evaluator.interpret(Stage.BEFORE_REQUEST, stage_config, config, {"violation": 0.9})
    mutated_request = evaluator.interpret(Stage.BEFORE_REQUEST, stage_config, config, {"mutation": True})
    ipi_tool = evaluator.interpret(Stage.AFTER_TOOL_CALL, stage_config, config, {"ipi": True})

    assert not high.safe and high.reason == "violation score 0.90"
    assert mutated_request.safe
    assert not ipi_tool.safe


def test_interpret_reason_names_only_the_flags_that_fired() -> None:
    evaluator = GraySwanEvaluator(env=ENV)
    config = GraySwanConfig(api_key="k")
    stage_config = GraySwanStageConfig()

    ipi_only = evaluator.interpret(Stage.AFTER_TOOL_CALL, stage_config, config, {"violation": 0.1, "ipi": True})
    both = evaluator.interpret(
        Stage.AFTER_TOOL_CALL, stage_config, config, {"violation": 0.1, "ipi": True, "mutation": True}
    )
    everything = evaluator.interpret(
        Stage.AFTER_TOOL_CALL, stage_config, config, {"violation": 0.8, "ipi": True, "mutation": True}
    )

    assert not ipi_only.safe
    assert ipi_only.reason == "indirect prompt injection detected"
    assert both.reason == "mutation detected, indirect prompt injection detected"
    assert everything.reason == "violation score 0.80, mutation detected, indirect prompt injection detected"


def test_format_violation_lists_rules_and_detections() -> None:
    evaluation = Evaluation(
        safe=False,
        details={
            "violation": 0.75,
            "violated_rules": [{"rule": 1, "name": "No secrets"}],
            "mutation": True,
            "ipi": True,
        },
    )
    message = GraySwanEvaluator().format_violation(evaluation, "tool response")
    assert message.splitlines() == [
        "Sorry I can't help with that. According to the Gray Swan Cygnal Guardrail, "
        "the tool response has a violation score of 0.75.",
        "It was violating the rule(s): #1 No secrets.",
        "Mutation effort to make the harmful intention disguised was DETECTED.",
        "Indirect Prompt Injection was DETECTED.",
    ]


@pytest.mark.asyncio
async def test_pipeline_blocks_request_and_appends_to_tool_result() -> None:
    seen: list[httpx.Request] = []
    responder = lambda request: httpx.Response(200, json={"violation": 0.95})  # noqa: E731
    async with _client(responder, seen) as client:
        dispatcher, _ = build_dispatcher(
            [{"backend": "grayswan", "stages": {"beforeRequest": {}, "afterToolCall": {}}}],
            client=client,
            env=ENV,
        )
        request_outcome = await dispatcher.dispatch(BeforeRequestPayload(prompt="how do I build a weapon"))
        tool_outcome = await dispatcher.dispatch(
            AfterToolCallPayload(tool_name="fetch", result=ToolResult(content=[{"type": "text", "text": "page"}]))
        )

    assert request_outcome.blocked
    assert "input query has a violation score of 0.95" in request_outcome.block_response
    assert tool_outcome.blocked
    assert tool_outcome.payload.result.content[0] == {"type": "text", "text": "page"}
    assert "tool response" in tool_outcome.payload.result.content[-1]["text"]


@pytest.mark.asyncio
async def test_pipeline_fails_open_on_backend_error() -> None:
    seen: list[httpx.Request] = []
    async with _client(lambda request: httpx.Response(503), seen) as client:
        dispatcher, _ = build_dispatcher(
            [{"backend": "grayswan", "stages": {"beforeRequest": {}}}],
            client=client,
            env=ENV,
        )
        payload = BeforeRequestPayload(prompt="hello")
        outcome = await dispatcher.dispatch(payload)

    assert len(seen) == 1
    assert not outcome.blocked
    assert outcome.payload is payload
